import json

import pytest

from planroom.events import (
    EventEmitter,
    EventType,
    ExecutionEvent,
    RedisEventPublisher,
    build_event_emitter,
)


@pytest.mark.asyncio
async def test_publish_reaches_sync_and_async_handlers() -> None:
    emitter = EventEmitter()
    seen: list[ExecutionEvent] = []
    seen_async: list[ExecutionEvent] = []

    async def async_handler(event: ExecutionEvent) -> None:
        seen_async.append(event)

    emitter.on_event(seen.append)
    emitter.on_event(async_handler)

    event = await emitter.publish(
        EventType.ROUND_STARTED, "exec-1", "Round 1", round_number=1, data={"deliverable_version": 1}
    )

    assert seen == [event]
    assert seen_async == [event]
    assert event.to_dict()["type"] == "round.started"
    assert event.to_dict()["data"] == {"deliverable_version": 1}


@pytest.mark.asyncio
async def test_failing_handler_does_not_interrupt(caplog) -> None:
    emitter = EventEmitter()
    seen: list[ExecutionEvent] = []

    def broken(event: ExecutionEvent) -> None:
        raise RuntimeError("handler down")

    emitter.on_event(broken)
    emitter.on_event(seen.append)

    await emitter.publish(EventType.HUMAN_FEEDBACK, "exec-1", "feedback")

    assert len(seen) == 1
    assert "Event handler error for human.feedback" in caplog.text


def test_event_serializes_to_json() -> None:
    event = ExecutionEvent(type=EventType.CONSENSUS_REACHED, execution_id="exec-1", agent="a")

    payload = json.loads(json.dumps(event.to_dict()))

    assert payload["execution_id"] == "exec-1"
    assert payload["agent"] == "a"
    assert payload["round_number"] is None


class _FakeRedis:
    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []
        self.closed = False

    async def publish(self, channel: str, message: str) -> None:
        self.published.append((channel, message))

    async def aclose(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_redis_publisher_uses_execution_channel() -> None:
    publisher = RedisEventPublisher("redis://localhost:6379/0")
    fake = _FakeRedis()
    publisher._redis = fake

    await publisher(ExecutionEvent(type=EventType.EXECUTION_STARTED, execution_id="exec-1"))
    await publisher(ExecutionEvent(type=EventType.EXECUTION_STARTED))
    await publisher.aclose()

    assert len(fake.published) == 1
    channel, message = fake.published[0]
    assert channel == "channel:execution:exec-1"
    assert json.loads(message)["type"] == "execution.started"
    assert fake.closed is True


def test_build_event_emitter_registers_redis_only_when_configured() -> None:
    assert len(build_event_emitter()._handlers) == 1
    assert len(build_event_emitter(redis_url="redis://localhost:6379/0")._handlers) == 2


@pytest.mark.asyncio
async def test_emitter_aclose_closes_redis_publisher() -> None:
    emitter = build_event_emitter(redis_url="redis://localhost:6379/0")
    publisher = emitter._handlers[1]
    fake = _FakeRedis()
    publisher._redis = fake

    await emitter.aclose()

    assert fake.closed is True


@pytest.mark.asyncio
async def test_emitter_aclose_without_closable_handlers() -> None:
    emitter = build_event_emitter()

    await emitter.aclose()
