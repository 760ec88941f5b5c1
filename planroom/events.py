"""
Execution lifecycle events.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    EXECUTION_STARTED = "execution.started"
    EXECUTION_COMPLETED = "execution.completed"

    DELIVERABLE_CREATED = "deliverable.created"
    REVISION_CREATED = "revision.created"

    ROUND_STARTED = "round.started"
    REVIEW_SUBMITTED = "review.submitted"
    PRODUCER_RESPONDED = "producer.responded"

    CONSENSUS_REACHED = "consensus.reached"
    CONSENSUS_NOT_REACHED = "consensus.not_reached"
    ESCALATION_FORCED = "escalation.forced"

    HUMAN_APPROVAL_REQUESTED = "human.approval_requested"
    HUMAN_APPROVED = "human.approved"
    HUMAN_FEEDBACK = "human.feedback"


@dataclass
class ExecutionEvent:
    """Standardized event for a task execution."""

    id: UUID = field(default_factory=uuid4)
    type: EventType = EventType.EXECUTION_STARTED
    execution_id: str | None = None
    round_number: int | None = None
    agent: str | None = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "execution_id": self.execution_id,
            "round_number": self.round_number,
            "agent": self.agent,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[ExecutionEvent], Awaitable[None] | None]


class EventEmitter:
    """Emits events to registered handlers.

    Handlers are observers only: a failing handler is logged and never
    interrupts the workflow that emitted the event.
    """

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    async def emit(self, event: ExecutionEvent) -> None:
        for handler in self._handlers:
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception:
                logger.exception("Event handler error for %s", event.type.value)

    async def aclose(self) -> None:
        """Close handlers that hold connections (the Redis publisher)."""
        for handler in self._handlers:
            close = getattr(handler, "aclose", None)
            if close is not None:
                await close()

    async def publish(
        self,
        type_: EventType,
        execution_id: str,
        message: str,
        *,
        round_number: int | None = None,
        agent: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> ExecutionEvent:
        event = ExecutionEvent(
            type=type_,
            execution_id=execution_id,
            round_number=round_number,
            agent=agent,
            message=message,
            data=data or {},
        )
        await self.emit(event)
        return event


def log_event_handler(event: ExecutionEvent) -> None:
    """Handler that writes events to the module logger."""
    logger.info(
        "%s execution=%s round=%s %s",
        event.type.value,
        event.execution_id,
        event.round_number,
        event.message,
    )


class RedisEventPublisher:
    """Handler that publishes events to Redis Pub/Sub."""

    def __init__(self, redis_url: str) -> None:
        from redis.asyncio import Redis

        self._redis = Redis.from_url(redis_url, decode_responses=True)

    async def __call__(self, event: ExecutionEvent) -> None:
        if not event.execution_id:
            return
        channel = f"channel:execution:{event.execution_id}"
        await self._redis.publish(channel, json.dumps(event.to_dict()))

    async def aclose(self) -> None:
        await self._redis.aclose()


def build_event_emitter(*, redis_url: str | None = None) -> EventEmitter:
    emitter = EventEmitter()
    emitter.on_event(log_event_handler)
    if redis_url:
        emitter.on_event(RedisEventPublisher(redis_url))
    return emitter
