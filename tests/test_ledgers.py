import pytest
from conftest import Seeded

from planroom import db
from planroom.db import Database
from planroom.deliverables import DeliverableStore
from planroom.discussion import USER_PARTICIPANT, DiscussionLog
from planroom.models import ApprovalStatus, MessageType, ReviewStatus, TaskExecution
from planroom.participants import Participant


async def _execution(database: Database, seeded: Seeded) -> TaskExecution:
    async with database.session() as session:
        execution = await db.create_execution(
            session,
            task_id=seeded.task.id,
            phase_id="phase-1",
            project_id="project-1",
            primary_agent_id=seeded.producer.id,
            reviewer_agent_ids=[r.id for r in seeded.reviewers],
            max_rounds=7,
        )
        await db.create_thread(session, execution)
    return execution


@pytest.mark.asyncio
async def test_versions_are_gapless(database: Database, seeded: Seeded) -> None:
    execution = await _execution(database, seeded)

    async with database.session() as session:
        store = DeliverableStore(session)
        assert await store.latest(execution.id) is None
        for i in range(3):
            await store.append_next_version(
                execution.id, f"v{i + 1}", created_by=seeded.producer.id, description=""
            )

    async with database.session() as session:
        store = DeliverableStore(session)
        deliverables = await store.list_for_execution(execution.id)
        latest = await store.latest(execution.id)
        fetched = await store.get(deliverables[0].id)

    assert [d.version for d in deliverables] == [1, 2, 3]
    assert [d.content for d in deliverables] == ["v1", "v2", "v3"]
    assert latest.version == 3
    assert fetched.content == "v1"


@pytest.mark.asyncio
async def test_versions_are_scoped_per_execution(database: Database, seeded: Seeded) -> None:
    first = await _execution(database, seeded)
    second = await _execution(database, seeded)

    async with database.session() as session:
        store = DeliverableStore(session)
        await store.append_next_version(first.id, "a", created_by=seeded.producer.id, description="")
        await store.append_next_version(first.id, "b", created_by=seeded.producer.id, description="")
        other = await store.append_next_version(
            second.id, "c", created_by=seeded.producer.id, description=""
        )

    assert other.version == 1


@pytest.mark.asyncio
async def test_messages_are_sequenced_and_grouped(database: Database, seeded: Seeded) -> None:
    execution = await _execution(database, seeded)
    thread_id = execution.discussion_thread_id
    reviewer = Participant.from_agent(seeded.reviewers[0])
    producer = Participant.from_agent(seeded.producer)

    async with database.session() as session:
        log = DiscussionLog(session)
        await log.append(
            thread_id,
            reviewer,
            1,
            MessageType.INITIAL_REVIEW,
            "concern",
            deliverable_version=1,
            approval_status=ApprovalStatus.HAS_CONCERNS,
        )
        await log.append(thread_id, producer, 1, MessageType.RESPONSE, "ok", deliverable_version=1)
        await log.append(thread_id, USER_PARTICIPANT, 1, MessageType.USER_FEEDBACK, "more")
        await log.append(
            thread_id,
            reviewer,
            2,
            MessageType.INITIAL_REVIEW,
            "fine",
            deliverable_version=2,
            approval_status=ApprovalStatus.APPROVED,
        )

    async with database.session() as session:
        log = DiscussionLog(session)
        messages = await log.list_thread(thread_id)
        round_one = await log.list_round(thread_id, 1)
        view = await log.view(thread_id)

    assert [m.sequence for m in messages] == [1, 2, 3, 4]
    assert [m.round for m in messages] == [1, 1, 1, 2]
    assert [m.content for m in round_one] == ["concern", "ok", "more"]
    assert messages[0].approval_status == "has_concerns"
    assert messages[1].approval_status is None
    assert messages[2].agent_id == "user"
    assert messages[0].agent_name == seeded.reviewers[0].name
    assert view.current_round == 2
    assert sorted(view.messages_by_round) == [1, 2]


@pytest.mark.asyncio
async def test_empty_thread_view(database: Database) -> None:
    async with database.session() as session:
        view = await DiscussionLog(session).view(None)

    assert view.messages == []
    assert view.current_round == 0
    assert view.to_dict()["messages_by_round"] == {}


def test_discussion_log_exposes_no_mutation_beyond_append() -> None:
    public = {name for name in dir(DiscussionLog) if not name.startswith("_")}
    assert public == {"append", "list_thread", "list_round", "view"}


@pytest.mark.asyncio
async def test_user_reviews_track_escalation_cycles(database: Database, seeded: Seeded) -> None:
    execution = await _execution(database, seeded)

    async with database.session() as session:
        first = await db.create_user_review(session, execution, forced=False)
        assert (await db.get_active_user_review(session, execution.id)).id == first.id
        db.resolve_user_review(first, ReviewStatus.FEEDBACK_PROVIDED, "more")

    async with database.session() as session:
        assert await db.get_active_user_review(session, execution.id) is None
        execution.current_round = 2
        second = await db.create_user_review(session, execution, forced=True)

    async with database.session() as session:
        reviews = await db.get_user_reviews(session, execution.id)
        active = await db.get_active_user_review(session, execution.id)

    assert [r.id for r in reviews] == [first.id, second.id]
    assert reviews[0].user_feedback == "more"
    assert active.id == second.id
    assert active.round == 2
    assert active.forced is True
