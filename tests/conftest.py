"""Shared test fixtures and configuration for pytest."""

import asyncio
from collections.abc import AsyncGenerator, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from planroom import db
from planroom.config import Settings
from planroom.db import Database
from planroom.errors import GenerationError
from planroom.events import EventEmitter, ExecutionEvent
from planroom.generation import ProducerResponse, ReviewResult, TaskContext
from planroom.models import Agent, ApprovalStatus, Deliverable, DiscussionMessage, Task
from planroom.orchestrator import TaskOrchestrator
from planroom.participants import Participant


@dataclass
class ScriptedGeneration:
    """Generation service whose verdicts are fixed up front.

    Reviewers named in ``always_approving`` approve every version; the rest
    approve once the deliverable reaches ``approve_from_version`` (never when None).
    Steps listed in ``fail_on`` raise; steps in ``hang_on`` never return.
    """

    approve_from_version: int | None = None
    always_approving: set[str] = field(default_factory=set)
    needs_revision: bool = True
    fail_on: set[str] = field(default_factory=set)
    hang_on: set[str] = field(default_factory=set)
    calls: list[tuple[str, str]] = field(default_factory=list)

    async def _maybe_fail(self, step: str, who: str) -> None:
        self.calls.append((step, who))
        if step in self.fail_on or f"{step}:{who}" in self.fail_on:
            raise GenerationError(f"{step} failed for {who}")
        if step in self.hang_on:
            await asyncio.sleep(3600)

    async def generate_initial_deliverable(self, producer: Participant, task: TaskContext) -> str:
        await self._maybe_fail("initial", producer.name)
        return f"# {task.title}\n\nDraft by {producer.name}"

    async def generate_review(
        self,
        reviewer: Participant,
        deliverable: Deliverable,
        prior_messages: Sequence[DiscussionMessage],
    ) -> ReviewResult:
        await self._maybe_fail("review", reviewer.name)
        approved = reviewer.name in self.always_approving or (
            self.approve_from_version is not None
            and deliverable.version >= self.approve_from_version
        )
        if approved:
            return ReviewResult("Looks good. APPROVED", ApprovalStatus.APPROVED)
        return ReviewResult("Missing detail. NEEDS_REVISION", ApprovalStatus.HAS_CONCERNS)

    async def generate_producer_response(
        self,
        producer: Participant,
        deliverable: Deliverable,
        round_messages: Sequence[DiscussionMessage],
        all_messages: Sequence[DiscussionMessage],
    ) -> ProducerResponse:
        await self._maybe_fail("response", producer.name)
        if self.needs_revision:
            return ProducerResponse(
                "I will update the plan with more detail. REVISION_NEEDED",
                needs_revision=True,
                revision_summary="I will update the plan with more detail.",
            )
        return ProducerResponse("The plan already covers this. NO_REVISION", needs_revision=False)

    async def generate_revision(
        self,
        producer: Participant,
        deliverable: Deliverable,
        round_messages: Sequence[DiscussionMessage],
        all_messages: Sequence[DiscussionMessage],
    ) -> str:
        await self._maybe_fail("revision", producer.name)
        return f"{deliverable.content}\n\nRevision {deliverable.version + 1}"


@dataclass
class Seeded:
    producer: Agent
    reviewers: list[Agent]
    task: Task


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url_override=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        max_rounds=7,
        max_reviewers=3,
        parallel_reviews=True,
        generation_timeout=5.0,
    )


@pytest_asyncio.fixture
async def database(settings: Settings) -> AsyncGenerator[Database]:
    database = Database(settings)
    await database.init_db()
    yield database
    await database.dispose()


@pytest.fixture
def generation() -> ScriptedGeneration:
    return ScriptedGeneration()


@pytest.fixture
def recorded_events() -> list[ExecutionEvent]:
    return []


@pytest.fixture
def orchestrator(
    database: Database,
    generation: ScriptedGeneration,
    settings: Settings,
    recorded_events: list[ExecutionEvent],
) -> TaskOrchestrator:
    events = EventEmitter()
    events.on_event(recorded_events.append)
    return TaskOrchestrator(database, generation, settings=settings, events=events)


async def seed_agents(database: Database, names: Sequence[str]) -> list[Agent]:
    """Create agents in order; the last one is the newest."""
    base = datetime(2025, 1, 1, tzinfo=UTC)
    agents = []
    async with database.session() as session:
        for i, name in enumerate(names):
            agents.append(
                await db.create_agent(
                    session,
                    name,
                    f"{name} role",
                    goal=f"{name} goal",
                    created_at=base + timedelta(minutes=i),
                )
            )
    return agents


@pytest_asyncio.fixture
async def seeded(database: Database) -> Seeded:
    """Newest agent (Planner) produces; the three before it review."""
    agents = await seed_agents(database, ["Alice", "Bob", "Carol", "Planner"])
    async with database.session() as session:
        task = await db.create_task(
            session,
            "phase-1",
            "Design the data model",
            description="Tables and relations",
            deliverables=["ERD", "Migration plan"],
        )
    return Seeded(producer=agents[3], reviewers=[agents[2], agents[1], agents[0]], task=task)
