"""Async database connection and operations for task executions."""

from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .config import Settings
from .errors import SchemaNotInitializedError, is_schema_missing_error, schema_not_initialized_message
from .models import (
    Agent,
    Base,
    DiscussionThread,
    ExecutionStatus,
    ReviewStatus,
    Task,
    TaskExecution,
    TaskStatus,
    ThreadStatus,
    UserReview,
)


class Database:
    """Owns the engine and session factory for one process."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.engine = create_async_engine(
            settings.async_database_url, echo=False, pool_pre_ping=True
        )
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    async def init_db(self) -> None:
        """Create all tables (for development/testing)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """Async context manager for database sessions."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as exc:
                await session.rollback()
                if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                    raise SchemaNotInitializedError(
                        schema_not_initialized_message(exc)
                    ) from exc
                raise


# =============================================================================
# Agent Operations
# =============================================================================


async def create_agent(
    session: AsyncSession,
    name: str,
    role: str,
    *,
    goal: str = "",
    backstory: str = "",
    tools: Sequence[str] = (),
    llm_provider: str | None = None,
    llm_model: str | None = None,
    created_at: datetime | None = None,
) -> Agent:
    """Create a new agent persona."""
    agent = Agent(
        name=name,
        role=role,
        goal=goal,
        backstory=backstory,
        tools=list(tools),
        llm_provider=llm_provider,
        llm_model=llm_model,
        created_at=created_at or datetime.now(UTC),
    )
    session.add(agent)
    await session.flush()
    return agent


async def get_agent(session: AsyncSession, agent_id: str) -> Agent | None:
    result = await session.execute(select(Agent).where(Agent.id == agent_id))
    return result.scalar_one_or_none()


async def get_agents_by_ids(session: AsyncSession, agent_ids: Sequence[str]) -> list[Agent]:
    """Get agents preserving the order of ``agent_ids``."""
    if not agent_ids:
        return []
    result = await session.execute(select(Agent).where(Agent.id.in_(list(agent_ids))))
    by_id = {a.id: a for a in result.scalars().all()}
    return [by_id[i] for i in agent_ids if i in by_id]


async def list_agents(session: AsyncSession) -> list[Agent]:
    """All agents, newest first."""
    result = await session.execute(select(Agent).order_by(Agent.created_at.desc()))
    return list(result.scalars().all())


# =============================================================================
# Task Operations
# =============================================================================


async def create_task(
    session: AsyncSession,
    phase_id: str,
    title: str,
    *,
    description: str = "",
    priority: str = "medium",
    position: int = 0,
    dependencies: Sequence[str] = (),
    deliverables: Sequence[str] = (),
) -> Task:
    """Create a new task."""
    task = Task(
        phase_id=phase_id,
        title=title,
        description=description,
        status=TaskStatus.PENDING.value,
        priority=priority,
        position=position,
        dependencies=list(dependencies),
        deliverables=list(deliverables),
    )
    session.add(task)
    await session.flush()
    return task


async def get_task(session: AsyncSession, task_id: str) -> Task | None:
    result = await session.execute(select(Task).where(Task.id == task_id))
    return result.scalar_one_or_none()


async def get_tasks_for_phase(session: AsyncSession, phase_id: str) -> list[Task]:
    result = await session.execute(
        select(Task).where(Task.phase_id == phase_id).order_by(Task.position)
    )
    return list(result.scalars().all())


async def update_task_status(session: AsyncSession, task_id: str, status: TaskStatus) -> None:
    task = await get_task(session, task_id)
    if task is not None:
        task.status = status.value


# =============================================================================
# Execution Operations
# =============================================================================


async def create_execution(
    session: AsyncSession,
    task_id: str,
    phase_id: str,
    project_id: str,
    primary_agent_id: str,
    reviewer_agent_ids: Sequence[str],
    max_rounds: int,
) -> TaskExecution:
    """Create a task execution in ``pending``."""
    execution = TaskExecution(
        task_id=task_id,
        phase_id=phase_id,
        project_id=project_id,
        status=ExecutionStatus.PENDING.value,
        primary_agent_id=primary_agent_id,
        reviewer_agent_ids=list(reviewer_agent_ids),
        current_round=0,
        max_rounds=max_rounds,
        started_at=datetime.now(UTC),
    )
    session.add(execution)
    await session.flush()
    return execution


async def get_execution(
    session: AsyncSession, execution_id: str, *, for_update: bool = False
) -> TaskExecution | None:
    """Get an execution by id, optionally locking its row."""
    query = select(TaskExecution).where(TaskExecution.id == execution_id)
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def get_execution_by_task(session: AsyncSession, task_id: str) -> TaskExecution | None:
    """Most recent execution for a task."""
    result = await session.execute(
        select(TaskExecution)
        .where(TaskExecution.task_id == task_id)
        .order_by(TaskExecution.started_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_executions_for_phase(session: AsyncSession, phase_id: str) -> list[TaskExecution]:
    result = await session.execute(
        select(TaskExecution)
        .where(TaskExecution.phase_id == phase_id)
        .order_by(TaskExecution.started_at)
    )
    return list(result.scalars().all())


def set_execution_status(execution: TaskExecution, status: ExecutionStatus) -> None:
    execution.status = status.value
    if status == ExecutionStatus.COMPLETED:
        execution.completed_at = datetime.now(UTC)


# =============================================================================
# Thread Operations
# =============================================================================


async def create_thread(session: AsyncSession, execution: TaskExecution) -> DiscussionThread:
    """Create the (single) discussion thread for an execution."""
    thread = DiscussionThread(
        task_execution_id=execution.id,
        status=ThreadStatus.ACTIVE.value,
        created_at=datetime.now(UTC),
    )
    session.add(thread)
    await session.flush()
    execution.discussion_thread_id = thread.id
    return thread


async def get_thread(session: AsyncSession, thread_id: str) -> DiscussionThread | None:
    result = await session.execute(select(DiscussionThread).where(DiscussionThread.id == thread_id))
    return result.scalar_one_or_none()


async def set_thread_status(
    session: AsyncSession, thread_id: str | None, status: ThreadStatus
) -> None:
    if thread_id is None:
        return
    thread = await get_thread(session, thread_id)
    if thread is not None:
        thread.status = status.value


# =============================================================================
# User Review Operations
# =============================================================================


async def create_user_review(
    session: AsyncSession, execution: TaskExecution, *, forced: bool
) -> UserReview:
    """Open a new escalation cycle for an execution."""
    review = UserReview(
        task_execution_id=execution.id,
        status=ReviewStatus.PENDING.value,
        round=execution.current_round,
        forced=forced,
        created_at=datetime.now(UTC),
    )
    session.add(review)
    await session.flush()
    return review


async def get_user_reviews(session: AsyncSession, execution_id: str) -> list[UserReview]:
    """All escalation cycles for an execution, oldest first."""
    result = await session.execute(
        select(UserReview)
        .where(UserReview.task_execution_id == execution_id)
        .order_by(UserReview.created_at, UserReview.round)
    )
    return list(result.scalars().all())


async def get_active_user_review(session: AsyncSession, execution_id: str) -> UserReview | None:
    """The most recent review, if it is still pending."""
    reviews = await get_user_reviews(session, execution_id)
    if reviews and reviews[-1].status == ReviewStatus.PENDING.value:
        return reviews[-1]
    return None


def resolve_user_review(
    review: UserReview, status: ReviewStatus, feedback: str | None = None
) -> UserReview:
    review.status = status.value
    review.user_feedback = feedback
    review.reviewed_at = datetime.now(UTC)
    return review
