"""Task execution orchestrator.

Drives one producer and a reviewer panel through bounded rounds of review and
revision, escalating to a human once reviewers agree or the round budget runs
out. Every entry point for a given execution is serialized by a per-execution
lock; different executions progress independently.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, TypeVar
from weakref import WeakValueDictionary

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .config import Settings
from .consensus import ConsensusBreakdown, evaluate_consensus
from .db import Database
from .deliverables import DeliverableStore
from .discussion import USER_PARTICIPANT, DiscussionLog, DiscussionView
from .errors import (
    ExecutionNotFoundError,
    FeedbackRequiredError,
    GenerationTimeoutError,
    InvalidRoundBudgetError,
    InvariantViolationError,
    NoActiveReviewError,
    NoDeliverableError,
    OrchestratorError,
    RoundFailedError,
    TaskNotFoundError,
    UpstreamFailureError,
)
from .events import EventEmitter, EventType, build_event_emitter
from .generation import (
    GenerationService,
    ProducerResponse,
    ReviewResult,
    TaskContext,
    placeholder_deliverable,
)
from .models import (
    Deliverable,
    ExecutionStatus,
    MessageType,
    ReviewStatus,
    TaskExecution,
    TaskStatus,
    ThreadStatus,
    UserReview,
)
from .participants import Participant, ParticipantCriteria, ParticipantDirectory

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ExecutionView:
    """Read model of one execution and everything it owns."""

    execution: TaskExecution
    discussion: DiscussionView
    deliverables: list[Deliverable] = field(default_factory=list)
    user_reviews: list[UserReview] = field(default_factory=list)

    @property
    def user_review(self) -> UserReview | None:
        return self.user_reviews[-1] if self.user_reviews else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution": self.execution.to_dict(),
            "discussion": self.discussion.to_dict(),
            "deliverables": [d.to_dict() for d in self.deliverables],
            "user_review": self.user_review.to_dict() if self.user_review else None,
            "user_reviews": [r.to_dict() for r in self.user_reviews],
        }


@dataclass
class RoundOutcome:
    """Where a call to the round loop left the execution."""

    execution_id: str
    status: str
    round_number: int
    escalated: bool = False
    forced: bool = False
    consensus: ConsensusBreakdown | None = None


class TaskOrchestrator:
    """Lifecycle owner for task executions."""

    def __init__(
        self,
        database: Database,
        generation: GenerationService,
        *,
        settings: Settings | None = None,
        directory: ParticipantDirectory | None = None,
        events: EventEmitter | None = None,
    ) -> None:
        self._db = database
        self._generation = generation
        self._settings = settings or database.settings
        self._directory = directory or ParticipantDirectory()
        self._events = events or build_event_emitter()
        self._locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()

    def _lock_for(self, execution_id: str) -> asyncio.Lock:
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[execution_id] = lock
        return lock

    async def _generate(
        self, call: Awaitable[T], *, execution_id: str, step: str, round_number: int | None = None
    ) -> T:
        """Await a generation call under the configured timeout.

        Any upstream failure is re-raised with the execution and step attached.
        """
        error_cls = RoundFailedError if round_number is not None else UpstreamFailureError
        try:
            return await asyncio.wait_for(call, timeout=self._settings.generation_timeout)
        except TimeoutError as exc:
            timeout = GenerationTimeoutError(
                f"Generation timed out after {self._settings.generation_timeout}s"
            )
            raise error_cls(
                str(timeout), execution_id=execution_id, step=step, round_number=round_number
            ) from exc
        except OrchestratorError:
            raise
        except Exception as exc:
            raise error_cls(
                f"Generation failed: {exc}",
                execution_id=execution_id,
                step=step,
                round_number=round_number,
            ) from exc

    # =========================================================================
    # Start
    # =========================================================================

    async def start_execution(
        self,
        task_id: str,
        phase_id: str,
        project_id: str,
        *,
        criteria: ParticipantCriteria | None = None,
        max_rounds: int | None = None,
    ) -> TaskExecution:
        """Create an execution, its thread, and deliverable version 1."""
        criteria = criteria or ParticipantCriteria(max_reviewers=self._settings.max_reviewers)
        if max_rounds is None:
            max_rounds = self._settings.max_rounds
        elif max_rounds < 1:
            raise InvalidRoundBudgetError(
                f"max_rounds must be a positive integer, got {max_rounds}", step="start"
            )

        async with self._db.session() as session:
            task = await db.get_task(session, task_id)
            if task is None:
                raise TaskNotFoundError(f"Task not found: {task_id}", step="start")

            assignment = await self._directory.resolve(session, criteria)
            execution = await db.create_execution(
                session,
                task_id=task_id,
                phase_id=phase_id,
                project_id=project_id,
                primary_agent_id=assignment.producer.id,
                reviewer_agent_ids=assignment.reviewer_ids,
                max_rounds=max_rounds,
            )
            db.set_execution_status(execution, ExecutionStatus.IN_PROGRESS)
            await db.create_thread(session, execution)
            await db.update_task_status(session, task_id, TaskStatus.IN_PROGRESS)
            task_context = TaskContext.from_task(task)
            execution_id = execution.id

        logger.info(
            "Started execution %s for task %s (producer=%s, reviewers=%s)",
            execution_id,
            task_id,
            assignment.producer.name,
            ", ".join(r.name for r in assignment.reviewers),
        )
        await self._events.publish(
            EventType.EXECUTION_STARTED,
            execution_id,
            f"Execution started for task {task_context.title}",
            agent=assignment.producer.id,
            data={"reviewers": assignment.reviewer_ids},
        )

        async with self._lock_for(execution_id):
            await self._produce_initial_deliverable(
                execution_id, assignment.producer, task_context
            )
            return await self._require_execution(execution_id)

    async def retry_initial_deliverable(self, execution_id: str) -> Deliverable:
        """Produce version 1 for an execution whose start failed at generation."""
        async with self._lock_for(execution_id):
            async with self._db.session() as session:
                execution = await db.get_execution(session, execution_id)
                if execution is None:
                    raise ExecutionNotFoundError(
                        "Task execution not found", execution_id=execution_id, step="retry_initial"
                    )
                existing = await DeliverableStore(session).latest(execution_id)
                if existing is not None:
                    return existing
                task = await db.get_task(session, execution.task_id)
                if task is None:
                    raise TaskNotFoundError(
                        f"Task not found: {execution.task_id}",
                        execution_id=execution_id,
                        step="retry_initial",
                    )
                producer = await self._load_producer(session, execution)
                task_context = TaskContext.from_task(task)

            return await self._produce_initial_deliverable(execution_id, producer, task_context)

    async def _produce_initial_deliverable(
        self, execution_id: str, producer: Participant, task: TaskContext
    ) -> Deliverable:
        try:
            content = await self._generate(
                self._generation.generate_initial_deliverable(producer, task),
                execution_id=execution_id,
                step="initial_deliverable",
            )
        except UpstreamFailureError:
            if not self._settings.placeholder_on_initial_failure:
                raise
            logger.warning(
                "Initial deliverable generation failed for %s; using placeholder",
                execution_id,
                exc_info=True,
            )
            content = placeholder_deliverable(task)

        async with self._db.session() as session:
            execution = await db.get_execution(session, execution_id, for_update=True)
            if execution is None:
                raise ExecutionNotFoundError(
                    "Task execution not found", execution_id=execution_id, step="initial_deliverable"
                )
            deliverable = await DeliverableStore(session).append_next_version(
                execution_id,
                content,
                created_by=producer.id,
                description=f"Initial deliverable for: {task.title}",
            )
            execution.current_deliverable_id = deliverable.id

        await self._events.publish(
            EventType.DELIVERABLE_CREATED,
            execution_id,
            f"Deliverable version {deliverable.version} created",
            agent=producer.id,
            data={"version": deliverable.version},
        )
        return deliverable

    # =========================================================================
    # Rounds
    # =========================================================================

    async def advance_round(self, execution_id: str) -> RoundOutcome:
        """Run review rounds until consensus or the round budget forces escalation."""
        async with self._lock_for(execution_id):
            return await self._run_rounds(execution_id)

    async def _run_rounds(self, execution_id: str) -> RoundOutcome:
        execution = await self._require_execution(execution_id)

        if execution.status in (ExecutionStatus.COMPLETED, ExecutionStatus.AWAITING_USER):
            logger.info(
                "Execution %s is %s; not advancing", execution_id, execution.status
            )
            return RoundOutcome(
                execution_id=execution_id,
                status=execution.status,
                round_number=execution.current_round,
                escalated=execution.status == ExecutionStatus.AWAITING_USER,
            )

        # Each pass either advances one round or escalates, so the remaining
        # budget plus the final forced-escalation pass bounds the loop.
        remaining = max(execution.max_rounds - execution.current_round, 0)
        for _ in range(remaining + 1):
            outcome = await self._process_round(execution_id)
            if outcome.escalated:
                return outcome

        raise InvariantViolationError(
            "Round budget exhausted without escalation", execution_id=execution_id, step="round_loop"
        )

    async def _process_round(self, execution_id: str) -> RoundOutcome:
        async with self._db.session() as session:
            execution = await db.get_execution(session, execution_id, for_update=True)
            if execution is None:
                raise ExecutionNotFoundError(
                    "Task execution not found", execution_id=execution_id, step="process_round"
                )

            forced = execution.current_round >= execution.max_rounds
            if forced:
                logger.info(
                    "Execution %s reached max rounds (%d); forcing escalation",
                    execution_id,
                    execution.max_rounds,
                )
                review = await self._escalate(session, execution, forced=True)
            else:
                latest = await DeliverableStore(session).latest(execution_id)
                if latest is None:
                    raise NoDeliverableError(
                        "No deliverable to review", execution_id=execution_id, step="process_round"
                    )
                thread_id = execution.discussion_thread_id
                if thread_id is None:
                    raise InvariantViolationError(
                        "Execution has no discussion thread",
                        execution_id=execution_id,
                        step="process_round",
                    )

                execution.current_round += 1
                db.set_execution_status(execution, ExecutionStatus.UNDER_DISCUSSION)
                round_number = execution.current_round
                reviewers = await self._directory.load(session, execution.reviewer_agent_ids)
                producer = await self._load_producer(session, execution)
                prior_messages = await DiscussionLog(session).list_thread(thread_id)

        if forced:
            await self._announce_escalation(execution, review, forced=True)
            return RoundOutcome(
                execution_id=execution_id,
                status=execution.status,
                round_number=execution.current_round,
                escalated=True,
                forced=True,
            )

        logger.info("Execution %s: round %d started", execution_id, round_number)
        await self._events.publish(
            EventType.ROUND_STARTED,
            execution_id,
            f"Round {round_number} reviewing version {latest.version}",
            round_number=round_number,
            data={"deliverable_version": latest.version},
        )

        await self._collect_reviews(
            execution_id, thread_id, reviewers, latest, prior_messages, round_number
        )

        async with self._db.session() as session:
            log = DiscussionLog(session)
            round_messages = await log.list_round(thread_id, round_number)
            breakdown = evaluate_consensus(round_messages)

            if breakdown.reached:
                execution = await db.get_execution(session, execution_id, for_update=True)
                review = await self._escalate(session, execution, forced=False)
            else:
                all_messages = await log.list_thread(thread_id)

        await self._events.publish(
            EventType.CONSENSUS_REACHED if breakdown.reached else EventType.CONSENSUS_NOT_REACHED,
            execution_id,
            f"Consensus {'reached' if breakdown.reached else 'not reached'} in round {round_number}",
            round_number=round_number,
            data=breakdown.to_dict(),
        )

        if breakdown.reached:
            await self._announce_escalation(execution, review, forced=False)
            return RoundOutcome(
                execution_id=execution_id,
                status=execution.status,
                round_number=round_number,
                escalated=True,
                consensus=breakdown,
            )

        await self._respond_and_revise(
            execution_id, thread_id, producer, latest, round_messages, all_messages, round_number
        )
        return RoundOutcome(
            execution_id=execution_id,
            status=ExecutionStatus.UNDER_DISCUSSION.value,
            round_number=round_number,
            consensus=breakdown,
        )

    async def _collect_reviews(
        self,
        execution_id: str,
        thread_id: str,
        reviewers: list[Participant],
        deliverable: Deliverable,
        prior_messages: list,
        round_number: int,
    ) -> None:
        """Obtain one verdict per reviewer; every review seen is persisted even if others fail."""

        def review_call(reviewer: Participant) -> Awaitable[ReviewResult]:
            return self._generate(
                self._generation.generate_review(reviewer, deliverable, prior_messages),
                execution_id=execution_id,
                step=f"review:{reviewer.id}",
                round_number=round_number,
            )

        if self._settings.parallel_reviews:
            results = await asyncio.gather(
                *[review_call(r) for r in reviewers], return_exceptions=True
            )
            await self._record_reviews(
                thread_id,
                [(r, res) for r, res in zip(reviewers, results) if isinstance(res, ReviewResult)],
                deliverable,
                round_number,
                execution_id,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
            return

        for reviewer in reviewers:
            result = await review_call(reviewer)
            await self._record_reviews(
                thread_id, [(reviewer, result)], deliverable, round_number, execution_id
            )

    async def _record_reviews(
        self,
        thread_id: str,
        reviews: list[tuple[Participant, ReviewResult]],
        deliverable: Deliverable,
        round_number: int,
        execution_id: str,
    ) -> None:
        if not reviews:
            return
        async with self._db.session() as session:
            log = DiscussionLog(session)
            for reviewer, result in reviews:
                await log.append(
                    thread_id,
                    reviewer,
                    round_number,
                    MessageType.INITIAL_REVIEW,
                    result.content,
                    deliverable_version=deliverable.version,
                    approval_status=result.approval_status,
                )
        for reviewer, result in reviews:
            await self._events.publish(
                EventType.REVIEW_SUBMITTED,
                execution_id,
                f"{reviewer.name} reviewed version {deliverable.version}: "
                f"{result.approval_status.value}",
                round_number=round_number,
                agent=reviewer.id,
                data={"approval_status": result.approval_status.value},
            )

    async def _respond_and_revise(
        self,
        execution_id: str,
        thread_id: str,
        producer: Participant,
        deliverable: Deliverable,
        round_messages: list,
        all_messages: list,
        round_number: int,
    ) -> Deliverable | None:
        response: ProducerResponse = await self._generate(
            self._generation.generate_producer_response(
                producer, deliverable, round_messages, all_messages
            ),
            execution_id=execution_id,
            step="producer_response",
            round_number=round_number,
        )
        async with self._db.session() as session:
            await DiscussionLog(session).append(
                thread_id,
                producer,
                round_number,
                MessageType.RESPONSE,
                response.content,
                deliverable_version=deliverable.version,
            )
        await self._events.publish(
            EventType.PRODUCER_RESPONDED,
            execution_id,
            f"{producer.name} responded (revision {'needed' if response.needs_revision else 'not needed'})",
            round_number=round_number,
            agent=producer.id,
            data={"needs_revision": response.needs_revision},
        )

        if not response.needs_revision:
            return None

        revised = await self._generate(
            self._generation.generate_revision(producer, deliverable, round_messages, all_messages),
            execution_id=execution_id,
            step="revision",
            round_number=round_number,
        )
        async with self._db.session() as session:
            execution = await db.get_execution(session, execution_id, for_update=True)
            store = DeliverableStore(session)
            new_deliverable = await store.append_next_version(
                execution_id,
                revised,
                created_by=producer.id,
                description=f"Revision {deliverable.version + 1} based on reviewer feedback",
            )
            execution.current_deliverable_id = new_deliverable.id
            summary = response.revision_summary or "Updated based on feedback"
            await DiscussionLog(session).append(
                thread_id,
                producer,
                round_number,
                MessageType.REVISION,
                f"Created version {new_deliverable.version} with the following changes:\n{summary}",
                deliverable_version=new_deliverable.version,
            )

        logger.info(
            "Execution %s: version %d created in round %d",
            execution_id,
            new_deliverable.version,
            round_number,
        )
        await self._events.publish(
            EventType.REVISION_CREATED,
            execution_id,
            f"Version {new_deliverable.version} created",
            round_number=round_number,
            agent=producer.id,
            data={"version": new_deliverable.version},
        )
        return new_deliverable

    # =========================================================================
    # Escalation
    # =========================================================================

    async def _escalate(
        self, session: AsyncSession, execution: TaskExecution, *, forced: bool
    ) -> UserReview:
        """Hand control to the human; reuses a review that is still pending."""
        db.set_execution_status(execution, ExecutionStatus.AWAITING_USER)
        await db.set_thread_status(
            session,
            execution.discussion_thread_id,
            ThreadStatus.AWAITING_USER if forced else ThreadStatus.CONSENSUS_REACHED,
        )
        review = await db.get_active_user_review(session, execution.id)
        if review is None:
            review = await db.create_user_review(session, execution, forced=forced)
        return review

    async def _announce_escalation(
        self, execution: TaskExecution, review: UserReview, *, forced: bool
    ) -> None:
        if forced:
            await self._events.publish(
                EventType.ESCALATION_FORCED,
                execution.id,
                f"Round budget of {execution.max_rounds} exhausted",
                round_number=execution.current_round,
            )
        await self._events.publish(
            EventType.HUMAN_APPROVAL_REQUESTED,
            execution.id,
            "Awaiting user review",
            round_number=execution.current_round,
            data={"user_review_id": review.id, "forced": forced},
        )

    async def submit_feedback(
        self, execution_id: str, approved: bool, feedback: str | None = None
    ) -> RoundOutcome:
        """Apply the human decision on the pending review."""
        async with self._lock_for(execution_id):
            async with self._db.session() as session:
                execution = await db.get_execution(session, execution_id, for_update=True)
                if execution is None:
                    raise ExecutionNotFoundError(
                        "Task execution not found", execution_id=execution_id, step="submit_feedback"
                    )
                review = await db.get_active_user_review(session, execution_id)
                if review is None:
                    raise NoActiveReviewError(
                        "No pending user review", execution_id=execution_id, step="submit_feedback"
                    )

                if approved:
                    db.resolve_user_review(review, ReviewStatus.APPROVED)
                    db.set_execution_status(execution, ExecutionStatus.COMPLETED)
                    await db.set_thread_status(
                        session, execution.discussion_thread_id, ThreadStatus.CLOSED
                    )
                    await db.update_task_status(session, execution.task_id, TaskStatus.COMPLETED)
                else:
                    if not feedback or not feedback.strip():
                        raise FeedbackRequiredError(
                            "Feedback is required when not approving",
                            execution_id=execution_id,
                            step="submit_feedback",
                        )
                    db.resolve_user_review(review, ReviewStatus.FEEDBACK_PROVIDED, feedback)
                    latest = await DeliverableStore(session).latest(execution_id)
                    await DiscussionLog(session).append(
                        execution.discussion_thread_id,
                        USER_PARTICIPANT,
                        execution.current_round,
                        MessageType.USER_FEEDBACK,
                        feedback,
                        deliverable_version=latest.version if latest else None,
                    )
                    await db.set_thread_status(
                        session, execution.discussion_thread_id, ThreadStatus.ACTIVE
                    )
                    db.set_execution_status(execution, ExecutionStatus.UNDER_DISCUSSION)
                round_number = execution.current_round

            if approved:
                logger.info("Execution %s approved by user", execution_id)
                await self._events.publish(
                    EventType.HUMAN_APPROVED, execution_id, "User approved", round_number=round_number
                )
                await self._events.publish(
                    EventType.EXECUTION_COMPLETED,
                    execution_id,
                    "Execution completed",
                    round_number=round_number,
                )
                return RoundOutcome(
                    execution_id=execution_id,
                    status=ExecutionStatus.COMPLETED.value,
                    round_number=round_number,
                )

            logger.info("Execution %s: user feedback at round %d", execution_id, round_number)
            await self._events.publish(
                EventType.HUMAN_FEEDBACK,
                execution_id,
                "User requested changes",
                round_number=round_number,
                agent=USER_PARTICIPANT.id,
            )
            return await self._run_rounds(execution_id)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_execution_state(self, execution_id: str) -> ExecutionView:
        async with self._db.session() as session:
            execution = await db.get_execution(session, execution_id)
            if execution is None:
                raise ExecutionNotFoundError(
                    "Task execution not found", execution_id=execution_id, step="get_state"
                )
            return await self._build_view(session, execution)

    async def get_execution_for_task(self, task_id: str) -> ExecutionView:
        async with self._db.session() as session:
            execution = await db.get_execution_by_task(session, task_id)
            if execution is None:
                raise ExecutionNotFoundError(
                    f"No task execution for task {task_id}", step="get_state"
                )
            return await self._build_view(session, execution)

    async def list_phase_executions(self, phase_id: str) -> list[TaskExecution]:
        async with self._db.session() as session:
            return await db.get_executions_for_phase(session, phase_id)

    async def _build_view(self, session: AsyncSession, execution: TaskExecution) -> ExecutionView:
        return ExecutionView(
            execution=execution,
            discussion=await DiscussionLog(session).view(execution.discussion_thread_id),
            deliverables=await DeliverableStore(session).list_for_execution(execution.id),
            user_reviews=await db.get_user_reviews(session, execution.id),
        )

    async def _require_execution(self, execution_id: str) -> TaskExecution:
        async with self._db.session() as session:
            execution = await db.get_execution(session, execution_id)
        if execution is None:
            raise ExecutionNotFoundError("Task execution not found", execution_id=execution_id)
        return execution

    async def _load_producer(self, session: AsyncSession, execution: TaskExecution) -> Participant:
        producers = await self._directory.load(session, [execution.primary_agent_id])
        if not producers:
            raise InvariantViolationError(
                "Primary agent not found", execution_id=execution.id, step="load_producer"
            )
        return producers[0]

    # =========================================================================
    # Phase entry point
    # =========================================================================

    async def start_phase(self, project_id: str, phase_id: str) -> ExecutionView | None:
        """Start the first ready task of a phase and run its review rounds.

        A task is ready when it is pending and each of its dependencies names a
        completed task of the same phase (by id or title).
        """
        async with self._db.session() as session:
            tasks = await db.get_tasks_for_phase(session, phase_id)

        completed = {t.id for t in tasks if t.status == TaskStatus.COMPLETED.value} | {
            t.title for t in tasks if t.status == TaskStatus.COMPLETED.value
        }
        ready = next(
            (
                t
                for t in tasks
                if t.status == TaskStatus.PENDING.value
                and all(dep in completed for dep in (t.dependencies or []))
            ),
            None,
        )
        if ready is None:
            logger.info("Phase %s has no ready task to start", phase_id)
            return None

        logger.info("Auto-starting first task in phase %s: %s", phase_id, ready.title)
        execution = await self.start_execution(ready.id, phase_id, project_id)
        await self.advance_round(execution.id)
        return await self.get_execution_state(execution.id)
