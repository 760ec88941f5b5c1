"""SQLAlchemy models for the task execution ledgers."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

_JSON = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ExecutionStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    UNDER_DISCUSSION = "under_discussion"
    # Declared for schema compatibility; the round loop evaluates consensus
    # inline and never parks an execution here.
    AWAITING_CONSENSUS = "awaiting_consensus"
    AWAITING_USER = "awaiting_user"
    COMPLETED = "completed"


class ThreadStatus(StrEnum):
    ACTIVE = "active"
    CONSENSUS_REACHED = "consensus_reached"
    AWAITING_USER = "awaiting_user"
    CLOSED = "closed"


class MessageType(StrEnum):
    INITIAL_REVIEW = "initial_review"
    RESPONSE = "response"
    REVISION = "revision"
    QUESTION = "question"
    APPROVAL = "approval"
    CONCERN = "concern"
    USER_FEEDBACK = "user_feedback"


class ApprovalStatus(StrEnum):
    APPROVED = "approved"
    HAS_CONCERNS = "has_concerns"
    PENDING = "pending"


class ReviewStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    FEEDBACK_PROVIDED = "feedback_provided"


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: _JSON,
        list[str]: _JSON,
    }


# =============================================================================
# COLLABORATORS (participants and task context)
# =============================================================================


class Agent(Base):
    """A persona that can produce or review deliverables."""

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    role: Mapped[str] = mapped_column(String, nullable=False)
    goal: Mapped[str] = mapped_column(Text, nullable=False, default="")
    backstory: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tools: Mapped[list[str]] = mapped_column(_JSON, default=list)
    llm_provider: Mapped[str | None] = mapped_column(String, nullable=True)
    llm_model: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Task(Base):
    """A unit of planned work inside a roadmap phase."""

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    phase_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String, default=TaskStatus.PENDING.value)
    priority: Mapped[str] = mapped_column(String, default="medium")
    position: Mapped[int] = mapped_column(Integer, default=0)
    dependencies: Mapped[list[str]] = mapped_column(_JSON, default=list)
    deliverables: Mapped[list[str]] = mapped_column(_JSON, default=list)


# =============================================================================
# EXECUTION-SCOPED LEDGERS
# =============================================================================


class TaskExecution(Base):
    """One attempt to complete a task through producer/reviewer collaboration."""

    __tablename__ = "task_executions"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    task_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("tasks.id"), nullable=False, index=True
    )
    phase_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    project_id: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default=ExecutionStatus.PENDING.value)
    primary_agent_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("agents.id"), nullable=False
    )
    reviewer_agent_ids: Mapped[list[str]] = mapped_column(_JSON, default=list)
    current_round: Mapped[int] = mapped_column(Integer, default=0)
    max_rounds: Mapped[int] = mapped_column(Integer, default=7)
    discussion_thread_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
    current_deliverable_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "phase_id": self.phase_id,
            "project_id": self.project_id,
            "status": self.status,
            "primary_agent_id": self.primary_agent_id,
            "reviewer_agent_ids": list(self.reviewer_agent_ids or []),
            "current_round": self.current_round,
            "max_rounds": self.max_rounds,
            "discussion_thread_id": self.discussion_thread_id,
            "current_deliverable_id": self.current_deliverable_id,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }


class DiscussionThread(Base):
    """Review conversation owned by a single execution."""

    __tablename__ = "discussion_threads"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    task_execution_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("task_executions.id"), nullable=False, unique=True
    )
    status: Mapped[str] = mapped_column(String, default=ThreadStatus.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class DiscussionMessage(Base):
    """Append-only message in a discussion thread."""

    __tablename__ = "discussion_messages"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    thread_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("discussion_threads.id"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    round: Mapped[int] = mapped_column(Integer, nullable=False)
    # Identity snapshot; "user" is not an agents row.
    agent_id: Mapped[str] = mapped_column(String, nullable=False)
    agent_name: Mapped[str] = mapped_column(String, nullable=False)
    agent_role: Mapped[str] = mapped_column(String, nullable=False)
    message_type: Mapped[str] = mapped_column(String, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    deliverable_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    approval_status: Mapped[str | None] = mapped_column(String, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("thread_id", "sequence"),
        Index("idx_discussion_messages_thread_round", "thread_id", "round", "sequence"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "sequence": self.sequence,
            "round": self.round,
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "agent_role": self.agent_role,
            "message_type": self.message_type,
            "content": self.content,
            "deliverable_version": self.deliverable_version,
            "approval_status": self.approval_status,
            "timestamp": _iso(self.timestamp),
        }


class Deliverable(Base):
    """Immutable, version-numbered artifact produced for an execution."""

    __tablename__ = "deliverables"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    task_execution_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("task_executions.id"), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("agents.id"), nullable=False
    )
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (UniqueConstraint("task_execution_id", "version"),)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_execution_id": self.task_execution_id,
            "version": self.version,
            "content": self.content,
            "created_by": self.created_by,
            "description": self.description,
            "created_at": _iso(self.created_at),
        }


class UserReview(Base):
    """Human decision point; one row per escalation cycle."""

    __tablename__ = "user_reviews"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    task_execution_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("task_executions.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String, default=ReviewStatus.PENDING.value)
    round: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    forced: Mapped[bool] = mapped_column(default=False)
    user_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_execution_id": self.task_execution_id,
            "status": self.status,
            "round": self.round,
            "forced": self.forced,
            "user_feedback": self.user_feedback,
            "created_at": _iso(self.created_at),
            "reviewed_at": _iso(self.reviewed_at),
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
