"""Initial schema - agents, tasks and the task execution ledgers.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-16

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Agents table
    op.create_table(
        "agents",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("goal", sa.Text(), nullable=False, server_default=""),
        sa.Column("backstory", sa.Text(), nullable=False, server_default=""),
        sa.Column("tools", postgresql.JSONB(), server_default="[]"),
        sa.Column("llm_provider", sa.String(), nullable=True),
        sa.Column("llm_model", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Tasks table
    op.create_table(
        "tasks",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("phase_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), server_default="pending"),
        sa.Column("priority", sa.String(), server_default="medium"),
        sa.Column("position", sa.Integer(), server_default="0"),
        sa.Column("dependencies", postgresql.JSONB(), server_default="[]"),
        sa.Column("deliverables", postgresql.JSONB(), server_default="[]"),
    )
    op.create_index("ix_tasks_phase_id", "tasks", ["phase_id"])

    # Task executions
    op.create_table(
        "task_executions",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column(
            "task_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("tasks.id"),
            nullable=False,
        ),
        sa.Column("phase_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default="pending"),
        sa.Column(
            "primary_agent_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("agents.id"),
            nullable=False,
        ),
        sa.Column("reviewer_agent_ids", postgresql.JSONB(), server_default="[]"),
        sa.Column("current_round", sa.Integer(), server_default="0"),
        sa.Column("max_rounds", sa.Integer(), server_default="7"),
        sa.Column("discussion_thread_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("current_deliverable_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_task_executions_task_id", "task_executions", ["task_id"])
    op.create_index("ix_task_executions_phase_id", "task_executions", ["phase_id"])

    # Discussion threads (one per execution)
    op.create_table(
        "discussion_threads",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column(
            "task_execution_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("task_executions.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("status", sa.String(), server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Discussion messages (append-only)
    op.create_table(
        "discussion_messages",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column(
            "thread_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("discussion_threads.id"),
            nullable=False,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("round", sa.Integer(), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("agent_name", sa.String(), nullable=False),
        sa.Column("agent_role", sa.String(), nullable=False),
        sa.Column("message_type", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("deliverable_version", sa.Integer(), nullable=True),
        sa.Column("approval_status", sa.String(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("thread_id", "sequence"),
    )
    op.create_index(
        "idx_discussion_messages_thread_round",
        "discussion_messages",
        ["thread_id", "round", "sequence"],
    )

    # Deliverables (versioned)
    op.create_table(
        "deliverables",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column(
            "task_execution_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("task_executions.id"),
            nullable=False,
        ),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column(
            "created_by",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("agents.id"),
            nullable=False,
        ),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("task_execution_id", "version"),
    )

    # User reviews (one per escalation cycle)
    op.create_table(
        "user_reviews",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column(
            "task_execution_id",
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey("task_executions.id"),
            nullable=False,
        ),
        sa.Column("status", sa.String(), server_default="pending"),
        sa.Column("round", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("forced", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("user_feedback", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_user_reviews_task_execution_id", "user_reviews", ["task_execution_id"])


def downgrade() -> None:
    op.drop_table("user_reviews")
    op.drop_table("deliverables")
    op.drop_index("idx_discussion_messages_thread_round", table_name="discussion_messages")
    op.drop_table("discussion_messages")
    op.drop_table("discussion_threads")
    op.drop_table("task_executions")
    op.drop_table("tasks")
    op.drop_table("agents")
