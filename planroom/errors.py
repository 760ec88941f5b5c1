"""Error types and helpers for the task execution orchestrator."""

from __future__ import annotations

import re

import click


class SchemaNotInitializedError(click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


class OrchestratorError(Exception):
    """Base class for errors surfaced by the orchestrator.

    Carries the execution id (when known) and the workflow step that failed so
    callers can decide whether a retry makes sense.
    """

    def __init__(
        self,
        message: str,
        *,
        execution_id: str | None = None,
        step: str | None = None,
    ) -> None:
        self.execution_id = execution_id
        self.step = step
        context = []
        if execution_id:
            context.append(f"execution={execution_id}")
        if step:
            context.append(f"step={step}")
        suffix = f" ({', '.join(context)})" if context else ""
        super().__init__(f"{message}{suffix}")
        self.message = message


# Precondition errors (caller mistakes, never retried by the orchestrator)


class InsufficientParticipantsError(OrchestratorError):
    """Fewer than one producer plus one reviewer could be resolved."""


class ExecutionNotFoundError(OrchestratorError):
    """No task execution exists with the given id."""


class TaskNotFoundError(OrchestratorError):
    """The task referenced by a start request does not exist."""


class InvalidRoundBudgetError(OrchestratorError):
    """A start request asked for fewer than one review round."""


class NoDeliverableError(OrchestratorError):
    """A round was requested before any deliverable version exists."""


class NoActiveReviewError(OrchestratorError):
    """Feedback was submitted while no user review is pending."""


class FeedbackRequiredError(OrchestratorError):
    """A rejection was submitted without feedback text."""


# Upstream failures


class GenerationError(RuntimeError):
    """The generation service failed to produce content."""


class GenerationTimeoutError(GenerationError):
    """The generation service did not answer within the configured timeout."""


class UpstreamFailureError(OrchestratorError):
    """A workflow step failed because the generation service failed or timed out."""

    def __init__(
        self,
        message: str,
        *,
        execution_id: str | None = None,
        step: str | None = None,
        round_number: int | None = None,
    ) -> None:
        super().__init__(message, execution_id=execution_id, step=step)
        self.round_number = round_number


class RoundFailedError(UpstreamFailureError):
    """A round could not complete.

    State written before the failure stays written; the execution is left in
    ``under_discussion`` and the round can be retried.
    """


# Invariant violations (concurrency-control bugs, never swallowed)


class InvariantViolationError(OrchestratorError):
    """A ledger uniqueness invariant was violated."""


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        message = str(e)
        match = _PG_MISSING_RELATION_RE.search(message) or _SQLITE_MISSING_TABLE_RE.search(message)
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table / missing-schema error."""
    if missing_table_name(exc):
        return True

    # Fallback for drivers that don't format errors consistently.
    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
        if "does not exist" in message and "relation" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Database schema is not initialized{table_hint}.",
        "Run: `alembic upgrade head`",
        "Or validate with: `planroom schema-check`",
    ]
    return "\n".join(lines)
