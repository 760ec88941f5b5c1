import pytest
from pydantic import ValidationError

from planroom.config import Settings
from planroom.errors import (
    ExecutionNotFoundError,
    OrchestratorError,
    RoundFailedError,
    UpstreamFailureError,
    is_schema_missing_error,
    missing_table_name,
    schema_not_initialized_message,
)


def test_error_message_carries_execution_and_step() -> None:
    error = RoundFailedError("Generation failed", execution_id="e-1", step="review:r", round_number=3)

    assert str(error) == "Generation failed (execution=e-1, step=review:r)"
    assert error.message == "Generation failed"
    assert error.round_number == 3
    assert isinstance(error, UpstreamFailureError)
    assert isinstance(error, OrchestratorError)


def test_error_without_context_has_plain_message() -> None:
    assert str(ExecutionNotFoundError("Task execution not found")) == "Task execution not found"


def test_missing_table_detection() -> None:
    pg = Exception('relation "task_executions" does not exist')
    sqlite = Exception("no such table: deliverables")

    assert missing_table_name(pg) == "task_executions"
    assert missing_table_name(sqlite) == "deliverables"
    assert is_schema_missing_error(sqlite)
    assert not is_schema_missing_error(Exception("connection refused"))
    assert "missing table `deliverables`" in schema_not_initialized_message(sqlite)


def test_missing_table_found_in_cause_chain() -> None:
    try:
        try:
            raise Exception("no such table: agents")
        except Exception as inner:
            raise RuntimeError("wrapped") from inner
    except RuntimeError as outer:
        assert missing_table_name(outer) == "agents"


def test_settings_urls(monkeypatch) -> None:
    monkeypatch.delenv("PLANROOM_DATABASE_URL_OVERRIDE", raising=False)
    settings = Settings(_env_file=None, db_host="db", db_port=5432)

    assert settings.async_database_url == "postgresql+asyncpg://planroom:planroom@db:5432/planroom"
    assert settings.database_url == "postgresql://planroom:planroom@db:5432/planroom"


def test_settings_override_and_env(monkeypatch) -> None:
    monkeypatch.setenv("PLANROOM_MAX_ROUNDS", "4")
    monkeypatch.setenv("PLANROOM_DATABASE_URL_OVERRIDE", "postgresql+asyncpg://u:p@h/d")

    settings = Settings(_env_file=None)

    assert settings.max_rounds == 4
    assert settings.async_database_url == "postgresql+asyncpg://u:p@h/d"
    assert settings.database_url == "postgresql://u:p@h/d"


@pytest.mark.parametrize("field", ["max_rounds", "max_reviewers"])
@pytest.mark.parametrize("value", [0, -1])
def test_settings_reject_non_positive_workflow_limits(field: str, value: int) -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **{field: value})
