"""Main CLI entry point for planroom."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__, db
from .config import settings
from .db import Database
from .errors import OrchestratorError
from .events import build_event_emitter
from .generation import OpencodeGenerationService
from .models import TaskExecution
from .opencode_client import OpencodeClient
from .orchestrator import ExecutionView, RoundOutcome, TaskOrchestrator
from .participants import get_criteria_from_env

console = Console()

STATUS_STYLES = {
    "pending": "dim",
    "in_progress": "cyan",
    "under_discussion": "yellow",
    "awaiting_user": "magenta",
    "completed": "green",
}


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


@asynccontextmanager
async def _orchestrator():
    database = Database(settings)
    client = OpencodeClient(
        base_url=settings.opencode_api_url,
        directory=settings.opencode_directory,
        timeout_seconds=settings.generation_timeout,
    )
    events = build_event_emitter(
        redis_url=settings.redis_url if settings.redis_events_enabled else None
    )
    generation = OpencodeGenerationService(client=client, agent=settings.opencode_agent)
    try:
        yield TaskOrchestrator(database, generation, settings=settings, events=events)
    finally:
        await client.aclose()
        await events.aclose()
        await database.dispose()


def _run(action: Callable[[], Awaitable[Any]]) -> Any:
    """Run an async action, turning orchestrator errors into CLI errors."""
    try:
        return asyncio.run(action())
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc


def _status(value: str) -> str:
    style = STATUS_STYLES.get(value, "white")
    return f"[{style}]{value}[/{style}]"


def _print_outcome(outcome: RoundOutcome) -> None:
    lines = [f"Status: {_status(outcome.status)}", f"Round: {outcome.round_number}"]
    if outcome.escalated:
        reason = "round budget exhausted" if outcome.forced else "reviewers agreed"
        lines.append(f"Escalated to user ({reason})")
    if outcome.consensus is not None:
        c = outcome.consensus
        lines.append(f"Reviews: {c.approved}/{c.total} approved")
    console.print(Panel("\n".join(lines), title=f"Execution: {outcome.execution_id}"))


def _print_execution(view: ExecutionView, *, show_messages: bool = False) -> None:
    execution = view.execution
    console.print(
        Panel(
            f"Task: {execution.task_id}\n"
            f"Status: {_status(execution.status)}\n"
            f"Round: {execution.current_round}/{execution.max_rounds}\n"
            f"Producer: {execution.primary_agent_id}\n"
            f"Reviewers: {', '.join(execution.reviewer_agent_ids or []) or '-'}\n"
            f"Started: {execution.started_at.strftime('%Y-%m-%d %H:%M')}",
            title=f"Execution: {execution.id}",
        )
    )

    if view.deliverables:
        table = Table(title="Deliverables")
        table.add_column("Version", style="cyan")
        table.add_column("Description")
        table.add_column("Created")
        for d in view.deliverables:
            table.add_row(str(d.version), d.description, d.created_at.strftime("%Y-%m-%d %H:%M"))
        console.print(table)

    review = view.user_review
    if review is not None:
        console.print(
            f"User review: [bold]{review.status}[/bold] (round {review.round}"
            f"{', forced' if review.forced else ''})"
        )

    if show_messages:
        table = Table(title="Discussion")
        table.add_column("Round", style="cyan")
        table.add_column("#")
        table.add_column("Author")
        table.add_column("Type")
        table.add_column("Verdict")
        table.add_column("Content")
        for m in view.discussion.messages:
            content = m.content.replace("\n", " ")
            table.add_row(
                str(m.round),
                str(m.sequence),
                f"{m.agent_name} ({m.agent_role})",
                m.message_type,
                m.approval_status or "-",
                content[:60] + "..." if len(content) > 60 else content,
            )
        console.print(table)


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default=None, help="Override PLANROOM_LOG_LEVEL")
def main(log_level: str | None) -> None:
    """Planroom task execution CLI.

    Drive producer/reviewer rounds over planned tasks and escalate to a human.
    """
    _configure_logging(log_level or settings.log_level)


@main.command(name="init-db")
def init_db() -> None:
    """Create all tables (development only; use alembic in production)."""

    async def create() -> None:
        database = Database(settings)
        try:
            await database.init_db()
        finally:
            await database.dispose()
        console.print("[green]✓[/green] Tables created")

    _run(create)


@main.command(name="schema-check", help="Check DB schema readiness for current code.")
def schema_check() -> None:
    async def check() -> None:
        from sqlalchemy import inspect

        from .models import Base

        database = Database(settings)
        try:
            async with database.engine.connect() as conn:
                existing = set(await conn.run_sync(lambda c: inspect(c).get_table_names()))
        finally:
            await database.dispose()

        missing = sorted(set(Base.metadata.tables) - existing)
        if missing:
            console.print(f"[red]Missing tables: {missing}[/red]")
            console.print("Run: `alembic upgrade head`")
            raise SystemExit(1)
        console.print("[green]Schema ready[/green]")

    _run(check)


@main.command(name="db-info")
def db_info() -> None:
    """Show database connection info."""
    console.print(
        Panel(
            f"Host: {settings.db_host}\n"
            f"Port: {settings.db_port}\n"
            f"Database: {settings.db_name}\n"
            f"User: {settings.db_user}"
            + (f"\nOverride: {settings.database_url_override}" if settings.database_url_override else ""),
            title="Database Configuration",
        )
    )


@main.command(name="agent-add")
@click.argument("name")
@click.argument("role")
@click.option("--goal", default="", help="What the agent is trying to achieve")
@click.option("--backstory", default="", help="Persona background")
@click.option("--model", "llm_model", default=None, help="Model id passed to the generation backend")
def agent_add(name: str, role: str, goal: str, backstory: str, llm_model: str | None) -> None:
    """Register an agent persona."""

    async def add() -> None:
        database = Database(settings)
        try:
            async with database.session() as session:
                agent = await db.create_agent(
                    session, name, role, goal=goal, backstory=backstory, llm_model=llm_model
                )
        finally:
            await database.dispose()
        console.print(f"[green]✓[/green] Agent {agent.name} created: {agent.id}")

    _run(add)


@main.command(name="agent-list")
def agent_list() -> None:
    """List agents, newest first (the order used for auto-assignment)."""

    async def show() -> None:
        database = Database(settings)
        try:
            async with database.session() as session:
                agents = await db.list_agents(session)
        finally:
            await database.dispose()

        if not agents:
            console.print("[yellow]No agents found[/yellow]")
            return

        table = Table(title="Agents")
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("Role")
        table.add_column("Model")
        for a in agents:
            table.add_row(a.id, a.name, a.role, a.llm_model or "-")
        console.print(table)

    _run(show)


@main.command(name="task-add")
@click.argument("phase_id")
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--priority", default="medium", type=click.Choice(["low", "medium", "high"]))
@click.option("--position", default=0, help="Order within the phase")
@click.option("--depends-on", "dependencies", multiple=True, help="Task id or title this depends on")
@click.option("--deliverable", "deliverables", multiple=True, help="Expected deliverable")
def task_add(
    phase_id: str,
    title: str,
    description: str,
    priority: str,
    position: int,
    dependencies: tuple[str, ...],
    deliverables: tuple[str, ...],
) -> None:
    """Create a task inside a phase."""

    async def add() -> None:
        database = Database(settings)
        try:
            async with database.session() as session:
                task = await db.create_task(
                    session,
                    phase_id,
                    title,
                    description=description,
                    priority=priority,
                    position=position,
                    dependencies=dependencies,
                    deliverables=deliverables,
                )
        finally:
            await database.dispose()
        console.print(f"[green]✓[/green] Task created: {task.id}")

    _run(add)


@main.command()
@click.argument("task_id")
@click.option("--phase", "phase_id", required=True, help="Phase id")
@click.option("--project", "project_id", required=True, help="Project id")
@click.option("--max-rounds", "-r", default=None, type=int, help="Round budget")
@click.option("--advance/--no-advance", default=True, help="Run review rounds after start")
def start(
    task_id: str, phase_id: str, project_id: str, max_rounds: int | None, advance: bool
) -> None:
    """Start an execution for TASK_ID."""

    async def do_start() -> None:
        async with _orchestrator() as orchestrator:
            execution: TaskExecution = await orchestrator.start_execution(
                task_id,
                phase_id,
                project_id,
                criteria=get_criteria_from_env(settings.max_reviewers),
                max_rounds=max_rounds,
            )
            console.print(f"[green]✓[/green] Execution started: {execution.id}")
            if advance:
                _print_outcome(await orchestrator.advance_round(execution.id))

    _run(do_start)


@main.command(name="start-phase")
@click.argument("project_id")
@click.argument("phase_id")
def start_phase(project_id: str, phase_id: str) -> None:
    """Start the first ready task of a phase."""

    async def do_start() -> None:
        async with _orchestrator() as orchestrator:
            view = await orchestrator.start_phase(project_id, phase_id)
            if view is None:
                console.print("[yellow]No ready task in phase[/yellow]")
                return
            _print_execution(view)

    _run(do_start)


@main.command()
@click.argument("execution_id")
def advance(execution_id: str) -> None:
    """Run review rounds until escalation."""

    async def do_advance() -> None:
        async with _orchestrator() as orchestrator:
            _print_outcome(await orchestrator.advance_round(execution_id))

    _run(do_advance)


@main.command(name="retry-initial")
@click.argument("execution_id")
def retry_initial(execution_id: str) -> None:
    """Retry generating deliverable version 1 after a failed start."""

    async def do_retry() -> None:
        async with _orchestrator() as orchestrator:
            deliverable = await orchestrator.retry_initial_deliverable(execution_id)
            console.print(f"[green]✓[/green] Version {deliverable.version} available")

    _run(do_retry)


@main.command()
@click.argument("execution_id")
@click.option("--approve", is_flag=True, help="Approve the current deliverable")
@click.option("--feedback", "-f", default=None, help="Changes requested by the user")
def feedback(execution_id: str, approve: bool, feedback: str | None) -> None:
    """Answer a pending user review."""
    if not approve and not feedback:
        raise click.UsageError("Pass --approve or --feedback")

    async def do_feedback() -> None:
        async with _orchestrator() as orchestrator:
            _print_outcome(await orchestrator.submit_feedback(execution_id, approve, feedback))

    _run(do_feedback)


@main.command()
@click.argument("execution_id")
@click.option("--messages", "-m", is_flag=True, help="Show the discussion")
def status(execution_id: str, messages: bool) -> None:
    """Show status of an execution."""

    async def show() -> None:
        async with _orchestrator() as orchestrator:
            view = await orchestrator.get_execution_state(execution_id)
        _print_execution(view, show_messages=messages)

    _run(show)


@main.command(name="list-phase")
@click.argument("phase_id")
def list_phase(phase_id: str) -> None:
    """List executions of a phase."""

    async def show() -> None:
        async with _orchestrator() as orchestrator:
            executions = await orchestrator.list_phase_executions(phase_id)

        if not executions:
            console.print("[yellow]No executions found[/yellow]")
            return

        table = Table(title=f"Phase {phase_id}")
        table.add_column("Execution", style="cyan")
        table.add_column("Task")
        table.add_column("Status")
        table.add_column("Round")
        for e in executions:
            table.add_row(e.id, e.task_id, _status(e.status), f"{e.current_round}/{e.max_rounds}")
        console.print(table)

    _run(show)


if __name__ == "__main__":
    main()
