"""Append-only, version-numbered deliverable ledger."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InvariantViolationError
from .models import Deliverable


class DeliverableStore:
    """Versions form a gapless 1..V sequence per execution."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append_next_version(
        self,
        execution_id: str,
        content: str,
        created_by: str,
        description: str,
    ) -> Deliverable:
        """Persist ``content`` as version ``max(version) + 1`` (1 for the first write)."""
        next_version = (
            await self._session.execute(
                select(func.coalesce(func.max(Deliverable.version), 0)).where(
                    Deliverable.task_execution_id == execution_id
                )
            )
        ).scalar_one() + 1

        deliverable = Deliverable(
            task_execution_id=execution_id,
            version=next_version,
            content=content,
            created_by=created_by,
            description=description,
            created_at=datetime.now(UTC),
        )
        self._session.add(deliverable)
        try:
            await self._session.flush()
        except IntegrityError as exc:
            raise InvariantViolationError(
                f"Deliverable version {next_version} already exists",
                execution_id=execution_id,
                step="append_deliverable",
            ) from exc
        return deliverable

    async def get(self, deliverable_id: str) -> Deliverable | None:
        result = await self._session.execute(
            select(Deliverable).where(Deliverable.id == deliverable_id)
        )
        return result.scalar_one_or_none()

    async def list_for_execution(self, execution_id: str) -> list[Deliverable]:
        result = await self._session.execute(
            select(Deliverable)
            .where(Deliverable.task_execution_id == execution_id)
            .order_by(Deliverable.version)
        )
        return list(result.scalars().all())

    async def latest(self, execution_id: str) -> Deliverable | None:
        result = await self._session.execute(
            select(Deliverable)
            .where(Deliverable.task_execution_id == execution_id)
            .order_by(Deliverable.version.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
