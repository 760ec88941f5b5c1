"""Append-only discussion ledger.

Messages are only ever appended. No update or delete path exists, so the
review trail of an execution cannot be rewritten.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InvariantViolationError
from .models import ApprovalStatus, DiscussionMessage, MessageType
from .participants import Participant

USER_PARTICIPANT = Participant(
    id="user",
    name="User",
    role="Product Owner",
)


@dataclass
class DiscussionView:
    """All messages of a thread plus a per-round grouping."""

    messages: list[DiscussionMessage] = field(default_factory=list)

    @property
    def messages_by_round(self) -> dict[int, list[DiscussionMessage]]:
        grouped: dict[int, list[DiscussionMessage]] = defaultdict(list)
        for message in self.messages:
            grouped[message.round].append(message)
        return dict(grouped)

    @property
    def current_round(self) -> int:
        return max((m.round for m in self.messages), default=0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "messages_by_round": {
                str(r): [m.to_dict() for m in msgs] for r, msgs in self.messages_by_round.items()
            },
            "current_round": self.current_round,
        }


class DiscussionLog:
    """Message ledger keyed by thread."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(
        self,
        thread_id: str,
        author: Participant,
        round_number: int,
        message_type: MessageType,
        content: str,
        *,
        deliverable_version: int | None = None,
        approval_status: ApprovalStatus | None = None,
    ) -> DiscussionMessage:
        """Append a message, allocating the next sequence number in the thread."""
        next_sequence = (
            await self._session.execute(
                select(func.coalesce(func.max(DiscussionMessage.sequence), 0)).where(
                    DiscussionMessage.thread_id == thread_id
                )
            )
        ).scalar_one() + 1

        message = DiscussionMessage(
            thread_id=thread_id,
            sequence=next_sequence,
            round=round_number,
            agent_id=author.id,
            agent_name=author.name,
            agent_role=author.role,
            message_type=message_type.value,
            content=content,
            deliverable_version=deliverable_version,
            approval_status=approval_status.value if approval_status else None,
            timestamp=datetime.now(UTC),
        )
        self._session.add(message)
        try:
            await self._session.flush()
        except IntegrityError as exc:
            raise InvariantViolationError(
                f"Duplicate message sequence {next_sequence} in thread {thread_id}",
                step="append_message",
            ) from exc
        return message

    async def list_thread(self, thread_id: str) -> list[DiscussionMessage]:
        """All messages ordered by (round, sequence)."""
        result = await self._session.execute(
            select(DiscussionMessage)
            .where(DiscussionMessage.thread_id == thread_id)
            .order_by(DiscussionMessage.round, DiscussionMessage.sequence)
        )
        return list(result.scalars().all())

    async def list_round(self, thread_id: str, round_number: int) -> list[DiscussionMessage]:
        result = await self._session.execute(
            select(DiscussionMessage)
            .where(
                DiscussionMessage.thread_id == thread_id,
                DiscussionMessage.round == round_number,
            )
            .order_by(DiscussionMessage.sequence)
        )
        return list(result.scalars().all())

    async def view(self, thread_id: str | None) -> DiscussionView:
        if thread_id is None:
            return DiscussionView()
        return DiscussionView(messages=await self.list_thread(thread_id))
