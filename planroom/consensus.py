"""
Unanimity check over the reviews submitted in a round.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from .models import ApprovalStatus, DiscussionMessage, MessageType

REVIEW_MESSAGE_TYPES = frozenset({MessageType.INITIAL_REVIEW.value, MessageType.APPROVAL.value})


@dataclass
class ConsensusBreakdown:
    """Verdict counts for one round."""

    approved: int = 0
    has_concerns: int = 0
    pending: int = 0

    @property
    def total(self) -> int:
        return self.approved + self.has_concerns + self.pending

    @property
    def reached(self) -> bool:
        # No reviews is never consensus.
        return self.total > 0 and self.approved == self.total

    def to_dict(self) -> dict:
        return {
            "approved": self.approved,
            "has_concerns": self.has_concerns,
            "pending": self.pending,
            "total": self.total,
            "reached": self.reached,
        }


def review_messages(messages: Iterable[DiscussionMessage]) -> list[DiscussionMessage]:
    return [m for m in messages if m.message_type in REVIEW_MESSAGE_TYPES]


def evaluate_consensus(messages: Iterable[DiscussionMessage]) -> ConsensusBreakdown:
    breakdown = ConsensusBreakdown()
    for message in review_messages(messages):
        if message.approval_status == ApprovalStatus.APPROVED.value:
            breakdown.approved += 1
        elif message.approval_status == ApprovalStatus.HAS_CONCERNS.value:
            breakdown.has_concerns += 1
        else:
            breakdown.pending += 1
    return breakdown


def consensus(messages: Iterable[DiscussionMessage]) -> bool:
    """True iff at least one review exists and every review is approved."""
    return evaluate_consensus(messages).reached
