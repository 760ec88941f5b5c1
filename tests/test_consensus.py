import pytest

from planroom.consensus import consensus, evaluate_consensus, review_messages
from planroom.models import DiscussionMessage


def _message(
    *,
    message_type: str = "initial_review",
    approval_status: str | None = "approved",
    agent: str = "reviewer",
) -> DiscussionMessage:
    return DiscussionMessage(
        thread_id="thread",
        sequence=1,
        round=1,
        agent_id=agent,
        agent_name=agent,
        agent_role="Reviewer",
        message_type=message_type,
        content="test",
        approval_status=approval_status,
    )


def test_no_reviews_is_not_consensus() -> None:
    assert consensus([]) is False
    breakdown = evaluate_consensus([])
    assert breakdown.total == 0
    assert breakdown.reached is False


@pytest.mark.parametrize("count", [1, 2, 5])
def test_all_approved_is_consensus(count: int) -> None:
    messages = [_message(agent=f"r{i}") for i in range(count)]
    assert consensus(messages) is True
    assert evaluate_consensus(messages).approved == count


def test_single_concern_blocks_consensus() -> None:
    messages = [
        _message(agent="a"),
        _message(agent="b", approval_status="has_concerns"),
        _message(agent="c"),
    ]

    breakdown = evaluate_consensus(messages)

    assert consensus(messages) is False
    assert breakdown.approved == 2
    assert breakdown.has_concerns == 1
    assert breakdown.to_dict()["reached"] is False


def test_missing_verdict_counts_as_pending() -> None:
    messages = [_message(agent="a"), _message(agent="b", approval_status=None)]

    breakdown = evaluate_consensus(messages)

    assert breakdown.pending == 1
    assert breakdown.reached is False


def test_only_review_messages_are_counted() -> None:
    messages = [
        _message(agent="a"),
        _message(message_type="approval", agent="b"),
        _message(message_type="response", approval_status=None, agent="producer"),
        _message(message_type="user_feedback", approval_status=None, agent="user"),
    ]

    assert len(review_messages(messages)) == 2
    assert consensus(messages) is True


def test_non_review_messages_alone_are_not_consensus() -> None:
    messages = [_message(message_type="revision", approval_status=None)]
    assert consensus(messages) is False
