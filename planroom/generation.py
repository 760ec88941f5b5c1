"""Generation service contract and the OpenCode-backed implementation.

The orchestrator only depends on :class:`GenerationService`; how text is
elicited from a model stays behind this boundary.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from .errors import GenerationError
from .models import ApprovalStatus, Deliverable, DiscussionMessage, Task
from .opencode_client import OpencodeClient
from .participants import Participant

APPROVED_MARKER = "APPROVED"
NEEDS_REVISION_MARKER = "NEEDS_REVISION"
REVISION_NEEDED_MARKER = "REVISION_NEEDED"
NO_REVISION_MARKER = "NO_REVISION"

_REVISION_SUMMARY_RE = re.compile(
    r"will (create|make|update|revise|change).*?(?=\n\n|$)", re.IGNORECASE | re.DOTALL
)


@dataclass(frozen=True)
class TaskContext:
    """What a producer needs to know about the task it works on."""

    task_id: str
    title: str
    description: str
    deliverables: tuple[str, ...] = ()
    dependencies: tuple[str, ...] = ()
    priority: str = "medium"

    @classmethod
    def from_task(cls, task: Task) -> TaskContext:
        return cls(
            task_id=task.id,
            title=task.title,
            description=task.description or "",
            deliverables=tuple(str(d) for d in task.deliverables or []),
            dependencies=tuple(str(d) for d in task.dependencies or []),
            priority=task.priority or "medium",
        )


@dataclass(frozen=True)
class ReviewResult:
    content: str
    approval_status: ApprovalStatus


@dataclass(frozen=True)
class ProducerResponse:
    content: str
    needs_revision: bool
    revision_summary: str | None = None


class GenerationService(Protocol):
    async def generate_initial_deliverable(
        self, producer: Participant, task: TaskContext
    ) -> str: ...

    async def generate_review(
        self,
        reviewer: Participant,
        deliverable: Deliverable,
        prior_messages: Sequence[DiscussionMessage],
    ) -> ReviewResult: ...

    async def generate_producer_response(
        self,
        producer: Participant,
        deliverable: Deliverable,
        round_messages: Sequence[DiscussionMessage],
        all_messages: Sequence[DiscussionMessage],
    ) -> ProducerResponse: ...

    async def generate_revision(
        self,
        producer: Participant,
        deliverable: Deliverable,
        round_messages: Sequence[DiscussionMessage],
        all_messages: Sequence[DiscussionMessage],
    ) -> str: ...


def placeholder_deliverable(task: TaskContext) -> str:
    return f"# {task.title}\n\n{task.description}\n\n*Deliverable content would be generated here*"


def parse_review(content: str) -> ReviewResult:
    """A review approves only when it says APPROVED and does not ask for revision."""
    upper = content.upper()
    approved = APPROVED_MARKER in upper and NEEDS_REVISION_MARKER not in upper
    return ReviewResult(
        content=content,
        approval_status=ApprovalStatus.APPROVED if approved else ApprovalStatus.HAS_CONCERNS,
    )


def parse_producer_response(content: str) -> ProducerResponse:
    needs_revision = REVISION_NEEDED_MARKER in content.upper()
    summary = None
    if needs_revision:
        match = _REVISION_SUMMARY_RE.search(content)
        summary = match.group(0).strip() if match else "Addressing reviewer feedback"
    return ProducerResponse(content=content, needs_revision=needs_revision, revision_summary=summary)


def _persona(participant: Participant) -> str:
    lines = [f"You are {participant.name}, a {participant.role}."]
    if participant.goal:
        lines.append(f"\nYour goal: {participant.goal}")
    if participant.backstory:
        lines.append(f"Your backstory: {participant.backstory}")
    return "\n".join(lines)


def _format_messages(messages: Sequence[DiscussionMessage]) -> str:
    if not messages:
        return "(none)"
    return "\n\n".join(f"**{m.agent_name} ({m.agent_role})**: {m.content}" for m in messages)


def build_initial_prompt(producer: Participant, task: TaskContext) -> str:
    deliverables = ", ".join(task.deliverables) or "(unspecified)"
    return f"""{_persona(producer)}

You have been assigned to complete the following task:

**Task:** {task.title}
**Description:** {task.description}
**Deliverables:** {deliverables}

Create a comprehensive deliverable for this task. Be specific, detailed, and actionable.
Format your response in markdown with clear sections."""


def build_review_prompt(
    reviewer: Participant, deliverable: Deliverable, prior_messages: Sequence[DiscussionMessage]
) -> str:
    return f"""{_persona(reviewer)}

You are reviewing version {deliverable.version} of the following deliverable:

{deliverable.content}

Previous discussion:
{_format_messages(prior_messages)}

Provide a thorough review with:
1. What works well
2. Specific concerns or suggestions for improvement
3. Whether you approve this deliverable or request changes

End your review with either:
- "{APPROVED_MARKER}" if this deliverable meets quality standards
- "{NEEDS_REVISION_MARKER}" if changes are required"""


def build_response_prompt(
    producer: Participant,
    deliverable: Deliverable,
    round_messages: Sequence[DiscussionMessage],
    all_messages: Sequence[DiscussionMessage],
) -> str:
    round_ids = {m.id for m in round_messages}
    earlier = [m for m in all_messages if m.id not in round_ids]
    return f"""{_persona(producer)}

You created this deliverable:
{deliverable.content}

The review team provided this feedback:
{_format_messages(round_messages)}

Earlier discussion:
{_format_messages(earlier)}

Respond to the feedback:
1. Acknowledge valid points
2. Explain your approach where needed
3. Determine if you need to create a revised version

End your response with either:
- "{REVISION_NEEDED_MARKER}" if you will create an updated deliverable
- "{NO_REVISION_MARKER}" if concerns can be addressed without changing the deliverable

If revision is needed, briefly summarize what you'll change."""


def build_revision_prompt(
    producer: Participant,
    deliverable: Deliverable,
    round_messages: Sequence[DiscussionMessage],
    all_messages: Sequence[DiscussionMessage],
) -> str:
    user_feedback = [m for m in all_messages if m.message_type == "user_feedback"]
    return f"""{_persona(producer)}

Your current deliverable:
{deliverable.content}

Reviewer feedback to address:
{_format_messages(round_messages)}

Product owner feedback:
{_format_messages(user_feedback)}

Create an improved version of the deliverable that addresses all valid concerns.
Maintain the same format and structure, but incorporate the suggested improvements."""


@dataclass
class OpencodeGenerationService:
    """Generates persona output through an OpenCode server session per call."""

    client: OpencodeClient
    agent: str = "general"
    default_model: str | None = None

    async def _complete(self, participant: Participant, title: str, prompt: str) -> str:
        session_id = await self.client.create_session(title=title)
        model = participant.llm_model or self.default_model
        result = await self.client.prompt(
            session_id=session_id,
            agent=self.agent,
            text=prompt,
            model={"id": model} if model else None,
        )
        if not result.raw_output:
            raise GenerationError(f"Empty output from {participant.name} for {title}")
        return result.raw_output

    async def generate_initial_deliverable(self, producer: Participant, task: TaskContext) -> str:
        return await self._complete(
            producer, f"initial:{task.task_id}", build_initial_prompt(producer, task)
        )

    async def generate_review(
        self,
        reviewer: Participant,
        deliverable: Deliverable,
        prior_messages: Sequence[DiscussionMessage],
    ) -> ReviewResult:
        content = await self._complete(
            reviewer,
            f"review:{deliverable.task_execution_id}:v{deliverable.version}",
            build_review_prompt(reviewer, deliverable, prior_messages),
        )
        return parse_review(content)

    async def generate_producer_response(
        self,
        producer: Participant,
        deliverable: Deliverable,
        round_messages: Sequence[DiscussionMessage],
        all_messages: Sequence[DiscussionMessage],
    ) -> ProducerResponse:
        content = await self._complete(
            producer,
            f"response:{deliverable.task_execution_id}:v{deliverable.version}",
            build_response_prompt(producer, deliverable, round_messages, all_messages),
        )
        return parse_producer_response(content)

    async def generate_revision(
        self,
        producer: Participant,
        deliverable: Deliverable,
        round_messages: Sequence[DiscussionMessage],
        all_messages: Sequence[DiscussionMessage],
    ) -> str:
        return await self._complete(
            producer,
            f"revision:{deliverable.task_execution_id}:v{deliverable.version}",
            build_revision_prompt(producer, deliverable, round_messages, all_messages),
        )
