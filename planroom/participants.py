from __future__ import annotations

import os
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .errors import InsufficientParticipantsError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from .models import Agent

PRODUCER_ENV_KEY = "PLANROOM_PRODUCER_AGENT_ID"
REVIEWERS_ENV_KEY = "PLANROOM_REVIEWER_AGENT_IDS"


@dataclass(frozen=True)
class Participant:
    """Identity snapshot of an agent (or the human user) at the time of use."""

    id: str
    name: str
    role: str
    goal: str = ""
    backstory: str = ""
    tools: tuple[str, ...] = ()
    llm_model: str | None = None

    @classmethod
    def from_agent(cls, agent: Agent) -> Participant:
        tools = agent.tools if isinstance(agent.tools, list) else []
        return cls(
            id=agent.id,
            name=agent.name,
            role=agent.role,
            goal=agent.goal or "",
            backstory=agent.backstory or "",
            tools=tuple(str(t) for t in tools),
            llm_model=agent.llm_model,
        )


@dataclass(frozen=True)
class ParticipantCriteria:
    producer_id: str | None = None
    reviewer_ids: tuple[str, ...] = ()
    max_reviewers: int = 3


@dataclass(frozen=True)
class ParticipantAssignment:
    producer: Participant
    reviewers: tuple[Participant, ...] = field(default_factory=tuple)

    @property
    def reviewer_ids(self) -> list[str]:
        return [r.id for r in self.reviewers]


def get_criteria_from_env(max_reviewers: int) -> ParticipantCriteria:
    producer_id = os.getenv(PRODUCER_ENV_KEY) or None
    raw_reviewers = os.getenv(REVIEWERS_ENV_KEY, "")
    reviewer_ids = tuple(r.strip() for r in raw_reviewers.split(",") if r.strip())
    return ParticipantCriteria(
        producer_id=producer_id, reviewer_ids=reviewer_ids, max_reviewers=max_reviewers
    )


class ParticipantDirectory:
    """Resolves the producer and reviewer panel for a new execution.

    Explicit ids win; otherwise agents are taken newest first, the first one
    producing and the next ``max_reviewers`` reviewing.
    """

    async def resolve(
        self, session: AsyncSession, criteria: ParticipantCriteria
    ) -> ParticipantAssignment:
        from . import db

        agents = await db.list_agents(session)
        by_id = {a.id: a for a in agents}

        if criteria.producer_id:
            producer = by_id.get(criteria.producer_id)
            if producer is None:
                raise InsufficientParticipantsError(
                    f"Producer agent not found: {criteria.producer_id}", step="resolve_participants"
                )
        elif agents:
            producer = agents[0]
        else:
            producer = None

        if criteria.reviewer_ids:
            reviewers = [by_id[i] for i in criteria.reviewer_ids if i in by_id]
        else:
            reviewers = list(agents)

        reviewers = _distinct(r for r in reviewers if producer is None or r.id != producer.id)
        reviewers = reviewers[: max(criteria.max_reviewers, 1)]

        if producer is None or not reviewers:
            available = len(agents)
            raise InsufficientParticipantsError(
                "Need at least 2 agents to execute tasks (1 primary + 1 reviewer), "
                f"{available} available",
                step="resolve_participants",
            )

        return ParticipantAssignment(
            producer=Participant.from_agent(producer),
            reviewers=tuple(Participant.from_agent(r) for r in reviewers),
        )

    async def load(self, session: AsyncSession, agent_ids: Sequence[str]) -> list[Participant]:
        from . import db

        return [Participant.from_agent(a) for a in await db.get_agents_by_ids(session, agent_ids)]


def _distinct(agents) -> list[Agent]:
    seen: set[str] = set()
    result = []
    for agent in agents:
        if agent.id in seen:
            continue
        seen.add(agent.id)
        result.append(agent)
    return result
