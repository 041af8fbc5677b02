"""Candidate eligibility and ranking.

Pure functions over anything shaped like an agent (``id``, ``status``,
``capabilities``, ``created_at``). The ordering is total and deterministic
so a retried ``find_candidates`` returns the same list.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from intent_exchange.domain.enums import AgentStatus

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable
    from datetime import datetime


class AgentLike(Protocol):
    id: uuid.UUID
    status: str
    capabilities: list[str]
    created_at: datetime


@dataclass(frozen=True)
class ScoredCandidate:
    """An eligible agent with its score.

    Attributes:
        agent: The agent object passed in.
        overlap: Number of agent capabilities among required capabilities + tags.
        match_score: ``overlap`` as a percentage of required capabilities + tags.
    """

    agent: AgentLike
    overlap: int
    match_score: int


def normalize_tags(tags: Iterable[str] | None) -> list[str]:
    """Lower-case, strip, de-duplicate and sort capability tags."""
    if not tags:
        return []
    return sorted({t.strip().lower() for t in tags if t and t.strip()})


def is_eligible(agent: AgentLike, required: Iterable[str]) -> bool:
    """An agent is eligible when idle and its capabilities cover ``required``."""
    if agent.status != AgentStatus.IDLE:
        return False
    return set(normalize_tags(required)) <= set(normalize_tags(agent.capabilities))


def score(agent: AgentLike, required: Iterable[str], tags: Iterable[str] = ()) -> ScoredCandidate:
    wanted = set(normalize_tags(required)) | set(normalize_tags(tags))
    overlap = len(wanted & set(normalize_tags(agent.capabilities)))
    match_score = round(overlap * 100 / len(wanted)) if wanted else 100
    return ScoredCandidate(agent=agent, overlap=overlap, match_score=match_score)


def rank_candidates(
    agents: Iterable[AgentLike],
    required: Iterable[str],
    tags: Iterable[str] = (),
) -> list[ScoredCandidate]:
    """Filter to eligible agents and order them best-first.

    Order: overlap descending, then newest agent first, then agent id.
    """
    required = normalize_tags(required)
    tags = normalize_tags(tags)
    scored = [score(a, required, tags) for a in agents if is_eligible(a, required)]
    # Two stable sorts: id ascending first, then the primary keys.
    scored.sort(key=lambda c: str(c.agent.id))
    scored.sort(key=lambda c: (c.overlap, c.agent.created_at), reverse=True)
    return scored
