"""Matching Engine: candidate selection and match records.

Proposing a match never touches intent or agent status. Acceptance is the
one multi-row transition here and runs as a single unit of work: the chosen
match, its superseded siblings, the intent and the agent all move together
or not at all.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeVar

from intent_exchange.config import get_settings
from intent_exchange.domain.enums import AgentStatus, EntityType, IntentStatus, MatchStatus
from intent_exchange.domain.exceptions import (
    ConflictError,
    NotAuthorizedError,
    PreconditionFailedError,
    StaleStateError,
)
from intent_exchange.domain.matching import is_eligible, rank_candidates, score
from intent_exchange.domain.state_machine import (
    AgentStateMachine,
    IntentStateMachine,
    MatchStateMachine,
    guard,
)
from intent_exchange.infrastructure.database.orm_models import Match
from intent_exchange.infrastructure.database.unit_of_work import run_in_transaction
from intent_exchange.logging_config import get_logger
from intent_exchange.services.common import SYSTEM_ACTOR, ensure_actor, get_or_raise

if TYPE_CHECKING:
    import uuid
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from intent_exchange.config import Settings
    from intent_exchange.domain.matching import ScoredCandidate
    from intent_exchange.domain.notifications import StatusNotifier
    from intent_exchange.infrastructure.database.orm_models import Agent, Intent
    from intent_exchange.infrastructure.database.unit_of_work import UnitOfWork

logger = get_logger(__name__)

T = TypeVar("T")


class MatchingEngine:
    """Selects eligible agents for intents and records matches."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: StatusNotifier | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    async def candidates_in(self, uow: UnitOfWork, intent: Intent) -> list[ScoredCandidate]:
        idle = await uow.agents.get_by_status(AgentStatus.IDLE)
        return rank_candidates(idle, intent.required_capabilities, intent.tags)

    async def find_candidates(self, intent_id: uuid.UUID) -> list[ScoredCandidate]:
        """Eligible agents for an intent, best first. Deterministic for equal inputs."""

        async def work(uow: UnitOfWork) -> list[ScoredCandidate]:
            intent = await get_or_raise(uow.intents.get_by_id, "intent", intent_id)
            return await self.candidates_in(uow, intent)

        return await run_in_transaction(self._session_factory, work)

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    async def propose_in(
        self,
        uow: UnitOfWork,
        intent: Intent,
        agent: Agent,
        proposed_by: str = SYSTEM_ACTOR,
    ) -> Match:
        """Create a ``proposed`` match inside the caller's transaction.

        Raises:
            ConflictError: Intent not open, agent not idle, or the pair
                already has a live match.
            PreconditionFailedError: Agent lacks a required capability.
        """
        if intent.status != IntentStatus.OPEN:
            raise ConflictError(f"Intent {intent.id} is {intent.status}, not open")
        if agent.status != AgentStatus.IDLE:
            raise ConflictError(f"Agent {agent.id} is {agent.status}, not idle")
        if not is_eligible(agent, intent.required_capabilities):
            raise PreconditionFailedError(
                f"Agent {agent.id} lacks capabilities required by intent {intent.id}"
            )
        if await uow.matches.get_live_for_pair(intent.id, agent.id) is not None:
            raise ConflictError(f"Agent {agent.id} already has a live match for intent {intent.id}")

        scored = score(agent, intent.required_capabilities, intent.tags)
        match = await uow.matches.create(
            Match(
                intent_id=intent.id,
                agent_id=agent.id,
                status=MatchStatus.PROPOSED.value,
                match_score=scored.match_score,
                proposed_by=proposed_by,
            )
        )
        uow.record(
            EntityType.MATCH,
            match.id,
            None,
            MatchStatus.PROPOSED,
            intent_id=intent.id,
            agent_id=agent.id,
        )
        logger.info(
            "match.proposed",
            match_id=str(match.id),
            intent_id=str(intent.id),
            agent_id=str(agent.id),
            score=scored.match_score,
            by=proposed_by,
        )
        return match

    async def propose_match(self, intent_id: uuid.UUID, agent_id: uuid.UUID) -> Match:
        async def work(uow: UnitOfWork) -> Match:
            intent = await get_or_raise(uow.intents.get_by_id, "intent", intent_id)
            agent = await get_or_raise(uow.agents.get_by_id, "agent", agent_id)
            return await self.propose_in(uow, intent, agent)

        return await self._transaction(work)

    async def apply(self, intent_id: uuid.UUID, agent_id: uuid.UUID, actor: str) -> Match:
        """An agent owner puts their agent forward for an open intent."""

        async def work(uow: UnitOfWork) -> Match:
            intent = await get_or_raise(uow.intents.get_by_id, "intent", intent_id)
            agent = await get_or_raise(uow.agents.get_by_id, "agent", agent_id)
            ensure_actor(actor, agent.owner_id, f"apply with agent {agent_id}")
            return await self.propose_in(uow, intent, agent, proposed_by=actor)

        return await self._transaction(work)

    # ------------------------------------------------------------------
    # Acceptance
    # ------------------------------------------------------------------

    async def accept_in(self, uow: UnitOfWork, match: Match) -> tuple[Match, Intent, Agent]:
        """Atomically accept ``match`` inside the caller's transaction.

        Raises:
            StaleStateError: The match, its intent or its agent is no longer
                in the state acceptance requires.
        """
        if match.status != MatchStatus.PROPOSED:
            raise StaleStateError(f"Match {match.id} is {match.status}, not proposed")
        intent = await get_or_raise(uow.intents.get_by_id, "intent", match.intent_id)
        if intent.status != IntentStatus.OPEN:
            raise StaleStateError(f"Intent {intent.id} is {intent.status}, not open")
        if match.agent_id is None:
            raise StaleStateError(f"Agent of match {match.id} no longer exists")
        agent = await get_or_raise(uow.agents.get_by_id, "agent", match.agent_id)
        if agent.status != AgentStatus.IDLE:
            raise StaleStateError(f"Agent {agent.id} is {agent.status}, not idle")

        guard(MatchStateMachine, "match", match.status, "accept")
        await uow.matches.set_status(match, MatchStatus.ACCEPTED)
        uow.record(EntityType.MATCH, match.id, MatchStatus.PROPOSED, MatchStatus.ACCEPTED)

        for other in await uow.matches.get_by_intent(intent.id, MatchStatus.PROPOSED):
            if other.id == match.id:
                continue
            guard(MatchStateMachine, "match", other.status, "supersede")
            await uow.matches.set_status(other, MatchStatus.SUPERSEDED)
            uow.record(EntityType.MATCH, other.id, MatchStatus.PROPOSED, MatchStatus.SUPERSEDED)

        guard(IntentStateMachine, "intent", intent.status, "accept")
        await uow.intents.set_status(intent, IntentStatus.MATCHED)
        uow.record(EntityType.INTENT, intent.id, IntentStatus.OPEN, IntentStatus.MATCHED)

        guard(AgentStateMachine, "agent", agent.status, "match")
        await uow.agents.set_status(agent, AgentStatus.MATCHED)
        uow.record(EntityType.AGENT, agent.id, AgentStatus.IDLE, AgentStatus.MATCHED)

        logger.info(
            "match.accepted",
            match_id=str(match.id),
            intent_id=str(intent.id),
            agent_id=str(agent.id),
        )
        return match, intent, agent

    async def accept_match(self, match_id: uuid.UUID) -> Match:
        """Accept a proposed match; all other proposals for the intent are superseded."""

        async def work(uow: UnitOfWork) -> Match:
            match = await get_or_raise(uow.matches.get_by_id, "match", match_id)
            accepted, _, _ = await self.accept_in(uow, match)
            return accepted

        return await self._transaction(work)

    # ------------------------------------------------------------------
    # Rejection
    # ------------------------------------------------------------------

    async def reject_match(self, match_id: uuid.UUID, actor: str = SYSTEM_ACTOR) -> Match:
        """Turn down a proposed match. Either side of the pairing may reject."""

        async def work(uow: UnitOfWork) -> Match:
            match = await get_or_raise(uow.matches.get_by_id, "match", match_id)
            intent = await get_or_raise(uow.intents.get_by_id, "intent", match.intent_id)
            agent = await uow.agents.get_by_id(match.agent_id) if match.agent_id else None
            parties = {intent.owner_id, agent.owner_id if agent else None}
            if actor != SYSTEM_ACTOR and actor not in parties:
                raise NotAuthorizedError(actor, f"reject match {match_id}")
            if match.status != MatchStatus.PROPOSED:
                raise ConflictError(f"Match {match_id} is {match.status}, not proposed")
            guard(MatchStateMachine, "match", match.status, "reject")
            await uow.matches.set_status(match, MatchStatus.REJECTED)
            uow.record(EntityType.MATCH, match.id, MatchStatus.PROPOSED, MatchStatus.REJECTED)
            logger.info("match.rejected", match_id=str(match_id), by=actor)
            return match

        return await self._transaction(work)

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_match(self, match_id: uuid.UUID) -> Match:
        return await run_in_transaction(
            self._session_factory,
            lambda uow: get_or_raise(uow.matches.get_by_id, "match", match_id),
        )

    async def list_matches(
        self, intent_id: uuid.UUID, status: MatchStatus | None = None
    ) -> list[Match]:
        async def work(uow: UnitOfWork) -> list[Match]:
            await get_or_raise(uow.intents.get_by_id, "intent", intent_id)
            return await uow.matches.get_by_intent(intent_id, status)

        return await run_in_transaction(self._session_factory, work)

    async def _transaction(self, work: Callable[[UnitOfWork], Awaitable[T]]) -> T:
        return await run_in_transaction(
            self._session_factory,
            work,
            notifier=self._notifier,
            max_attempts=self._settings.concurrency_max_attempts,
        )
