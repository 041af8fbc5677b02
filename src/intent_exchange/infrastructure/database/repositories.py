"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the unit of work's responsibility).

Status columns are written only through ``set_status`` and only by the
services that own the entity; every write flushes immediately so a version
conflict surfaces at the statement that caused it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import func, select

from intent_exchange.domain.enums import IntentStatus, MatchStatus
from intent_exchange.infrastructure.database.orm_models import (
    Agent,
    Escrow,
    Intent,
    LedgerEntry,
    Match,
)

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from intent_exchange.domain.enums import AgentStatus, EscrowStatus


class AgentRepository:
    """Data access for agents."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, agent: Agent) -> Agent:
        self._session.add(agent)
        await self._session.flush()
        return agent

    async def get_by_id(self, agent_id: uuid.UUID) -> Agent | None:
        result = await self._session.execute(select(Agent).where(Agent.id == agent_id))
        return result.scalar_one_or_none()

    async def list_all(self, owner_id: str | None = None) -> list[Agent]:
        stmt = select(Agent).order_by(Agent.created_at.desc())
        if owner_id is not None:
            stmt = stmt.where(Agent.owner_id == owner_id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_by_status(self, status: AgentStatus) -> list[Agent]:
        result = await self._session.execute(
            select(Agent).where(Agent.status == status.value).order_by(Agent.created_at.desc())
        )
        return list(result.scalars().all())

    async def set_status(self, agent: Agent, new_status: AgentStatus) -> Agent:
        """Update the status (call AFTER state machine validation)."""
        agent.status = new_status.value
        await self._session.flush()
        return agent

    async def save(self, agent: Agent) -> Agent:
        await self._session.flush()
        return agent

    async def delete(self, agent: Agent) -> None:
        await self._session.delete(agent)
        await self._session.flush()


class IntentRepository:
    """Data access for intents."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, intent: Intent) -> Intent:
        self._session.add(intent)
        await self._session.flush()
        return intent

    async def get_by_id(self, intent_id: uuid.UUID) -> Intent | None:
        result = await self._session.execute(select(Intent).where(Intent.id == intent_id))
        return result.scalar_one_or_none()

    async def list_all(
        self, owner_id: str | None = None, status: IntentStatus | None = None
    ) -> list[Intent]:
        stmt = select(Intent).order_by(Intent.created_at.desc())
        if owner_id is not None:
            stmt = stmt.where(Intent.owner_id == owner_id)
        if status is not None:
            stmt = stmt.where(Intent.status == status.value)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_overdue(self, now: datetime) -> list[Intent]:
        """Open or matched intents whose deadline has passed."""
        result = await self._session.execute(
            select(Intent)
            .where(
                Intent.status.in_([IntentStatus.OPEN.value, IntentStatus.MATCHED.value]),
                Intent.deadline.is_not(None),
                Intent.deadline <= now,
            )
            .order_by(Intent.deadline.asc())
        )
        return list(result.scalars().all())

    async def set_status(
        self,
        intent: Intent,
        new_status: IntentStatus,
        closed_at: datetime | None = None,
        reason: str | None = None,
    ) -> Intent:
        """Update the status (call AFTER state machine validation)."""
        intent.status = new_status.value
        if closed_at is not None:
            intent.closed_at = closed_at
        if reason is not None:
            intent.close_reason = reason
        await self._session.flush()
        return intent


class MatchRepository:
    """Data access for matches."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, match: Match) -> Match:
        self._session.add(match)
        await self._session.flush()
        return match

    async def get_by_id(self, match_id: uuid.UUID) -> Match | None:
        result = await self._session.execute(select(Match).where(Match.id == match_id))
        return result.scalar_one_or_none()

    async def get_by_intent(
        self, intent_id: uuid.UUID, status: MatchStatus | None = None
    ) -> list[Match]:
        """Matches for an intent, best score first, then oldest first."""
        stmt = (
            select(Match)
            .where(Match.intent_id == intent_id)
            .order_by(Match.match_score.desc(), Match.created_at.asc())
        )
        if status is not None:
            stmt = stmt.where(Match.status == status.value)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_live_for_pair(self, intent_id: uuid.UUID, agent_id: uuid.UUID) -> Match | None:
        result = await self._session.execute(
            select(Match).where(
                Match.intent_id == intent_id,
                Match.agent_id == agent_id,
                Match.status.in_([MatchStatus.PROPOSED.value, MatchStatus.ACCEPTED.value]),
            )
        )
        return result.scalar_one_or_none()

    async def count_active_for_agent(self, agent_id: uuid.UUID) -> int:
        """Live matches whose intent has not reached a terminal status."""
        result = await self._session.execute(
            select(func.count(Match.id))
            .join(Intent, Intent.id == Match.intent_id)
            .where(
                Match.agent_id == agent_id,
                Match.status.in_([MatchStatus.PROPOSED.value, MatchStatus.ACCEPTED.value]),
                Intent.status.in_(
                    [
                        IntentStatus.OPEN.value,
                        IntentStatus.MATCHED.value,
                        IntentStatus.IN_PROGRESS.value,
                    ]
                ),
            )
        )
        return int(result.scalar_one())

    async def set_status(self, match: Match, new_status: MatchStatus) -> Match:
        """Update the status (call AFTER state machine validation)."""
        match.status = new_status.value
        await self._session.flush()
        return match

    async def save(self, match: Match) -> Match:
        await self._session.flush()
        return match


class EscrowRepository:
    """Data access for escrows."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, escrow: Escrow) -> Escrow:
        self._session.add(escrow)
        await self._session.flush()
        return escrow

    async def get_by_id(self, escrow_id: uuid.UUID) -> Escrow | None:
        result = await self._session.execute(select(Escrow).where(Escrow.id == escrow_id))
        return result.scalar_one_or_none()

    async def get_by_match(self, match_id: uuid.UUID) -> Escrow | None:
        result = await self._session.execute(select(Escrow).where(Escrow.match_id == match_id))
        return result.scalar_one_or_none()

    async def get_by_intent(self, intent_id: uuid.UUID) -> Escrow | None:
        result = await self._session.execute(
            select(Escrow).where(Escrow.intent_id == intent_id).order_by(Escrow.created_at.desc())
        )
        return result.scalars().first()

    async def get_pending(self) -> list[Escrow]:
        """Escrows with a gateway call in flight or stuck after retries."""
        result = await self._session.execute(
            select(Escrow)
            .where(Escrow.pending_status.is_not(None))
            .order_by(Escrow.updated_at.asc())
        )
        return list(result.scalars().all())

    async def list_ids(self) -> list[uuid.UUID]:
        result = await self._session.execute(select(Escrow.id).order_by(Escrow.created_at.asc()))
        return list(result.scalars().all())

    async def set_status(self, escrow: Escrow, new_status: EscrowStatus) -> Escrow:
        """Update the status (call AFTER state machine validation)."""
        escrow.status = new_status.value
        await self._session.flush()
        return escrow

    async def save(self, escrow: Escrow) -> Escrow:
        await self._session.flush()
        return escrow


class LedgerRepository:
    """Data access for the append-only ledger. ``append`` is the ONLY write."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(self, entry: LedgerEntry) -> LedgerEntry:
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def get_by_escrow(self, escrow_id: uuid.UUID) -> list[LedgerEntry]:
        """All entries for an escrow in chronological order."""
        result = await self._session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.escrow_id == escrow_id)
            .order_by(LedgerEntry.created_at.asc(), LedgerEntry.kind.desc())
        )
        return list(result.scalars().all())

    async def get_by_key(self, idempotency_key: str) -> list[LedgerEntry]:
        result = await self._session.execute(
            select(LedgerEntry).where(LedgerEntry.idempotency_key == idempotency_key)
        )
        return list(result.scalars().all())

    async def get_history(
        self,
        *,
        payer_id: str | None = None,
        agent_id: uuid.UUID | None = None,
    ) -> list[tuple[LedgerEntry, Escrow, Intent, Agent | None]]:
        """Entries joined to their escrow, intent and agent, newest first.

        ``payer_id`` keeps entries of intents that owner posted; ``agent_id``
        keeps entries of escrows whose match went to that agent.
        """
        stmt = (
            select(LedgerEntry, Escrow, Intent, Agent)
            .join(Escrow, Escrow.id == LedgerEntry.escrow_id)
            .join(Intent, Intent.id == Escrow.intent_id)
            .join(Match, Match.id == Escrow.match_id)
            .outerjoin(Agent, Agent.id == Match.agent_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.kind.asc())
        )
        if payer_id is not None:
            stmt = stmt.where(Intent.owner_id == payer_id)
        if agent_id is not None:
            stmt = stmt.where(Match.agent_id == agent_id)
        result = await self._session.execute(stmt)
        return [(entry, escrow, intent, agent) for entry, escrow, intent, agent in result.all()]
