"""Agent Service: the agent registry.

Owners manage profile fields and availability. The matching engine and the
coordinator move agents between idle, matched and busy; this service only
toggles idle <-> disabled.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeVar

from intent_exchange.config import get_settings
from intent_exchange.domain.enums import AgentStatus, EntityType
from intent_exchange.domain.exceptions import ConflictError, PreconditionFailedError
from intent_exchange.domain.matching import normalize_tags
from intent_exchange.domain.state_machine import AgentStateMachine, guard
from intent_exchange.infrastructure.database.orm_models import Agent
from intent_exchange.infrastructure.database.unit_of_work import run_in_transaction
from intent_exchange.logging_config import get_logger
from intent_exchange.services.common import ensure_actor, get_or_raise

if TYPE_CHECKING:
    import uuid
    from collections.abc import Awaitable, Callable, Iterable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from intent_exchange.config import Settings
    from intent_exchange.domain.notifications import StatusNotifier
    from intent_exchange.infrastructure.database.unit_of_work import UnitOfWork

logger = get_logger(__name__)

T = TypeVar("T")


class AgentService:
    """Registers agents and manages their profiles."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: StatusNotifier | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._settings = settings or get_settings()

    async def register_agent(
        self,
        owner_id: str,
        name: str,
        capabilities: Iterable[str],
        wallet_address: str,
        description: str | None = None,
    ) -> Agent:
        """Create an ``idle`` agent owned by ``owner_id``."""
        if not wallet_address.strip():
            raise PreconditionFailedError("Agent wallet address is required")

        async def work(uow: UnitOfWork) -> Agent:
            agent = await uow.agents.create(
                Agent(
                    owner_id=owner_id,
                    name=name,
                    description=description,
                    capabilities=normalize_tags(capabilities),
                    wallet_address=wallet_address.strip(),
                    status=AgentStatus.IDLE.value,
                )
            )
            uow.record(EntityType.AGENT, agent.id, None, AgentStatus.IDLE, owner=owner_id)
            return agent

        agent = await self._transaction(work)
        logger.info("agent.registered", agent_id=str(agent.id), owner=owner_id)
        return agent

    async def update_profile(
        self,
        agent_id: uuid.UUID,
        actor: str,
        *,
        name: str | None = None,
        description: str | None = None,
        capabilities: Iterable[str] | None = None,
        wallet_address: str | None = None,
    ) -> Agent:
        """Owner-only edit of profile fields. Status is never touched here."""

        async def work(uow: UnitOfWork) -> Agent:
            agent = await get_or_raise(uow.agents.get_by_id, "agent", agent_id)
            ensure_actor(actor, agent.owner_id, f"edit agent {agent_id}")
            if name is not None:
                agent.name = name
            if description is not None:
                agent.description = description
            if capabilities is not None:
                agent.capabilities = normalize_tags(capabilities)
            if wallet_address is not None:
                if not wallet_address.strip():
                    raise PreconditionFailedError("Agent wallet address is required")
                agent.wallet_address = wallet_address.strip()
            return await uow.agents.save(agent)

        agent = await self._transaction(work)
        logger.info("agent.profile_updated", agent_id=str(agent_id))
        return agent

    async def disable_agent(self, agent_id: uuid.UUID, actor: str) -> Agent:
        return await self._toggle(agent_id, actor, "disable", AgentStatus.DISABLED)

    async def enable_agent(self, agent_id: uuid.UUID, actor: str) -> Agent:
        return await self._toggle(agent_id, actor, "enable", AgentStatus.IDLE)

    async def delete_agent(self, agent_id: uuid.UUID, actor: str) -> None:
        """Delete an agent that no live match of an unfinished intent references.

        Raises:
            ConflictError: The agent is still referenced by an active match.
        """

        async def work(uow: UnitOfWork) -> None:
            agent = await get_or_raise(uow.agents.get_by_id, "agent", agent_id)
            ensure_actor(actor, agent.owner_id, f"delete agent {agent_id}")
            active = await uow.matches.count_active_for_agent(agent_id)
            if active:
                raise ConflictError(f"Agent {agent_id} is referenced by {active} active match(es)")
            await uow.agents.delete(agent)

        await self._transaction(work)
        logger.info("agent.deleted", agent_id=str(agent_id), by=actor)

    async def get_agent(self, agent_id: uuid.UUID) -> Agent:
        return await self._transaction(
            lambda uow: get_or_raise(uow.agents.get_by_id, "agent", agent_id)
        )

    async def list_agents(self, owner_id: str | None = None) -> list[Agent]:
        return await self._transaction(lambda uow: uow.agents.list_all(owner_id))

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _toggle(
        self, agent_id: uuid.UUID, actor: str, event_name: str, new_status: AgentStatus
    ) -> Agent:
        async def work(uow: UnitOfWork) -> Agent:
            agent = await get_or_raise(uow.agents.get_by_id, "agent", agent_id)
            ensure_actor(actor, agent.owner_id, f"{event_name} agent {agent_id}")
            old = agent.status
            guard(AgentStateMachine, "agent", old, event_name)
            await uow.agents.set_status(agent, new_status)
            uow.record(EntityType.AGENT, agent.id, old, new_status)
            return agent

        agent = await self._transaction(work)
        logger.info(f"agent.{new_status.value}", agent_id=str(agent_id), by=actor)
        return agent

    async def _transaction(self, work: Callable[[UnitOfWork], Awaitable[T]]) -> T:
        return await run_in_transaction(
            self._session_factory,
            work,
            notifier=self._notifier,
            max_attempts=self._settings.concurrency_max_attempts,
        )
