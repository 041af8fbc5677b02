"""FastAPI dependency injection providers.

Services are built once at startup and stored on ``app.state.container``;
route handlers receive them through Depends(). The acting user comes from
the ``X-User-Id`` header set by the upstream auth layer.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING

from fastapi import Depends, Header, HTTPException, Request

from intent_exchange.config import Settings  # noqa: TC001
from intent_exchange.orchestration.sweeper import ExpirySweeper
from intent_exchange.services.agent_service import AgentService
from intent_exchange.services.common import SYSTEM_ACTOR
from intent_exchange.services.intent_coordinator import IntentCoordinator

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from intent_exchange.domain.notifications import StatusNotifier
    from intent_exchange.domain.settlement_protocol import SettlementGateway


@dataclass
class ServiceContainer:
    """Everything the routes need, wired against one database and gateway."""

    agents: AgentService
    coordinator: IntentCoordinator
    sweeper: ExpirySweeper
    gateway: SettlementGateway
    settings: Settings


def build_container(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: SettlementGateway,
    notifier: StatusNotifier | None,
    settings: Settings,
) -> ServiceContainer:
    coordinator = IntentCoordinator(session_factory, gateway, notifier, settings)
    return ServiceContainer(
        agents=AgentService(session_factory, notifier, settings),
        coordinator=coordinator,
        sweeper=ExpirySweeper(coordinator, settings),
        gateway=gateway,
        settings=settings,
    )


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise RuntimeError("Services not initialized. Is the app lifespan running?")
    return container


def get_agent_service(container: ServiceContainer = Depends(get_container)) -> AgentService:
    return container.agents


def get_coordinator(container: ServiceContainer = Depends(get_container)) -> IntentCoordinator:
    return container.coordinator


def get_actor(x_user_id: str | None = Header(default=None)) -> str:
    """Identity of the caller, supplied by the auth collaborator.

    The reserved operator identity is never accepted from this header;
    operator routes authenticate through ``get_operator`` instead.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    actor = x_user_id.strip()
    if actor.upper() == SYSTEM_ACTOR:
        raise HTTPException(status_code=403, detail=f"'{actor}' is a reserved identity")
    return actor


def get_operator(
    x_operator_key: str | None = Header(default=None),
    container: ServiceContainer = Depends(get_container),
) -> str:
    """Operator identity for dispute resolution and transfer recovery.

    Requires ``X-Operator-Key`` to match ``settings.operator_api_key``. With no
    key configured, operator routes are closed.
    """
    expected = container.settings.operator_api_key
    if not x_operator_key:
        raise HTTPException(status_code=401, detail="X-Operator-Key header is required")
    if not expected or not secrets.compare_digest(x_operator_key, expected):
        raise HTTPException(status_code=403, detail="Invalid operator key")
    return SYSTEM_ACTOR
