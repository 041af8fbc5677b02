"""Shared test fixtures for the intent exchange test suite.

Provides:
    - A file-backed SQLite database per test (real transactions, real locks)
    - The service graph wired to a simulated settlement rail
    - Factory fixtures for agents, intents and funded deals
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, NamedTuple

import pytest
import pytest_asyncio

from intent_exchange.config import Settings
from intent_exchange.infrastructure.database.engine import create_engine_for, make_session_factory
from intent_exchange.infrastructure.database.orm_models import Base
from intent_exchange.infrastructure.notifications import InMemoryStatusNotifier
from intent_exchange.infrastructure.settlement import SimulatedSettlementGateway
from intent_exchange.services.agent_service import AgentService
from intent_exchange.services.intent_coordinator import IntentCoordinator

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from intent_exchange.infrastructure.database.orm_models import Agent, Escrow, Intent, Match

REQUESTER = "requester-1"
AGENT_OWNER = "agent-owner-1"
PAYER = "0xPAYER000000000000000000000000000000000001"
PAYEE = "0xAGENT000000000000000000000000000000000001"


class Deal(NamedTuple):
    """An intent with its accepted match and escrow, as returned right after acceptance."""

    agent: Agent
    intent: Intent
    match: Match
    escrow: Escrow


# ---------------------------------------------------------------------------
# Infrastructure Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at a throwaway database, with no retry backoff."""
    return Settings(
        _env_file=None,
        app_env="development",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'exchange.db'}",
        gateway_max_attempts=3,
        gateway_backoff_min_seconds=0,
        gateway_backoff_max_seconds=0,
        concurrency_max_attempts=5,
        max_auto_proposals=5,
        platform_fee_bps=0,
        sweep_interval_seconds=1,
        operator_api_key="test-operator-key",
    )


@pytest_asyncio.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_engine_for(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest.fixture
def gateway() -> SimulatedSettlementGateway:
    return SimulatedSettlementGateway()


@pytest.fixture
def notifier() -> InMemoryStatusNotifier:
    return InMemoryStatusNotifier()


# ---------------------------------------------------------------------------
# Service Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def coordinator(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: SimulatedSettlementGateway,
    notifier: InMemoryStatusNotifier,
    settings: Settings,
) -> IntentCoordinator:
    return IntentCoordinator(session_factory, gateway, notifier, settings)


@pytest.fixture
def agent_service(
    session_factory: async_sessionmaker[AsyncSession],
    notifier: InMemoryStatusNotifier,
    settings: Settings,
) -> AgentService:
    return AgentService(session_factory, notifier, settings)


# ---------------------------------------------------------------------------
# Domain Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def register(agent_service: AgentService):  # noqa: ANN201
    """Return an async factory that registers an idle agent."""

    async def _register(
        capabilities: tuple[str, ...] = ("python",),
        owner_id: str = AGENT_OWNER,
        name: str = "worker",
        wallet_address: str = PAYEE,
    ) -> Agent:
        return await agent_service.register_agent(
            owner_id=owner_id,
            name=name,
            capabilities=list(capabilities),
            wallet_address=wallet_address,
        )

    return _register


@pytest.fixture
def post_intent(coordinator: IntentCoordinator):  # noqa: ANN201
    """Return an async factory that posts an open intent."""

    async def _post(
        capabilities: tuple[str, ...] = ("python",),
        owner_id: str = REQUESTER,
        budget: Decimal = Decimal("100.000000"),
        tags: tuple[str, ...] = (),
        **kwargs: object,
    ) -> Intent:
        return await coordinator.create_intent(
            owner_id,
            "Scrape product prices",
            list(capabilities),
            budget,
            "USDC",
            PAYER,
            tags=list(tags),
            **kwargs,
        )

    return _post


@pytest_asyncio.fixture
async def deal(coordinator: IntentCoordinator, register, post_intent) -> Deal:  # noqa: ANN001
    """One agent, one intent, the auto-proposed match accepted and funded."""
    agent = await register()
    intent = await post_intent()
    [match] = await coordinator.matching.list_matches(intent.id)
    match = await coordinator.accept_match(match.id, REQUESTER)
    escrow = await coordinator.escrows.get_by_match(match.id)
    return Deal(agent=agent, intent=intent, match=match, escrow=escrow)


@pytest_asyncio.fixture
async def working_deal(coordinator: IntentCoordinator, deal: Deal) -> Deal:
    """Like ``deal`` but with work started (intent in_progress, agent busy)."""
    intent = await coordinator.start_work(deal.match.id, AGENT_OWNER)
    return deal._replace(intent=intent)
