"""FastAPI entry point for the intent exchange.

Startup wires logging, the database, the status notifier, the settlement
gateway and the service container, then launches the expiry/recovery sweep.
Shutdown stops the sweep before closing the gateway and connections, so no
settlement is cut off halfway through a pass.

Run with:
    uvicorn intent_exchange.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import redis.asyncio as aioredis
from fastapi import FastAPI

from intent_exchange.config import get_settings
from intent_exchange.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from intent_exchange.config import Settings
    from intent_exchange.domain.notifications import StatusNotifier

VERSION = "0.1.0"

logger = get_logger(__name__)


async def _connect_notifier(settings: Settings) -> StatusNotifier:
    from intent_exchange.infrastructure.notifications import (
        InMemoryStatusNotifier,
        RedisStatusNotifier,
        init_redis,
    )

    try:
        client = await init_redis(settings.redis_url)
    except (aioredis.RedisError, OSError) as exc:
        logger.warning("app.notifications_in_memory", error=str(exc))
        return InMemoryStatusNotifier()
    return RedisStatusNotifier(client, settings.notification_channel)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    from intent_exchange.api.deps import build_container
    from intent_exchange.infrastructure.database.engine import (
        close_db,
        get_session_factory,
        init_db,
    )
    from intent_exchange.infrastructure.notifications import close_redis
    from intent_exchange.infrastructure.settlement import build_settlement_gateway

    settings = get_settings()
    setup_logging(log_level=settings.app_log_level, json_logs=not settings.is_development)
    logger.info("app.starting", env=settings.app_env, settlement=settings.settlement_mode)

    await init_db()
    notifier = await _connect_notifier(settings)
    gateway = build_settlement_gateway(settings)
    container = build_container(get_session_factory(), gateway, notifier, settings)
    app.state.container = container

    stop_sweep = asyncio.Event()
    sweep = asyncio.create_task(container.sweeper.run_forever(stop_sweep))
    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    try:
        yield
    finally:
        logger.info("app.stopping")
        stop_sweep.set()
        await sweep
        aclose = getattr(gateway, "aclose", None)
        if aclose is not None:
            await aclose()
        await close_db()
        await close_redis()
        logger.info("app.stopped")


def create_app() -> FastAPI:
    """Build the app with middleware and every router mounted."""
    from intent_exchange.api.middleware import setup_middleware
    from intent_exchange.api.routes import agents, escrows, health, intents, matches, payments

    settings = get_settings()
    app = FastAPI(
        title="Intent Exchange",
        description=(
            "Matches posted intents with capable agents and settles the work "
            "through escrow on an external payment rail."
        ),
        version=VERSION,
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
    )
    setup_middleware(app, settings.cors_origins)

    for module in (health, agents, intents, matches, escrows, payments):
        app.include_router(module.router)
    return app


app = create_app()
