"""Liveness and dependency health.

The database is required; Redis only carries status notifications, so an
unconfigured Redis reports ``disabled`` and does not degrade the service.
Escrows stuck with a pending transfer are counted so an operator can see a
settlement backlog before the sweep clears it.
"""

from __future__ import annotations

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError

from intent_exchange.api.deps import get_coordinator
from intent_exchange.infrastructure.database.engine import ping_db
from intent_exchange.infrastructure.notifications import get_redis
from intent_exchange.logging_config import get_logger
from intent_exchange.schemas.marketplace import HealthResponse
from intent_exchange.services.intent_coordinator import IntentCoordinator

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)

VERSION = "0.1.0"


async def _database_status() -> str:
    try:
        await ping_db()
    except (SQLAlchemyError, OSError) as exc:
        logger.error("health.database_down", error=str(exc))
        return f"unhealthy: {exc}"
    return "healthy"


async def _redis_status() -> str:
    try:
        client = get_redis()
    except RuntimeError:
        return "disabled"
    try:
        await client.ping()
    except (aioredis.RedisError, OSError) as exc:
        logger.warning("health.redis_down", error=str(exc))
        return f"unhealthy: {exc}"
    return "healthy"


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health_check(
    coordinator: IntentCoordinator = Depends(get_coordinator),
) -> HealthResponse:
    database = await _database_status()
    redis_state = await _redis_status()

    pending: int | None = None
    if database == "healthy":
        pending = len(await coordinator.escrows.list_pending())

    degraded = database != "healthy" or redis_state.startswith("unhealthy")
    return HealthResponse(
        status="degraded" if degraded else "ok",
        version=VERSION,
        database=database,
        redis=redis_state,
        pending_escrows=pending,
    )
