"""Status-change fan-out over Redis pub/sub.

The Redis client is optional. When ``init_redis`` fails the application
falls back to ``InMemoryStatusNotifier`` and ``get_redis`` keeps raising
RuntimeError, which the health check reports as ``disabled``.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import redis.asyncio as aioredis

from intent_exchange.config import get_settings
from intent_exchange.logging_config import get_logger

if TYPE_CHECKING:
    from intent_exchange.domain.notifications import StatusChangeEvent

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis(url: str | None = None) -> aioredis.Redis:
    """Connect and ping. The shared client is only kept if the ping succeeds."""
    global _redis_client
    url = url or get_settings().redis_url
    client = aioredis.from_url(url, decode_responses=True)
    try:
        await client.ping()
    except (aioredis.RedisError, OSError):
        await client.aclose()
        raise
    _redis_client = client
    logger.info("redis.connected", url=url)
    return client


def get_redis() -> aioredis.Redis:
    if _redis_client is None:
        raise RuntimeError("Redis is not connected")
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is None:
        return
    await _redis_client.aclose()
    _redis_client = None
    logger.info("redis.disconnected")


class RedisStatusNotifier:
    """Publishes each status change as JSON on a pub/sub channel."""

    def __init__(self, redis: aioredis.Redis, channel: str) -> None:
        self._redis = redis
        self._channel = channel

    async def publish(self, event: StatusChangeEvent) -> None:
        try:
            await self._redis.publish(self._channel, json.dumps(event.to_dict()))
        except aioredis.RedisError as exc:
            logger.warning(
                "notification.redis_publish_failed",
                channel=self._channel,
                entity_id=event.entity_id,
                error=str(exc),
            )


class InMemoryStatusNotifier:
    """Collects events in a list. Used when Redis is not configured, and in tests."""

    def __init__(self) -> None:
        self.events: list[StatusChangeEvent] = []

    async def publish(self, event: StatusChangeEvent) -> None:
        self.events.append(event)

    def for_entity(self, entity_id: object) -> list[StatusChangeEvent]:
        key = str(entity_id)
        return [e for e in self.events if e.entity_id == key]

    def clear(self) -> None:
        self.events.clear()
