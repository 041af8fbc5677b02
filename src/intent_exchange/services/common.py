"""Helpers shared by the application services."""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeVar

from intent_exchange.domain.exceptions import EntityNotFoundError, NotAuthorizedError

if TYPE_CHECKING:
    import uuid
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

# Actor used by the sweep, auto-proposals and operator decisions.
SYSTEM_ACTOR = "SYSTEM"


def ensure_actor(actor: str, owner_id: str | None, action: str) -> None:
    """Raise NotAuthorizedError unless ``actor`` owns the entity (or is SYSTEM)."""
    if actor == SYSTEM_ACTOR:
        return
    if owner_id is None or actor != owner_id:
        raise NotAuthorizedError(actor, action)


async def get_or_raise(
    getter: Callable[[uuid.UUID], Awaitable[T | None]],
    entity: str,
    entity_id: uuid.UUID,
) -> T:
    found = await getter(entity_id)
    if found is None:
        raise EntityNotFoundError(entity, str(entity_id))
    return found
