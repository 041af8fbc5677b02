"""Transactional unit of work with optimistic-concurrency retry.

A unit of work is one short database transaction. Every versioned row it
writes is updated conditionally on the version it read; if another writer
got there first SQLAlchemy raises StaleDataError, the whole transaction is
rolled back and ``work`` runs again from scratch against fresh state. Nothing
is ever partially applied.

Status-change events recorded during the unit of work are handed to the
notifier only after commit, so subscribers never observe a rolled-back
transition.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_random,
)

from intent_exchange.config import get_settings
from intent_exchange.domain.exceptions import ConflictError
from intent_exchange.domain.notifications import StatusChangeEvent
from intent_exchange.infrastructure.database.repositories import (
    AgentRepository,
    EscrowRepository,
    IntentRepository,
    LedgerRepository,
    MatchRepository,
)
from intent_exchange.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
    from tenacity import RetryCallState

    from intent_exchange.domain.enums import EntityType
    from intent_exchange.domain.notifications import StatusNotifier

logger = get_logger(__name__)

T = TypeVar("T")


class UnitOfWork:
    """Repositories bound to one session, plus the events it produced."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.agents = AgentRepository(session)
        self.intents = IntentRepository(session)
        self.matches = MatchRepository(session)
        self.escrows = EscrowRepository(session)
        self.ledger = LedgerRepository(session)
        self.events: list[StatusChangeEvent] = []

    def record(
        self,
        entity_type: EntityType,
        entity_id: object,
        old_status: str | None,
        new_status: str,
        **metadata: object,
    ) -> None:
        """Queue a status-change event for publication after commit."""
        self.events.append(
            StatusChangeEvent(
                entity_type=entity_type,
                entity_id=str(entity_id),
                old_status=old_status,
                new_status=new_status,
                metadata={k: str(v) for k, v in metadata.items() if v is not None},
            )
        )


def is_write_conflict(exc: BaseException) -> bool:
    """True for errors meaning a concurrent writer won; the unit of work is re-run."""
    if isinstance(exc, StaleDataError | IntegrityError):
        return True
    # SQLite reports lock contention as OperationalError
    return isinstance(exc, OperationalError) and "locked" in str(exc).lower()


def _log_conflict(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.info(
        "database.write_conflict_retry",
        attempt=retry_state.attempt_number,
        error=type(exc).__name__ if exc else None,
    )


async def publish_events(
    events: Iterable[StatusChangeEvent], notifier: StatusNotifier | None
) -> None:
    """Hand events to the notifier. Best-effort: failures are logged, never raised."""
    if notifier is None:
        return
    for evt in events:
        try:
            await notifier.publish(evt)
        except Exception as exc:
            logger.warning(
                "notification.publish_failed",
                entity_type=evt.entity_type.value,
                entity_id=evt.entity_id,
                error=str(exc),
            )


async def run_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    work: Callable[[UnitOfWork], Awaitable[T]],
    *,
    notifier: StatusNotifier | None = None,
    max_attempts: int | None = None,
) -> T:
    """Run ``work`` in its own transaction, re-running it on write conflicts.

    Raises:
        ConflictError: The conflict persisted past ``max_attempts``.
        MarketplaceError: Whatever ``work`` raises (after rollback).
    """
    attempts = max_attempts or get_settings().concurrency_max_attempts
    uow: UnitOfWork | None = None
    result: T

    try:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(is_write_conflict),
            stop=stop_after_attempt(attempts),
            wait=wait_random(min=0, max=0.05),
            before_sleep=_log_conflict,
        ):
            with attempt:
                async with session_factory() as session:
                    uow = UnitOfWork(session)
                    try:
                        result = await work(uow)
                        await session.commit()
                    except BaseException:
                        await session.rollback()
                        raise
    except RetryError as err:
        last = err.last_attempt.exception()
        logger.warning("database.write_conflict_exhausted", attempts=attempts, error=str(last))
        raise ConflictError(
            f"Concurrent update did not settle after {attempts} attempts"
        ) from last

    await publish_events(uow.events if uow else (), notifier)
    return result
