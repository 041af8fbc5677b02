"""Async engine and session factory.

Services never hold a request-scoped session. Each state change runs in its
own short transaction through ``unit_of_work.run_in_transaction``, so no
database lock is held across a settlement gateway call.

PostgreSQL (asyncpg) is the production target. SQLite (aiosqlite) backs the
test suite and local runs; foreign keys are switched on per connection there
so ``ON DELETE SET NULL`` on matches behaves the same as on PostgreSQL.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from intent_exchange.config import get_settings
from intent_exchange.logging_config import get_logger

if TYPE_CHECKING:
    from intent_exchange.config import Settings

logger = get_logger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS = 15

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine_for(
    database_url: str, echo: bool = False, settings: Settings | None = None
) -> AsyncEngine:
    """Engine for ``database_url``; pool sizing only applies to PostgreSQL."""
    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
        )
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    settings = settings or get_settings()
    return create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Entities are returned to callers after commit, so they must not expire.
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def _shared_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for(settings.database_url, settings.db_echo_sql, settings)
        logger.info("database.engine_created", sqlite=settings.uses_sqlite)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Process-wide session factory, created on first use."""
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(_shared_engine())
    return _session_factory


async def init_db() -> None:
    """Create the schema in development. Other environments migrate it externally."""
    from intent_exchange.infrastructure.database.orm_models import Base

    engine = _shared_engine()
    if not get_settings().is_development:
        logger.info("database.schema_unmanaged", env=get_settings().app_env)
        return

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database.schema_created", tables=len(Base.metadata.tables))


async def ping_db() -> None:
    async with _shared_engine().connect() as conn:
        await conn.execute(text("SELECT 1"))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("database.engine_disposed")
