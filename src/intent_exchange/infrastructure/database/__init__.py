"""Database infrastructure: engine, ORM models, repositories, unit of work."""

from intent_exchange.infrastructure.database.engine import (
    close_db,
    get_session_factory,
    init_db,
)
from intent_exchange.infrastructure.database.orm_models import (
    Agent,
    Base,
    Escrow,
    Intent,
    LedgerEntry,
    Match,
)
from intent_exchange.infrastructure.database.repositories import (
    AgentRepository,
    EscrowRepository,
    IntentRepository,
    LedgerRepository,
    MatchRepository,
)
from intent_exchange.infrastructure.database.unit_of_work import (
    UnitOfWork,
    run_in_transaction,
)

__all__ = [
    "Agent",
    "Base",
    "Escrow",
    "Intent",
    "LedgerEntry",
    "Match",
    "AgentRepository",
    "EscrowRepository",
    "IntentRepository",
    "LedgerRepository",
    "MatchRepository",
    "UnitOfWork",
    "run_in_transaction",
    "get_session_factory",
    "init_db",
    "close_db",
]
