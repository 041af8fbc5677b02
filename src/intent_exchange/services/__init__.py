"""Application services: use case orchestration."""

from intent_exchange.services.agent_service import AgentService
from intent_exchange.services.common import SYSTEM_ACTOR
from intent_exchange.services.escrow_service import EscrowService
from intent_exchange.services.intent_coordinator import IntentCoordinator
from intent_exchange.services.ledger_service import LedgerService, ReconciliationReport
from intent_exchange.services.matching_service import MatchingEngine

__all__ = [
    "SYSTEM_ACTOR",
    "AgentService",
    "EscrowService",
    "IntentCoordinator",
    "LedgerService",
    "MatchingEngine",
    "ReconciliationReport",
]
