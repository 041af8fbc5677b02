"""Domain layer: pure business logic with zero framework dependencies."""

from intent_exchange.domain.enums import (
    AgentStatus,
    DisputeResolution,
    EntityType,
    ErrorKind,
    EscrowStatus,
    IntentStatus,
    LedgerEntryKind,
    MatchStatus,
)
from intent_exchange.domain.exceptions import (
    ConflictError,
    DuplicateEscrowError,
    EntityNotFoundError,
    GatewayDeclinedError,
    GatewayUnavailableError,
    InconsistentLedgerError,
    InvalidStateTransitionError,
    MarketplaceError,
    NotAuthorizedError,
    NotFundedError,
    PreconditionFailedError,
    StaleStateError,
)
from intent_exchange.domain.notifications import StatusChangeEvent, StatusNotifier
from intent_exchange.domain.results import OperationResult, capture
from intent_exchange.domain.settlement_protocol import (
    SettlementGateway,
    TransferReceipt,
    escrow_idempotency_key,
)
from intent_exchange.domain.state_machine import (
    AgentStateMachine,
    EscrowStateMachine,
    IntentStateMachine,
    MatchStateMachine,
    guard,
    validate_transition,
)

__all__ = [
    "AgentStatus",
    "DisputeResolution",
    "EntityType",
    "ErrorKind",
    "EscrowStatus",
    "IntentStatus",
    "LedgerEntryKind",
    "MatchStatus",
    "ConflictError",
    "DuplicateEscrowError",
    "EntityNotFoundError",
    "GatewayDeclinedError",
    "GatewayUnavailableError",
    "InconsistentLedgerError",
    "InvalidStateTransitionError",
    "MarketplaceError",
    "NotAuthorizedError",
    "NotFundedError",
    "PreconditionFailedError",
    "StaleStateError",
    "StatusChangeEvent",
    "StatusNotifier",
    "OperationResult",
    "capture",
    "SettlementGateway",
    "TransferReceipt",
    "escrow_idempotency_key",
    "AgentStateMachine",
    "EscrowStateMachine",
    "IntentStateMachine",
    "MatchStateMachine",
    "guard",
    "validate_transition",
]
