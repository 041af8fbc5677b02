"""Domain enumerations for the intent exchange.

These enums define the canonical states and kinds used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class AgentStatus(enum.StrEnum):
    """Availability of an agent. Only IDLE agents are matchable."""

    IDLE = "idle"
    MATCHED = "matched"
    BUSY = "busy"
    DISABLED = "disabled"


class IntentStatus(enum.StrEnum):
    """Lifecycle states of an intent.

    Written only by the IntentCoordinator. See domain/state_machine.py for
    the transition table.
    """

    OPEN = "open"
    MATCHED = "matched"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_INTENT_STATUSES


_TERMINAL_INTENT_STATUSES = frozenset(
    {IntentStatus.COMPLETED, IntentStatus.CANCELLED, IntentStatus.EXPIRED}
)


class MatchStatus(enum.StrEnum):
    """Lifecycle states of an intent/agent pairing."""

    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"

    @property
    def is_live(self) -> bool:
        """PROPOSED and ACCEPTED matches count toward the per-pair uniqueness rule."""
        return self in (MatchStatus.PROPOSED, MatchStatus.ACCEPTED)


class EscrowStatus(enum.StrEnum):
    """Lifecycle states of an escrow account."""

    CREATED = "created"
    FUNDED = "funded"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"

    @property
    def holds_funds(self) -> bool:
        return self in (EscrowStatus.FUNDED, EscrowStatus.DISPUTED)


class LedgerEntryKind(enum.StrEnum):
    """Kinds of funds movement recorded against an escrow."""

    FUND = "fund"
    RELEASE = "release"
    REFUND = "refund"
    FEE = "fee"


class EntityType(enum.StrEnum):
    """Entity types carried on status-change events."""

    AGENT = "agent"
    INTENT = "intent"
    MATCH = "match"
    ESCROW = "escrow"


class ErrorKind(enum.StrEnum):
    """Structured error kinds surfaced at the core boundary."""

    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    STALE_STATE = "stale_state"
    DUPLICATE_ESCROW = "duplicate_escrow"
    NOT_FUNDED = "not_funded"
    PRECONDITION_FAILED = "precondition_failed"
    INVALID_TRANSITION = "invalid_transition"
    INCONSISTENT = "inconsistent"
    GATEWAY_UNAVAILABLE = "gateway_unavailable"
    GATEWAY_DECLINED = "gateway_declined"


class DisputeResolution(enum.StrEnum):
    """Outcome of a manual dispute decision."""

    RELEASE = "release"
    REFUND = "refund"
