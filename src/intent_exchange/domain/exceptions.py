"""Domain exceptions for the intent exchange.

These exceptions are framework-agnostic and represent business rule violations.
Every exception carries an ErrorKind so the API middleware and
``domain.results.capture`` can turn it into a structured result.
"""

from __future__ import annotations

from intent_exchange.domain.enums import ErrorKind


class MarketplaceError(Exception):
    """Base exception for all domain errors."""

    kind: ErrorKind = ErrorKind.CONFLICT

    def __init__(self, message: str, code: str = "MARKETPLACE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


class EntityNotFoundError(MarketplaceError):
    """Raised when an agent, intent, match or escrow id does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            message=f"{entity.capitalize()} not found: {entity_id}",
            code="NOT_FOUND",
        )
        self.entity = entity
        self.entity_id = entity_id


class NotAuthorizedError(MarketplaceError):
    """Raised when the acting user does not own the entity being changed."""

    kind = ErrorKind.FORBIDDEN

    def __init__(self, actor: str, action: str) -> None:
        super().__init__(
            message=f"User {actor} is not allowed to {action}",
            code="FORBIDDEN",
        )
        self.actor = actor


# --- Recoverable by re-reading state ---


class ConflictError(MarketplaceError):
    """A state precondition is not met.

    Callers should re-fetch and retry with current state, not repeat the
    same call blindly.
    """

    kind = ErrorKind.CONFLICT

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="CONFLICT")


class StaleStateError(MarketplaceError):
    """Raised when an entity moved on between read and conditional write."""

    kind = ErrorKind.STALE_STATE

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="STALE_STATE")


class DuplicateEscrowError(MarketplaceError):
    """Raised when an escrow already exists for a match."""

    kind = ErrorKind.DUPLICATE_ESCROW

    def __init__(self, match_id: str) -> None:
        super().__init__(
            message=f"Escrow already exists for match: {match_id}",
            code="DUPLICATE_ESCROW",
        )
        self.match_id = match_id


class NotFundedError(MarketplaceError):
    """Raised when releasing or refunding an escrow that never got funded."""

    kind = ErrorKind.NOT_FUNDED

    def __init__(self, escrow_id: str) -> None:
        super().__init__(
            message=f"Escrow is not funded: {escrow_id}",
            code="NOT_FUNDED",
        )
        self.escrow_id = escrow_id


class PreconditionFailedError(MarketplaceError):
    """Raised when a coordinator operation is attempted out of sequence."""

    kind = ErrorKind.PRECONDITION_FAILED

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="PRECONDITION_FAILED")


class InvalidStateTransitionError(MarketplaceError):
    """Raised when a state machine refuses a transition.

    Example: intent COMPLETED -> OPEN.
    """

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(self, entity: str, current_state: str, attempted: str) -> None:
        super().__init__(
            message=f"Invalid {entity} transition: {current_state} -> {attempted}",
            code="INVALID_STATE_TRANSITION",
        )
        self.entity = entity
        self.current_state = current_state
        self.attempted = attempted


# --- Operator attention ---


class InconsistentLedgerError(MarketplaceError):
    """Ledger entries disagree with the stored escrow status.

    Never auto-corrected; surfaced to an operator.
    """

    kind = ErrorKind.INCONSISTENT

    def __init__(self, escrow_id: str, stored_status: str, problems: list[str]) -> None:
        super().__init__(
            message=(
                f"Ledger for escrow {escrow_id} does not reconcile with status "
                f"{stored_status}: {'; '.join(problems)}"
            ),
            code="INCONSISTENT_LEDGER",
        )
        self.escrow_id = escrow_id
        self.stored_status = stored_status
        self.problems = problems


# --- Settlement gateway ---


class GatewayError(MarketplaceError):
    """Base exception for settlement rail failures."""

    def __init__(self, message: str, code: str, idempotency_key: str | None = None) -> None:
        super().__init__(message=message, code=code)
        self.idempotency_key = idempotency_key


class GatewayUnavailableError(GatewayError):
    """The rail could not be reached or timed out. Safe to retry with the same key."""

    kind = ErrorKind.GATEWAY_UNAVAILABLE

    def __init__(self, message: str, idempotency_key: str | None = None) -> None:
        super().__init__(message, code="GATEWAY_UNAVAILABLE", idempotency_key=idempotency_key)


class GatewayDeclinedError(GatewayError):
    """The rail refused the transfer. Terminal for that key."""

    kind = ErrorKind.GATEWAY_DECLINED

    def __init__(self, message: str, idempotency_key: str | None = None) -> None:
        super().__init__(message, code="GATEWAY_DECLINED", idempotency_key=idempotency_key)
