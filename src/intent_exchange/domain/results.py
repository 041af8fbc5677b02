"""Structured results for the core boundary.

Services raise MarketplaceError subclasses internally. Callers that must not
see exceptions (the sweep, batch jobs, non-HTTP integrations) wrap calls in
``capture`` and receive an OperationResult carrying the error kind.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from intent_exchange.domain.exceptions import MarketplaceError

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from intent_exchange.domain.enums import ErrorKind

T = TypeVar("T")


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of a core operation.

    Attributes:
        ok: True when the operation completed.
        value: The operation's return value (None on failure).
        error_kind: ErrorKind of the failure, if any.
        error_code: Stable machine-readable code, if any.
        message: Human-readable failure description.
    """

    ok: bool
    value: T | None = None
    error_kind: ErrorKind | None = None
    error_code: str | None = None
    message: str = ""

    @classmethod
    def success(cls, value: T) -> OperationResult[T]:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, exc: MarketplaceError) -> OperationResult[Any]:
        return cls(ok=False, error_kind=exc.kind, error_code=exc.code, message=exc.message)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_code": self.error_code,
            "message": self.message,
        }


async def capture(awaitable: Awaitable[T]) -> OperationResult[T]:
    """Await a core operation and fold domain errors into an OperationResult."""
    try:
        return OperationResult.success(await awaitable)
    except MarketplaceError as exc:
        return OperationResult.failure(exc)
