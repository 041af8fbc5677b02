"""Settlement Gateway Protocol.

Defines the narrow interface the escrow state machine uses to move funds on
an external payment rail. This is a Protocol (structural subtyping) so
concrete adapters don't need to inherit from a base class; they just need
to match the shape.

The domain layer has ZERO imports from httpx or any payment rail SDK.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from decimal import Decimal


@dataclass(frozen=True)
class TransferReceipt:
    """Confirmation of a completed transfer.

    Attributes:
        idempotency_key: The key the transfer was submitted under.
        external_ref: The rail's transaction id.
        amount: Amount actually moved.
    """

    idempotency_key: str
    external_ref: str
    amount: Decimal


def escrow_idempotency_key(escrow_id: object, target_status: str) -> str:
    """Idempotency key for moving an escrow into ``target_status``."""
    return f"{escrow_id}:{target_status}"


@runtime_checkable
class SettlementGateway(Protocol):
    """Protocol that all payment rail adapters must satisfy.

    Concrete implementations:
        - infrastructure/settlement.py  SimulatedSettlementGateway
        - infrastructure/settlement.py  HttpSettlementGateway
    """

    async def transfer(
        self,
        idempotency_key: str,
        source: str,
        destination: str,
        amount: Decimal,
        asset: str,
    ) -> TransferReceipt:
        """Move funds. Repeating a key returns the original receipt.

        Raises:
            GatewayUnavailableError: Retryable; nothing is known to have moved.
            GatewayDeclinedError: Terminal refusal for this key.
        """
        ...

    async def lookup(self, idempotency_key: str) -> TransferReceipt | None:
        """Return the receipt of a completed transfer for ``idempotency_key``, if any."""
        ...
