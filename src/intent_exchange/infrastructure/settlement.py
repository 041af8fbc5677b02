"""Settlement rail adapters.

Two implementations of the SettlementGateway protocol:

    - SimulatedSettlementGateway: in-process rail for local runs and tests.
      Generates fake transaction references, remembers receipts per
      idempotency key, and can be scripted to fail.
    - HttpSettlementGateway: a REST payment rail reached over httpx.

Both honour the idempotency contract: submitting the same key twice moves
funds once and returns the original receipt.
"""

from __future__ import annotations

import uuid
from collections import deque
from decimal import Decimal
from typing import TYPE_CHECKING, Literal

import httpx

from intent_exchange.domain.exceptions import GatewayDeclinedError, GatewayUnavailableError
from intent_exchange.domain.settlement_protocol import TransferReceipt
from intent_exchange.logging_config import get_logger

if TYPE_CHECKING:
    from intent_exchange.config import Settings
    from intent_exchange.domain.settlement_protocol import SettlementGateway

logger = get_logger(__name__)

FailureMode = Literal["unavailable", "declined"]


class SimulatedSettlementGateway:
    """Fake payment rail with idempotent receipts and scriptable outcomes."""

    def __init__(self) -> None:
        self._receipts: dict[str, TransferReceipt] = {}
        self._failures: deque[FailureMode] = deque()
        self._refs: deque[str] = deque()
        self.calls: list[str] = []

    # --- scripting helpers ---

    def fail_next(self, mode: FailureMode = "unavailable", times: int = 1) -> None:
        """Make the next ``times`` new transfers fail with ``mode``."""
        self._failures.extend([mode] * times)

    def queue_references(self, *refs: str) -> None:
        """Use these external references, in order, for the next new transfers."""
        self._refs.extend(refs)

    # --- SettlementGateway ---

    async def transfer(
        self,
        idempotency_key: str,
        source: str,
        destination: str,
        amount: Decimal,
        asset: str,
    ) -> TransferReceipt:
        self.calls.append(idempotency_key)

        existing = self._receipts.get(idempotency_key)
        if existing is not None:
            logger.info("settlement.replayed", key=idempotency_key, ref=existing.external_ref)
            return existing

        if self._failures:
            mode = self._failures.popleft()
            logger.info("settlement.simulated_failure", key=idempotency_key, mode=mode)
            if mode == "declined":
                raise GatewayDeclinedError(
                    f"Transfer {idempotency_key} declined by rail", idempotency_key
                )
            raise GatewayUnavailableError(
                f"Rail unavailable for {idempotency_key}", idempotency_key
            )

        ref = self._refs.popleft() if self._refs else "0x" + uuid.uuid4().hex
        receipt = TransferReceipt(idempotency_key=idempotency_key, external_ref=ref, amount=amount)
        self._receipts[idempotency_key] = receipt
        logger.info(
            "settlement.transfer_simulated",
            key=idempotency_key,
            ref=ref,
            amount=str(amount),
            asset=asset,
            from_address=source,
            to_address=destination,
        )
        return receipt

    async def lookup(self, idempotency_key: str) -> TransferReceipt | None:
        return self._receipts.get(idempotency_key)


class HttpSettlementGateway:
    """Payment rail reached over HTTP.

    Contract:
        POST /transfers            body: key, source, destination, amount, asset
        GET  /transfers/{key}      404 when the rail has no completed transfer
    Responses carry ``reference`` and ``amount``. The idempotency key is also
    sent as the ``Idempotency-Key`` header.
    """

    _DECLINE_STATUSES = frozenset({400, 402, 403, 409, 422})

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def transfer(
        self,
        idempotency_key: str,
        source: str,
        destination: str,
        amount: Decimal,
        asset: str,
    ) -> TransferReceipt:
        try:
            response = await self._client.post(
                "/transfers",
                json={
                    "idempotency_key": idempotency_key,
                    "source": source,
                    "destination": destination,
                    "amount": str(amount),
                    "asset": asset,
                },
                headers={"Idempotency-Key": idempotency_key},
            )
        except httpx.HTTPError as exc:
            logger.warning("settlement.transport_error", key=idempotency_key, error=str(exc))
            raise GatewayUnavailableError(
                f"Rail unreachable: {exc}", idempotency_key
            ) from exc

        data = self._handle_response(response, idempotency_key)
        receipt = self._to_receipt(idempotency_key, data)
        logger.info("settlement.transfer_complete", key=idempotency_key, ref=receipt.external_ref)
        return receipt

    async def lookup(self, idempotency_key: str) -> TransferReceipt | None:
        try:
            response = await self._client.get(f"/transfers/{idempotency_key}")
        except httpx.HTTPError as exc:
            raise GatewayUnavailableError(
                f"Rail unreachable: {exc}", idempotency_key
            ) from exc

        if response.status_code == 404:
            return None
        data = self._handle_response(response, idempotency_key)
        if data.get("status", "completed") != "completed":
            return None
        return self._to_receipt(idempotency_key, data)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _handle_response(self, response: httpx.Response, idempotency_key: str) -> dict:
        """Map rail HTTP statuses onto the gateway error taxonomy."""
        if response.status_code in self._DECLINE_STATUSES:
            detail = response.text[:200]
            raise GatewayDeclinedError(
                f"Transfer declined ({response.status_code}): {detail}", idempotency_key
            )
        if response.status_code >= 400:
            raise GatewayUnavailableError(
                f"Rail error {response.status_code}", idempotency_key
            )
        return response.json()

    @staticmethod
    def _to_receipt(idempotency_key: str, data: dict) -> TransferReceipt:
        return TransferReceipt(
            idempotency_key=idempotency_key,
            external_ref=str(data["reference"]),
            amount=Decimal(str(data["amount"])),
        )


def build_settlement_gateway(settings: Settings) -> SettlementGateway:
    """Pick the adapter named by ``settings.settlement_mode``."""
    if settings.settlement_mode == "http":
        return HttpSettlementGateway(
            base_url=settings.settlement_base_url,
            api_key=settings.settlement_api_key,
            timeout=settings.settlement_timeout_seconds,
        )
    return SimulatedSettlementGateway()
