"""Tests for the settlement rail adapters.

The HTTP adapter runs against httpx.MockTransport, so no network is used.
"""

from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest

from intent_exchange.config import Settings
from intent_exchange.domain.exceptions import GatewayDeclinedError, GatewayUnavailableError
from intent_exchange.domain.settlement_protocol import SettlementGateway, escrow_idempotency_key
from intent_exchange.infrastructure.settlement import (
    HttpSettlementGateway,
    SimulatedSettlementGateway,
    build_settlement_gateway,
)

AMOUNT = Decimal("25.500000")


class TestSimulatedGateway:
    @pytest.mark.asyncio
    async def test_same_key_returns_original_receipt(self) -> None:
        gw = SimulatedSettlementGateway()
        first = await gw.transfer("e1:funded", "payer", "holding", AMOUNT, "USDC")
        again = await gw.transfer("e1:funded", "payer", "holding", AMOUNT, "USDC")
        assert first == again
        assert gw.calls == ["e1:funded", "e1:funded"]

    @pytest.mark.asyncio
    async def test_scripted_failures_then_success(self) -> None:
        gw = SimulatedSettlementGateway()
        gw.fail_next("unavailable")
        gw.fail_next("declined")
        with pytest.raises(GatewayUnavailableError):
            await gw.transfer("k1", "a", "b", AMOUNT, "USDC")
        with pytest.raises(GatewayDeclinedError) as exc_info:
            await gw.transfer("k2", "a", "b", AMOUNT, "USDC")
        assert exc_info.value.idempotency_key == "k2"
        receipt = await gw.transfer("k1", "a", "b", AMOUNT, "USDC")
        assert receipt.amount == AMOUNT

    @pytest.mark.asyncio
    async def test_queued_references(self) -> None:
        gw = SimulatedSettlementGateway()
        gw.queue_references("tx-1", "tx-2")
        assert (await gw.transfer("a", "s", "d", AMOUNT, "USDC")).external_ref == "tx-1"
        assert (await gw.transfer("b", "s", "d", AMOUNT, "USDC")).external_ref == "tx-2"
        assert (await gw.transfer("c", "s", "d", AMOUNT, "USDC")).external_ref.startswith("0x")

    @pytest.mark.asyncio
    async def test_lookup(self) -> None:
        gw = SimulatedSettlementGateway()
        assert await gw.lookup("missing") is None
        receipt = await gw.transfer("k", "s", "d", AMOUNT, "USDC")
        assert await gw.lookup("k") == receipt

    def test_satisfies_protocol(self) -> None:
        assert isinstance(SimulatedSettlementGateway(), SettlementGateway)


def _gateway(handler) -> HttpSettlementGateway:  # noqa: ANN001
    return HttpSettlementGateway(
        "https://rail.test", api_key="secret", transport=httpx.MockTransport(handler)
    )


class TestHttpGateway:
    @pytest.mark.asyncio
    async def test_transfer_posts_with_idempotency_header(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"reference": "tx-77", "amount": "25.5"})

        gw = _gateway(handler)
        receipt = await gw.transfer("e1:funded", "payer", "holding", AMOUNT, "USDC")
        await gw.aclose()

        assert receipt.external_ref == "tx-77"
        assert receipt.amount == Decimal("25.5")
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/transfers"
        assert request.headers["Idempotency-Key"] == "e1:funded"
        assert request.headers["Authorization"] == "Bearer secret"
        body = json.loads(request.content)
        assert body["amount"] == "25.500000"
        assert body["destination"] == "holding"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 402, 409, 422])
    async def test_client_errors_are_declines(self, status: int) -> None:
        gw = _gateway(lambda request: httpx.Response(status, text="insufficient funds"))
        with pytest.raises(GatewayDeclinedError, match="insufficient funds"):
            await gw.transfer("k", "a", "b", AMOUNT, "USDC")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 502, 503, 429])
    async def test_server_errors_are_retryable(self, status: int) -> None:
        gw = _gateway(lambda request: httpx.Response(status))
        with pytest.raises(GatewayUnavailableError):
            await gw.transfer("k", "a", "b", AMOUNT, "USDC")

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        gw = _gateway(handler)
        with pytest.raises(GatewayUnavailableError, match="unreachable"):
            await gw.transfer("k", "a", "b", AMOUNT, "USDC")

    @pytest.mark.asyncio
    async def test_lookup_found_missing_and_in_flight(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            key = request.url.path.rsplit("/", 1)[-1]
            if key == "done":
                return httpx.Response(200, json={"reference": "tx-1", "amount": "10"})
            if key == "busy":
                return httpx.Response(200, json={"reference": "tx-2", "amount": "10", "status": "pending"})
            return httpx.Response(404)

        gw = _gateway(handler)
        found = await gw.lookup("done")
        assert found is not None
        assert found.external_ref == "tx-1"
        assert await gw.lookup("busy") is None
        assert await gw.lookup("nope") is None


class TestFactory:
    def test_simulated_by_default(self) -> None:
        gw = build_settlement_gateway(Settings(_env_file=None))
        assert isinstance(gw, SimulatedSettlementGateway)

    def test_http_mode(self) -> None:
        gw = build_settlement_gateway(
            Settings(_env_file=None, settlement_mode="http", settlement_base_url="https://rail.test")
        )
        assert isinstance(gw, HttpSettlementGateway)


def test_idempotency_key_format() -> None:
    assert escrow_idempotency_key("abc", "released") == "abc:released"
