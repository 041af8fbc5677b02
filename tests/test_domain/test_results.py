"""Tests for OperationResult and capture."""

from __future__ import annotations

import pytest

from intent_exchange.domain.enums import ErrorKind
from intent_exchange.domain.exceptions import (
    EntityNotFoundError,
    GatewayUnavailableError,
    StaleStateError,
)
from intent_exchange.domain.results import OperationResult, capture


async def _returns(value: int) -> int:
    return value


async def _raises(exc: Exception) -> int:
    raise exc


class TestCapture:
    @pytest.mark.asyncio
    async def test_success(self) -> None:
        result = await capture(_returns(7))
        assert result.ok
        assert result.value == 7
        assert result.error_kind is None

    @pytest.mark.asyncio
    async def test_domain_error_becomes_result(self) -> None:
        result = await capture(_raises(StaleStateError("match moved on")))
        assert not result.ok
        assert result.error_kind is ErrorKind.STALE_STATE
        assert result.error_code == "STALE_STATE"
        assert "moved on" in result.message

    @pytest.mark.asyncio
    async def test_gateway_error_kind(self) -> None:
        result = await capture(_raises(GatewayUnavailableError("timeout", "k:funded")))
        assert result.error_kind is ErrorKind.GATEWAY_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_non_domain_errors_propagate(self) -> None:
        with pytest.raises(ZeroDivisionError):
            await capture(_raises(ZeroDivisionError()))


class TestOperationResult:
    def test_to_dict(self) -> None:
        result = OperationResult.failure(EntityNotFoundError("intent", "abc"))
        assert result.to_dict() == {
            "ok": False,
            "error_kind": "not_found",
            "error_code": "NOT_FOUND",
            "message": "Intent not found: abc",
        }
