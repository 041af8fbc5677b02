"""Tests for the periodic sweep."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from intent_exchange.domain.clock import utcnow
from intent_exchange.domain.enums import ErrorKind, LedgerEntryKind
from intent_exchange.infrastructure.database.unit_of_work import run_in_transaction
from intent_exchange.orchestration.sweeper import ExpirySweeper
from intent_exchange.services.ledger_service import LedgerService

REQUESTER = "requester-1"


@pytest.fixture
def sweeper(coordinator, settings) -> ExpirySweeper:  # noqa: ANN001
    return ExpirySweeper(coordinator, settings)


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_expires_overdue_intents(self, sweeper, coordinator, register, post_intent) -> None:  # noqa: ANN001
        await register()
        overdue = await post_intent(deadline=utcnow() + timedelta(minutes=5))
        [match] = await coordinator.matching.list_matches(overdue.id)
        await coordinator.accept_match(match.id, REQUESTER)
        on_time = await post_intent(("go",), deadline=utcnow() + timedelta(days=2))

        report = await sweeper.run_once(now=utcnow() + timedelta(hours=1))

        assert report.expired == [str(overdue.id)]
        assert report.failures == {}
        assert (await coordinator.get_intent(overdue.id)).status == "expired"
        assert (await coordinator.get_intent(on_time.id)).status == "open"
        escrow = await coordinator.escrows.get_by_match(match.id)
        assert escrow.status == "refunded"

    @pytest.mark.asyncio
    async def test_resumes_stuck_refund(self, sweeper, coordinator, gateway, settings, deal) -> None:  # noqa: ANN001
        gateway.fail_next("unavailable", times=settings.gateway_max_attempts)
        await coordinator.cancel(deal.intent.id, REQUESTER)

        report = await sweeper.run_once()

        assert report.resumed == [str(deal.escrow.id)]
        escrow = await coordinator.escrows.get(deal.escrow.id)
        assert escrow.status == "refunded"
        assert escrow.pending_status is None
        assert report.inconsistent == []

    @pytest.mark.asyncio
    async def test_failures_are_captured_not_raised(
        self, sweeper, coordinator, gateway, settings, register, post_intent  # noqa: ANN001
    ) -> None:
        await register()
        intent = await post_intent()
        [match] = await coordinator.matching.list_matches(intent.id)
        gateway.fail_next("unavailable", times=settings.gateway_max_attempts)
        await coordinator.accept_match(match.id, REQUESTER)
        escrow = await coordinator.escrows.get_by_match(match.id)

        gateway.fail_next("unavailable", times=settings.gateway_max_attempts)
        report = await sweeper.run_once()

        result = report.failures[str(escrow.id)]
        assert not result.ok
        assert result.error_kind is ErrorKind.GATEWAY_UNAVAILABLE
        assert report.resumed == []

        second = await sweeper.run_once()
        assert second.resumed == [str(escrow.id)]
        assert (await coordinator.escrows.get(escrow.id)).status == "funded"

    @pytest.mark.asyncio
    async def test_reports_inconsistent_ledgers(self, sweeper, session_factory, deal) -> None:  # noqa: ANN001
        async def tamper(uow) -> None:  # noqa: ANN001
            await LedgerService.append(
                uow, deal.escrow.id, LedgerEntryKind.RELEASE, Decimal("100"), "tx-x", "bogus"
            )

        await run_in_transaction(session_factory, tamper)
        report = await sweeper.run_once()
        assert [r.escrow_id for r in report.inconsistent] == [str(deal.escrow.id)]


class TestRunForever:
    @pytest.mark.asyncio
    async def test_stops_when_asked(self, sweeper) -> None:  # noqa: ANN001
        stop = asyncio.Event()
        task = asyncio.create_task(sweeper.run_forever(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=5)
        assert task.done()
        assert task.exception() is None
