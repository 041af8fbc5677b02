"""Tests for the escrow settlement state machine.

Covers idempotent funding, gateway retries, the platform fee split and
crash recovery through resume_pending.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from intent_exchange.domain.exceptions import (
    ConflictError,
    DuplicateEscrowError,
    GatewayUnavailableError,
    InvalidStateTransitionError,
    NotFundedError,
)
from intent_exchange.services.escrow_service import EscrowService
from intent_exchange.services.intent_coordinator import IntentCoordinator

REQUESTER = "requester-1"
OWNER = "agent-owner-1"


def _key(escrow_id: object, target: str) -> str:
    return f"{escrow_id}:{target}"


class TestFunding:
    @pytest.mark.asyncio
    async def test_accept_funds_escrow(self, coordinator, gateway, deal) -> None:  # noqa: ANN001
        assert deal.escrow.status == "funded"
        assert deal.escrow.pending_status is None
        assert deal.escrow.funded_at is not None
        assert deal.escrow.amount == Decimal("100")

        [entry] = await coordinator.escrows.get_ledger(deal.escrow.id)
        assert entry.kind == "fund"
        assert entry.amount == Decimal("100")
        assert entry.idempotency_key == _key(deal.escrow.id, "funded")
        assert gateway.calls == [_key(deal.escrow.id, "funded")]

    @pytest.mark.asyncio
    async def test_fund_twice_moves_money_once(self, coordinator, gateway, deal) -> None:  # noqa: ANN001
        again = await coordinator.escrows.fund(deal.escrow.id)
        assert again.status == "funded"
        assert len(await coordinator.escrows.get_ledger(deal.escrow.id)) == 1
        assert len(gateway.calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_funds_move_money_once(
        self, coordinator, gateway, settings, register, post_intent  # noqa: ANN001
    ) -> None:
        await register()
        intent = await post_intent()
        [match] = await coordinator.matching.list_matches(intent.id)
        gateway.fail_next("unavailable", times=settings.gateway_max_attempts)
        await coordinator.accept_match(match.id, REQUESTER)
        escrow = await coordinator.escrows.get_by_match(match.id)
        assert escrow.status == "created"

        results = await asyncio.gather(
            *(coordinator.escrows.fund(escrow.id) for _ in range(4)),
            return_exceptions=True,
        )
        assert any(not isinstance(r, BaseException) and r.status == "funded" for r in results)
        assert all(not isinstance(r, BaseException) or isinstance(r, ConflictError) for r in results)

        funded = await coordinator.escrows.get(escrow.id)
        assert funded.status == "funded"
        assert funded.pending_status is None
        [entry] = await coordinator.escrows.get_ledger(escrow.id)
        assert (entry.kind, entry.amount) == ("fund", Decimal("100"))
        assert (await coordinator.ledger.reconcile(escrow.id)).consistent

    @pytest.mark.asyncio
    async def test_unavailable_is_retried_with_same_key(
        self, coordinator, gateway, register, post_intent  # noqa: ANN001
    ) -> None:
        await register()
        intent = await post_intent()
        [match] = await coordinator.matching.list_matches(intent.id)
        gateway.fail_next("unavailable", times=2)

        await coordinator.accept_match(match.id, REQUESTER)
        escrow = await coordinator.escrows.get_by_match(match.id)
        assert escrow.status == "funded"
        assert gateway.calls == [_key(escrow.id, "funded")] * 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_leave_escrow_pending(
        self, coordinator, gateway, settings, register, post_intent  # noqa: ANN001
    ) -> None:
        await register()
        intent = await post_intent()
        [match] = await coordinator.matching.list_matches(intent.id)
        gateway.fail_next("unavailable", times=settings.gateway_max_attempts)

        accepted = await coordinator.accept_match(match.id, REQUESTER)
        assert accepted.status == "accepted"
        escrow = await coordinator.escrows.get_by_match(match.id)
        assert escrow.status == "created"
        assert escrow.pending_status == "funded"
        assert "unavailable" in escrow.last_error
        assert [e.id for e in await coordinator.escrows.list_pending()] == [escrow.id]

        funded = await coordinator.fund_escrow(match.id, REQUESTER)
        assert funded.status == "funded"
        assert funded.pending_status is None
        assert funded.last_error is None
        assert await coordinator.escrows.list_pending() == []

    @pytest.mark.asyncio
    async def test_one_escrow_per_match(self, coordinator, deal) -> None:  # noqa: ANN001
        with pytest.raises(DuplicateEscrowError):
            await coordinator.escrows.open(deal.intent.id, deal.match.id)


class TestNotFunded:
    @pytest.mark.asyncio
    async def test_release_and_refund_need_funds(
        self, coordinator, gateway, register, post_intent  # noqa: ANN001
    ) -> None:
        await register()
        intent = await post_intent()
        [match] = await coordinator.matching.list_matches(intent.id)
        gateway.fail_next("declined")
        await coordinator.accept_match(match.id, REQUESTER)
        escrow = await coordinator.escrows.get_by_match(match.id)
        assert escrow.status == "created"
        assert escrow.pending_status is None

        with pytest.raises(NotFundedError):
            await coordinator.escrows.release(escrow.id)
        with pytest.raises(NotFundedError):
            await coordinator.escrows.refund(escrow.id)
        assert await coordinator.escrows.get_ledger(escrow.id) == []


class TestDisputes:
    @pytest.mark.asyncio
    async def test_dispute_freezes_then_refund_settles(self, coordinator, deal) -> None:  # noqa: ANN001
        disputed = await coordinator.escrows.dispute(deal.escrow.id, REQUESTER, "no output")
        assert disputed.status == "disputed"
        assert disputed.dispute_reason == "no output"
        assert disputed.disputed_by == REQUESTER

        refunded = await coordinator.escrows.refund(deal.escrow.id)
        assert refunded.status == "refunded"
        assert [e.kind for e in await coordinator.escrows.get_ledger(deal.escrow.id)] == [
            "fund",
            "refund",
        ]
        intent = await coordinator.get_intent(deal.intent.id)
        assert intent.status == "cancelled"

    @pytest.mark.asyncio
    async def test_dispute_blocked_while_transfer_pending(
        self, coordinator, gateway, settings, deal  # noqa: ANN001
    ) -> None:
        gateway.fail_next("unavailable", times=settings.gateway_max_attempts)
        with pytest.raises(GatewayUnavailableError):
            await coordinator.escrows.refund(deal.escrow.id)

        with pytest.raises(ConflictError):
            await coordinator.escrows.dispute(deal.escrow.id, REQUESTER, "too late")

    @pytest.mark.asyncio
    async def test_unfunded_escrow_cannot_be_disputed(
        self, coordinator, gateway, register, post_intent  # noqa: ANN001
    ) -> None:
        await register()
        intent = await post_intent()
        [match] = await coordinator.matching.list_matches(intent.id)
        gateway.fail_next("declined")
        await coordinator.accept_match(match.id, REQUESTER)
        escrow = await coordinator.escrows.get_by_match(match.id)
        assert escrow.status == "created"

        with pytest.raises(InvalidStateTransitionError):
            await coordinator.escrows.dispute(escrow.id, REQUESTER, "never paid")
        assert (await coordinator.escrows.get(escrow.id)).dispute_reason is None


class TestPlatformFee:
    @pytest.mark.asyncio
    async def test_release_splits_fee(
        self, session_factory, gateway, notifier, settings, register  # noqa: ANN001
    ) -> None:
        coordinator = IntentCoordinator(
            session_factory,
            gateway,
            notifier,
            settings.model_copy(update={"platform_fee_bps": 250}),
        )
        await register()
        intent = await coordinator.create_intent(
            REQUESTER, "Label images", ["python"], Decimal("100"), "USDC", "0xPAYER"
        )
        [match] = await coordinator.matching.list_matches(intent.id)
        await coordinator.accept_match(match.id, REQUESTER)
        await coordinator.start_work(match.id, OWNER)
        gateway.queue_references("tx-payout")

        completed = await coordinator.complete_work(match.id, OWNER)
        assert completed.status == "completed"

        escrow = await coordinator.escrows.get_by_match(match.id)
        entries = {e.kind: e for e in await coordinator.escrows.get_ledger(escrow.id)}
        assert entries["release"].amount == Decimal("97.5")
        assert entries["fee"].amount == Decimal("2.5")
        assert entries["release"].external_reference == "tx-payout"
        assert entries["fee"].external_reference == "tx-payout"
        assert (await coordinator.ledger.reconcile(escrow.id)).consistent

    @pytest.mark.asyncio
    async def test_fee_rounds_down_to_micro_units(self, session_factory, gateway, settings) -> None:  # noqa: ANN001
        escrows = EscrowService(
            session_factory,
            gateway,
            settings=settings.model_copy(update={"platform_fee_bps": 333}),
        )
        assert escrows._fee_for(Decimal("0.000100")) == Decimal("0.000003")


class TestCrashRecovery:
    @pytest.mark.asyncio
    async def test_resume_uses_receipt_instead_of_paying_twice(
        self, coordinator, gateway, deal, monkeypatch  # noqa: ANN001
    ) -> None:
        escrows = coordinator.escrows

        async def crash(*args: object, **kwargs: object) -> None:
            raise RuntimeError("process died after the transfer")

        monkeypatch.setattr(escrows, "_complete", crash)
        with pytest.raises(RuntimeError):
            await escrows.refund(deal.escrow.id)
        monkeypatch.undo()

        stuck = await escrows.get(deal.escrow.id)
        assert stuck.status == "funded"
        assert stuck.pending_status == "refunded"
        refund_key = _key(deal.escrow.id, "refunded")
        assert await gateway.lookup(refund_key) is not None

        resumed = await escrows.resume_pending(deal.escrow.id)
        assert resumed.status == "refunded"
        assert resumed.pending_status is None
        assert gateway.calls.count(refund_key) == 1

        kinds = [e.kind for e in await escrows.get_ledger(deal.escrow.id)]
        assert sorted(kinds) == ["fund", "refund"]
        assert (await coordinator.get_intent(deal.intent.id)).status == "cancelled"

    @pytest.mark.asyncio
    async def test_resume_retries_when_rail_has_no_receipt(
        self, coordinator, gateway, settings, deal  # noqa: ANN001
    ) -> None:
        gateway.fail_next("unavailable", times=settings.gateway_max_attempts)
        with pytest.raises(GatewayUnavailableError):
            await coordinator.escrows.refund(deal.escrow.id)

        stuck = await coordinator.escrows.get(deal.escrow.id)
        assert stuck.pending_status == "refunded"
        assert stuck.last_error

        resumed = await coordinator.escrows.resume_pending(deal.escrow.id)
        assert resumed.status == "refunded"
        assert (await coordinator.ledger.reconcile(deal.escrow.id)).consistent

    @pytest.mark.asyncio
    async def test_resume_without_pending_is_noop(self, coordinator, gateway, deal) -> None:  # noqa: ANN001
        escrow = await coordinator.escrows.resume_pending(deal.escrow.id)
        assert escrow.status == "funded"
        assert len(gateway.calls) == 1
