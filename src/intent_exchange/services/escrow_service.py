"""Escrow Service: the escrow settlement state machine.

This is the only code that writes escrow rows. Every funds movement runs in
three steps so no database lock is ever held across a network call:

    1. Tx1   validate the transition and record ``pending_status``.
    2. Call  gateway.transfer(key) outside any transaction, with bounded
             retries on GatewayUnavailableError.
    3. Tx2   append ledger entries, advance the status, clear the pending
             marker. Runs the settlement hook (if any) in the same
             transaction so the intent moves with its escrow.

The idempotency key is ``"{escrow_id}:{target_status}"``. A crash between
steps 2 and 3 leaves the pending marker behind; ``resume_pending`` asks the
gateway for the key's receipt and completes step 3 without moving funds
twice.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import TYPE_CHECKING, TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from intent_exchange.config import get_settings
from intent_exchange.domain.clock import utcnow
from intent_exchange.domain.enums import EntityType, EscrowStatus, LedgerEntryKind, MatchStatus
from intent_exchange.domain.exceptions import (
    ConflictError,
    DuplicateEscrowError,
    GatewayDeclinedError,
    GatewayUnavailableError,
    NotFundedError,
    PreconditionFailedError,
)
from intent_exchange.domain.settlement_protocol import escrow_idempotency_key
from intent_exchange.domain.state_machine import EscrowStateMachine, guard
from intent_exchange.infrastructure.database.orm_models import Escrow
from intent_exchange.infrastructure.database.unit_of_work import run_in_transaction
from intent_exchange.logging_config import get_logger
from intent_exchange.services.common import get_or_raise
from intent_exchange.services.ledger_service import LedgerService

if TYPE_CHECKING:
    import uuid
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
    from tenacity import RetryCallState

    from intent_exchange.config import Settings
    from intent_exchange.domain.notifications import StatusNotifier
    from intent_exchange.domain.settlement_protocol import SettlementGateway, TransferReceipt
    from intent_exchange.infrastructure.database.orm_models import (
        Agent,
        Intent,
        LedgerEntry,
        Match,
    )
    from intent_exchange.infrastructure.database.unit_of_work import UnitOfWork

    SettlementHook = Callable[[UnitOfWork, Escrow, EscrowStatus], Awaitable[None]]

logger = get_logger(__name__)

T = TypeVar("T")

_MICRO = Decimal("0.000001")

# Event fired on the escrow machine for each target status.
_EVENTS = {
    EscrowStatus.FUNDED: "fund",
    EscrowStatus.RELEASED: "release",
    EscrowStatus.REFUNDED: "refund",
}


@dataclass(frozen=True)
class TransferPlan:
    """What the gateway is asked to do for one escrow transition."""

    escrow_id: uuid.UUID
    target: EscrowStatus
    idempotency_key: str
    source: str
    destination: str
    amount: Decimal
    fee: Decimal
    asset: str


class EscrowService:
    """Owns the escrow lifecycle and its ledger writes."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: SettlementGateway,
        notifier: StatusNotifier | None = None,
        settings: Settings | None = None,
        on_settled: SettlementHook | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._notifier = notifier
        self._settings = settings or get_settings()
        self._on_settled = on_settled

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    async def open_in(
        self,
        uow: UnitOfWork,
        intent: Intent,
        match: Match,
        agent: Agent,
        amount: Decimal | None = None,
    ) -> Escrow:
        """Create the escrow for an accepted match inside the caller's transaction."""
        if await uow.escrows.get_by_match(match.id) is not None:
            raise DuplicateEscrowError(str(match.id))

        escrow = await uow.escrows.create(
            Escrow(
                intent_id=intent.id,
                match_id=match.id,
                status=EscrowStatus.CREATED.value,
                amount=amount if amount is not None else intent.budget_amount,
                asset=intent.budget_asset,
                payer_address=intent.payer_address,
                payee_address=agent.wallet_address,
            )
        )
        uow.record(EntityType.ESCROW, escrow.id, None, EscrowStatus.CREATED, match_id=match.id)
        logger.info(
            "escrow.created",
            escrow_id=str(escrow.id),
            match_id=str(match.id),
            amount=str(escrow.amount),
        )
        return escrow

    async def open(
        self,
        intent_id: uuid.UUID,
        match_id: uuid.UUID,
        amount: Decimal | None = None,
    ) -> Escrow:
        """Open an escrow for an accepted match.

        Raises:
            DuplicateEscrowError: An escrow already exists for the match.
            PreconditionFailedError: The match is not the intent's accepted match.
        """
        if amount is not None and amount <= 0:
            raise PreconditionFailedError("Escrow amount must be positive")

        async def work(uow: UnitOfWork) -> Escrow:
            intent = await get_or_raise(uow.intents.get_by_id, "intent", intent_id)
            match = await get_or_raise(uow.matches.get_by_id, "match", match_id)
            if match.intent_id != intent.id or match.status != MatchStatus.ACCEPTED:
                raise PreconditionFailedError(
                    f"Match {match_id} is not the accepted match of intent {intent_id}"
                )
            agent = await get_or_raise(uow.agents.get_by_id, "agent", match.agent_id)
            return await self.open_in(uow, intent, match, agent, amount)

        return await self._transaction(work)

    # ------------------------------------------------------------------
    # Funds movements
    # ------------------------------------------------------------------

    async def fund(self, escrow_id: uuid.UUID) -> Escrow:
        """Move the escrow amount from the payer into escrow holding.

        On GatewayUnavailableError the escrow stays ``created`` (pending
        marker kept) and the call is safe to repeat.
        """
        return await self._move(escrow_id, EscrowStatus.FUNDED)

    async def release(self, escrow_id: uuid.UUID) -> Escrow:
        """Pay the agent (minus the platform fee). Legal from funded or disputed.

        A declined payout is terminal: the escrow is refunded instead and the
        GatewayDeclinedError is re-raised once the refund has settled.
        """
        try:
            return await self._move(escrow_id, EscrowStatus.RELEASED)
        except GatewayDeclinedError:
            logger.warning("escrow.release_declined_refunding", escrow_id=str(escrow_id))
            await self._move(escrow_id, EscrowStatus.REFUNDED)
            raise

    async def refund(self, escrow_id: uuid.UUID) -> Escrow:
        """Return the funds to the payer. Legal from funded or disputed."""
        return await self._move(escrow_id, EscrowStatus.REFUNDED)

    async def mark_pending_in(self, uow: UnitOfWork, escrow: Escrow, target: EscrowStatus) -> None:
        """Record an intended transition inside the caller's transaction.

        Used when an intent closes: the refund then survives a crash even if
        the gateway call never starts.
        """
        self._plan(escrow, target)
        escrow.pending_status = target.value
        escrow.last_error = None
        await uow.escrows.save(escrow)
        logger.info("escrow.transfer_pending", escrow_id=str(escrow.id), target=target.value)

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def dispute_in(
        self, uow: UnitOfWork, escrow: Escrow, actor: str, reason: str
    ) -> Escrow:
        """Freeze a funded escrow until an operator resolves it."""
        if escrow.pending_status is not None:
            raise ConflictError(
                f"Escrow {escrow.id} has a {escrow.pending_status} transfer in flight"
            )
        old = escrow.status
        guard(EscrowStateMachine, "escrow", old, "dispute")
        escrow.dispute_reason = reason
        escrow.disputed_by = actor
        await uow.escrows.set_status(escrow, EscrowStatus.DISPUTED)
        uow.record(EntityType.ESCROW, escrow.id, old, EscrowStatus.DISPUTED, by=actor)
        logger.info("escrow.disputed", escrow_id=str(escrow.id), by=actor)
        return escrow

    async def dispute(self, escrow_id: uuid.UUID, actor: str, reason: str) -> Escrow:
        async def work(uow: UnitOfWork) -> Escrow:
            escrow = await get_or_raise(uow.escrows.get_by_id, "escrow", escrow_id)
            return await self.dispute_in(uow, escrow, actor, reason)

        return await self._transaction(work)

    # ------------------------------------------------------------------
    # Crash recovery
    # ------------------------------------------------------------------

    async def resume_pending(self, escrow_id: uuid.UUID) -> Escrow:
        """Finish an interrupted transition.

        Asks the gateway whether the pending key already settled. If so the
        local advance is completed from that receipt; otherwise the transfer
        is attempted again under the same key.
        """
        escrow = await self.get(escrow_id)
        if escrow.pending_status is None:
            return escrow

        target = EscrowStatus(escrow.pending_status)
        key = escrow_idempotency_key(escrow.id, target.value)
        receipt = await self._gateway.lookup(key)
        if receipt is None:
            logger.info("escrow.resume_retrying", escrow_id=str(escrow_id), target=target.value)
            if target is EscrowStatus.RELEASED:
                return await self.release(escrow_id)
            return await self._move(escrow_id, target)

        logger.info(
            "escrow.resume_from_receipt",
            escrow_id=str(escrow_id),
            target=target.value,
            ref=receipt.external_ref,
        )
        plan = self._plan(escrow, target)
        return await self._transaction(lambda uow: self._complete(uow, plan, receipt))

    async def list_pending(self) -> list[Escrow]:
        """Escrows with a transfer in flight or stuck after exhausted retries."""
        return await self._transaction(lambda uow: uow.escrows.get_pending())

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get(self, escrow_id: uuid.UUID) -> Escrow:
        return await self._transaction(
            lambda uow: get_or_raise(uow.escrows.get_by_id, "escrow", escrow_id)
        )

    async def get_by_match(self, match_id: uuid.UUID) -> Escrow | None:
        return await self._transaction(lambda uow: uow.escrows.get_by_match(match_id))

    async def get_ledger(self, escrow_id: uuid.UUID) -> list[LedgerEntry]:
        return await LedgerService(self._session_factory).entries(escrow_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _transaction(self, work: Callable[[UnitOfWork], Awaitable[T]]) -> T:
        return await run_in_transaction(
            self._session_factory,
            work,
            notifier=self._notifier,
            max_attempts=self._settings.concurrency_max_attempts,
        )

    async def _move(self, escrow_id: uuid.UUID, target: EscrowStatus) -> Escrow:
        plan = await self._transaction(lambda uow: self._begin(uow, escrow_id, target))
        if plan is None:
            # Already at the target status: a duplicate request.
            return await self.get(escrow_id)

        try:
            receipt = await self._transfer(plan)
        except GatewayUnavailableError as exc:
            await self._transaction(lambda uow: self._note_failure(uow, plan, exc, keep_pending=True))
            raise
        except GatewayDeclinedError as exc:
            await self._transaction(lambda uow: self._note_failure(uow, plan, exc, keep_pending=False))
            raise

        return await self._transaction(lambda uow: self._complete(uow, plan, receipt))

    async def _begin(
        self, uow: UnitOfWork, escrow_id: uuid.UUID, target: EscrowStatus
    ) -> TransferPlan | None:
        """Tx1: validate and mark the transition pending."""
        escrow = await get_or_raise(uow.escrows.get_by_id, "escrow", escrow_id)
        if escrow.status == target:
            return None
        if escrow.pending_status is not None and escrow.pending_status != target:
            raise ConflictError(
                f"Escrow {escrow_id} has a {escrow.pending_status} transfer in flight"
            )
        plan = self._plan(escrow, target)
        if escrow.pending_status != target:
            escrow.pending_status = target.value
            escrow.last_error = None
            await uow.escrows.save(escrow)
        return plan

    def _plan(self, escrow: Escrow, target: EscrowStatus) -> TransferPlan:
        """Validate ``escrow.status -> target`` and describe the transfer."""
        if target is not EscrowStatus.FUNDED and escrow.status == EscrowStatus.CREATED:
            raise NotFundedError(str(escrow.id))
        guard(EscrowStateMachine, "escrow", escrow.status, _EVENTS[target])

        holding = self._settings.escrow_holding_address
        fee = Decimal("0")
        if target is EscrowStatus.FUNDED:
            source, destination = escrow.payer_address, holding
        elif target is EscrowStatus.RELEASED:
            source, destination = holding, escrow.payee_address
            fee = self._fee_for(escrow.amount)
        else:
            source, destination = holding, escrow.payer_address

        return TransferPlan(
            escrow_id=escrow.id,
            target=target,
            idempotency_key=escrow_idempotency_key(escrow.id, target.value),
            source=source,
            destination=destination,
            amount=escrow.amount - fee,
            fee=fee,
            asset=escrow.asset,
        )

    def _fee_for(self, amount: Decimal) -> Decimal:
        bps = self._settings.platform_fee_bps
        if bps <= 0:
            return Decimal("0")
        return (amount * bps / Decimal(10_000)).quantize(_MICRO, rounding=ROUND_DOWN)

    async def _transfer(self, plan: TransferPlan) -> TransferReceipt:
        """Call the gateway, retrying Unavailable with exponential backoff."""
        settings = self._settings
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(GatewayUnavailableError),
            stop=stop_after_attempt(settings.gateway_max_attempts),
            wait=wait_exponential(
                min=settings.gateway_backoff_min_seconds,
                max=settings.gateway_backoff_max_seconds,
            ),
            before_sleep=_log_gateway_retry,
            reraise=True,
        ):
            with attempt:
                receipt = await self._gateway.transfer(
                    plan.idempotency_key,
                    plan.source,
                    plan.destination,
                    plan.amount,
                    plan.asset,
                )
        return receipt

    async def _note_failure(
        self,
        uow: UnitOfWork,
        plan: TransferPlan,
        exc: Exception,
        *,
        keep_pending: bool,
    ) -> None:
        escrow = await get_or_raise(uow.escrows.get_by_id, "escrow", plan.escrow_id)
        escrow.last_error = str(exc)
        if not keep_pending and escrow.pending_status == plan.target:
            escrow.pending_status = None
        await uow.escrows.save(escrow)
        log = logger.warning if keep_pending else logger.error
        log(
            "escrow.transfer_failed",
            escrow_id=str(plan.escrow_id),
            target=plan.target.value,
            pending=keep_pending,
            error=str(exc),
        )

    async def _complete(
        self, uow: UnitOfWork, plan: TransferPlan, receipt: TransferReceipt
    ) -> Escrow:
        """Tx2: append ledger entries and advance the status."""
        escrow = await get_or_raise(uow.escrows.get_by_id, "escrow", plan.escrow_id)
        if escrow.status == plan.target:
            return escrow

        old = escrow.status
        guard(EscrowStateMachine, "escrow", old, _EVENTS[plan.target])

        recorded = {e.kind for e in await uow.ledger.get_by_key(plan.idempotency_key)}
        now = utcnow()
        if plan.target is EscrowStatus.FUNDED:
            entries = [(LedgerEntryKind.FUND, plan.amount)]
            escrow.funded_at = now
        elif plan.target is EscrowStatus.RELEASED:
            entries = [(LedgerEntryKind.RELEASE, plan.amount)]
            if plan.fee > 0:
                entries.append((LedgerEntryKind.FEE, plan.fee))
            escrow.resolved_at = now
        else:
            entries = [(LedgerEntryKind.REFUND, plan.amount)]
            escrow.resolved_at = now

        for kind, amount in entries:
            if kind.value in recorded:
                continue
            await LedgerService.append(
                uow, escrow.id, kind, amount, receipt.external_ref, plan.idempotency_key
            )

        escrow.pending_status = None
        escrow.last_error = None
        await uow.escrows.set_status(escrow, plan.target)
        uow.record(EntityType.ESCROW, escrow.id, old, plan.target, ref=receipt.external_ref)
        logger.info(
            f"escrow.{plan.target.value}",
            escrow_id=str(escrow.id),
            amount=str(plan.amount),
            ref=receipt.external_ref,
        )

        if self._on_settled is not None:
            await self._on_settled(uow, escrow, plan.target)
        return escrow


def _log_gateway_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.info(
        "escrow.gateway_retry",
        attempt=retry_state.attempt_number,
        error=str(exc) if exc else None,
    )
