"""Ledger Service: append-only payment record and reconciliation.

``append`` is the only write path and runs inside the escrow service's
settlement transaction. ``reconcile`` recomputes what the escrow status
should be from its entries and reports any disagreement; it never corrects
anything.

Payment history reads join entries to their escrow, intent and agent so a
requester or an agent owner can see every movement on their deals.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from intent_exchange.domain.enums import EscrowStatus, LedgerEntryKind
from intent_exchange.domain.exceptions import InconsistentLedgerError
from intent_exchange.infrastructure.database.orm_models import LedgerEntry
from intent_exchange.infrastructure.database.unit_of_work import run_in_transaction
from intent_exchange.logging_config import get_logger
from intent_exchange.services.common import ensure_actor, get_or_raise

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from intent_exchange.infrastructure.database.orm_models import Agent, Escrow, Intent
    from intent_exchange.infrastructure.database.unit_of_work import UnitOfWork

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReconciliationReport:
    """Result of checking one escrow's ledger against its stored status.

    Attributes:
        escrow_id: The escrow checked.
        stored_status: Status persisted on the escrow row.
        expected_statuses: Statuses the ledger entries are compatible with.
        entry_count: Number of ledger entries found.
        problems: Human-readable findings; empty when consistent.
    """

    escrow_id: str
    stored_status: str
    expected_statuses: tuple[str, ...]
    entry_count: int
    problems: tuple[str, ...] = ()

    @property
    def consistent(self) -> bool:
        return not self.problems

    def to_dict(self) -> dict:
        return {
            "escrow_id": self.escrow_id,
            "stored_status": self.stored_status,
            "expected_statuses": list(self.expected_statuses),
            "entry_count": self.entry_count,
            "consistent": self.consistent,
            "problems": list(self.problems),
        }


@dataclass(frozen=True)
class PaymentRecord:
    """One ledger entry with the deal it belongs to."""

    entry: LedgerEntry
    escrow_id: uuid.UUID
    escrow_status: str
    asset: str
    intent_id: uuid.UUID
    intent_title: str
    payer_id: str
    agent_id: uuid.UUID | None
    agent_name: str | None

    @classmethod
    def from_row(
        cls, entry: LedgerEntry, escrow: Escrow, intent: Intent, agent: Agent | None
    ) -> PaymentRecord:
        return cls(
            entry=entry,
            escrow_id=escrow.id,
            escrow_status=escrow.status,
            asset=escrow.asset,
            intent_id=intent.id,
            intent_title=intent.title,
            payer_id=intent.owner_id,
            agent_id=agent.id if agent else None,
            agent_name=agent.name if agent else None,
        )


def check_ledger(escrow: Escrow, entries: Sequence[LedgerEntry]) -> ReconciliationReport:
    """Derive the expected escrow status from ``entries`` and compare."""
    by_kind: dict[str, list[LedgerEntry]] = {k.value: [] for k in LedgerEntryKind}
    for entry in entries:
        by_kind.setdefault(entry.kind, []).append(entry)

    funds = by_kind[LedgerEntryKind.FUND]
    releases = by_kind[LedgerEntryKind.RELEASE]
    refunds = by_kind[LedgerEntryKind.REFUND]
    fees = by_kind[LedgerEntryKind.FEE]
    problems: list[str] = []

    for kind, items in (("fund", funds), ("release", releases), ("refund", refunds), ("fee", fees)):
        if len(items) > 1:
            problems.append(f"{len(items)} {kind} entries, expected at most one")

    if (releases or refunds or fees) and not funds:
        problems.append("payout recorded without a fund entry")
    if releases and refunds:
        problems.append("both release and refund recorded")
    if fees and not releases:
        problems.append("fee recorded without a release")

    funded_amount = funds[0].amount if funds else None
    if funded_amount is not None:
        if funded_amount != escrow.amount:
            problems.append(f"fund amount {funded_amount} != escrow amount {escrow.amount}")
        if releases:
            paid_out = releases[0].amount + sum((f.amount for f in fees), Decimal("0"))
            if paid_out != funded_amount:
                problems.append(f"release + fee {paid_out} != funded {funded_amount}")
        if refunds and refunds[0].amount != funded_amount:
            problems.append(f"refund {refunds[0].amount} != funded {funded_amount}")

    if releases:
        expected: tuple[str, ...] = (EscrowStatus.RELEASED.value,)
    elif refunds:
        expected = (EscrowStatus.REFUNDED.value,)
    elif funds:
        expected = (EscrowStatus.FUNDED.value, EscrowStatus.DISPUTED.value)
    else:
        expected = (EscrowStatus.CREATED.value,)

    if escrow.status not in expected:
        problems.append(
            f"status {escrow.status} but ledger implies {' or '.join(expected)}"
        )

    return ReconciliationReport(
        escrow_id=str(escrow.id),
        stored_status=escrow.status,
        expected_statuses=expected,
        entry_count=len(entries),
        problems=tuple(problems),
    )


class LedgerService:
    """Append-only ledger plus the background integrity check."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    async def append(
        uow: UnitOfWork,
        escrow_id: uuid.UUID,
        kind: LedgerEntryKind,
        amount: Decimal,
        external_reference: str,
        idempotency_key: str,
    ) -> LedgerEntry:
        """Append one entry inside the caller's transaction."""
        entry = await uow.ledger.append(
            LedgerEntry(
                escrow_id=escrow_id,
                kind=kind.value,
                amount=amount,
                external_reference=external_reference,
                idempotency_key=idempotency_key,
            )
        )
        logger.info(
            "ledger.appended",
            escrow_id=str(escrow_id),
            kind=kind.value,
            amount=str(amount),
            ref=external_reference,
        )
        return entry

    async def entries(self, escrow_id: uuid.UUID) -> list[LedgerEntry]:
        async def work(uow: UnitOfWork) -> list[LedgerEntry]:
            await get_or_raise(uow.escrows.get_by_id, "escrow", escrow_id)
            return await uow.ledger.get_by_escrow(escrow_id)

        return await run_in_transaction(self._session_factory, work)

    async def payments_for_payer(self, payer_id: str) -> list[PaymentRecord]:
        """Money movements on every intent ``payer_id`` posted, newest first."""

        async def work(uow: UnitOfWork) -> list[PaymentRecord]:
            rows = await uow.ledger.get_history(payer_id=payer_id)
            return [PaymentRecord.from_row(*row) for row in rows]

        return await run_in_transaction(self._session_factory, work)

    async def payments_for_agent(self, agent_id: uuid.UUID, actor: str) -> list[PaymentRecord]:
        """Money movements on deals the agent took. Only its owner may look.

        Raises:
            EntityNotFoundError: Unknown agent.
            NotAuthorizedError: ``actor`` does not own the agent.
        """

        async def work(uow: UnitOfWork) -> list[PaymentRecord]:
            agent = await get_or_raise(uow.agents.get_by_id, "agent", agent_id)
            ensure_actor(actor, agent.owner_id, f"view payments of agent {agent_id}")
            rows = await uow.ledger.get_history(agent_id=agent_id)
            return [PaymentRecord.from_row(*row) for row in rows]

        return await run_in_transaction(self._session_factory, work)

    async def reconcile(self, escrow_id: uuid.UUID) -> ReconciliationReport:
        """Check one escrow.

        Raises:
            EntityNotFoundError: Unknown escrow.
            InconsistentLedgerError: Entries disagree with the stored status.
        """

        async def work(uow: UnitOfWork) -> ReconciliationReport:
            escrow = await get_or_raise(uow.escrows.get_by_id, "escrow", escrow_id)
            return check_ledger(escrow, await uow.ledger.get_by_escrow(escrow_id))

        report = await run_in_transaction(self._session_factory, work)
        if not report.consistent:
            logger.error("ledger.inconsistent", escrow_id=report.escrow_id, problems=report.problems)
            raise InconsistentLedgerError(report.escrow_id, report.stored_status, list(report.problems))
        return report

    async def reconcile_all(self) -> list[ReconciliationReport]:
        """Check every escrow; return only the inconsistent reports."""

        async def work(uow: UnitOfWork) -> list[ReconciliationReport]:
            failing = []
            for escrow_id in await uow.escrows.list_ids():
                escrow = await uow.escrows.get_by_id(escrow_id)
                report = check_ledger(escrow, await uow.ledger.get_by_escrow(escrow_id))
                if not report.consistent:
                    failing.append(report)
            return failing

        failing = await run_in_transaction(self._session_factory, work)
        for report in failing:
            logger.error("ledger.inconsistent", escrow_id=report.escrow_id, problems=report.problems)
        logger.info("ledger.reconcile_all_done", inconsistent=len(failing))
        return failing
