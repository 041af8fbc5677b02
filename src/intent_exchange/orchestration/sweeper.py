"""Periodic sweep: deadlines, stuck transfers and ledger integrity.

Each pass:

    expire   open/matched intents past their deadline -> Coordinator.expire
    resume   escrows left with a pending transfer     -> EscrowService.resume_pending
    check    every escrow's ledger                    -> LedgerService.reconcile_all

Every per-item action goes through ``capture`` so one failing intent or
escrow never aborts the rest of the pass.

Usage:
    sweeper = ExpirySweeper(coordinator)
    report = await sweeper.run_once()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from intent_exchange.config import get_settings
from intent_exchange.domain.clock import utcnow
from intent_exchange.domain.results import OperationResult, capture
from intent_exchange.logging_config import get_logger

if TYPE_CHECKING:
    from datetime import datetime

    from intent_exchange.config import Settings
    from intent_exchange.services.intent_coordinator import IntentCoordinator
    from intent_exchange.services.ledger_service import ReconciliationReport

logger = get_logger(__name__)


@dataclass
class SweepReport:
    """What one pass did."""

    expired: list[str] = field(default_factory=list)
    resumed: list[str] = field(default_factory=list)
    failures: dict[str, OperationResult] = field(default_factory=dict)
    inconsistent: list[ReconciliationReport] = field(default_factory=list)


class ExpirySweeper:
    """Drives overdue intents and stuck escrows through the normal service APIs."""

    def __init__(self, coordinator: IntentCoordinator, settings: Settings | None = None) -> None:
        self._coordinator = coordinator
        self._settings = settings or get_settings()

    async def run_once(self, now: datetime | None = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()

        for intent in await self._coordinator.list_overdue(now):
            key = str(intent.id)
            result = await capture(self._coordinator.expire(intent.id, now=now))
            if result.ok:
                report.expired.append(key)
            else:
                report.failures[key] = result
                logger.warning("sweep.expire_failed", intent_id=key, **result.to_dict())

        for escrow in await self._coordinator.escrows.list_pending():
            key = str(escrow.id)
            result = await capture(self._coordinator.escrows.resume_pending(escrow.id))
            if result.ok:
                report.resumed.append(key)
            else:
                report.failures[key] = result
                logger.warning("sweep.resume_failed", escrow_id=key, **result.to_dict())

        report.inconsistent = await self._coordinator.ledger.reconcile_all()

        logger.info(
            "sweep.completed",
            expired=len(report.expired),
            resumed=len(report.resumed),
            failures=len(report.failures),
            inconsistent=len(report.inconsistent),
        )
        return report

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        """Sweep every ``sweep_interval_seconds`` until ``stop`` is set."""
        stop = stop or asyncio.Event()
        interval = self._settings.sweep_interval_seconds
        logger.info("sweep.started", interval=interval)
        while not stop.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("sweep.pass_failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except TimeoutError:
                continue
        logger.info("sweep.stopped")
