"""Intent Lifecycle Coordinator.

Sole owner of intent status. Sequences matching -> escrow -> completion:

    create_intent   open, auto-proposes the best candidates
    accept_match    open -> matched, opens and funds the escrow
    start_work      matched -> in_progress (escrow must be funded)
    report_progress agent owner notes progress while in_progress
    complete_work   in_progress -> completed, via escrow release
    cancel          open | matched | in_progress -> cancelled, refund if funded
    expire          open | matched past deadline -> expired, refund if funded

Closing an intent and marking its escrow refund pending happen in one
transaction, so a crash before the gateway call still leaves a durable
refund for ``EscrowService.resume_pending``. Release runs the other way
round: the intent completes inside the escrow's settlement transaction,
never before the payout is confirmed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeVar

from intent_exchange.config import get_settings
from intent_exchange.domain.clock import as_utc, utcnow
from intent_exchange.domain.enums import (
    AgentStatus,
    DisputeResolution,
    EntityType,
    EscrowStatus,
    IntentStatus,
    MatchStatus,
)
from intent_exchange.domain.exceptions import (
    ConflictError,
    GatewayDeclinedError,
    GatewayUnavailableError,
    NotAuthorizedError,
    PreconditionFailedError,
)
from intent_exchange.domain.matching import normalize_tags
from intent_exchange.domain.state_machine import (
    AgentStateMachine,
    IntentStateMachine,
    MatchStateMachine,
    guard,
)
from intent_exchange.infrastructure.database.orm_models import Intent
from intent_exchange.infrastructure.database.unit_of_work import run_in_transaction
from intent_exchange.logging_config import get_logger
from intent_exchange.services.common import SYSTEM_ACTOR, ensure_actor, get_or_raise
from intent_exchange.services.escrow_service import EscrowService
from intent_exchange.services.ledger_service import LedgerService
from intent_exchange.services.matching_service import MatchingEngine

if TYPE_CHECKING:
    import uuid
    from collections.abc import Awaitable, Callable, Iterable
    from datetime import datetime
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from intent_exchange.config import Settings
    from intent_exchange.domain.notifications import StatusNotifier
    from intent_exchange.domain.settlement_protocol import SettlementGateway
    from intent_exchange.infrastructure.database.orm_models import Agent, Escrow, Match
    from intent_exchange.infrastructure.database.unit_of_work import UnitOfWork

logger = get_logger(__name__)

T = TypeVar("T")


class IntentCoordinator:
    """Drives intents through their lifecycle."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: SettlementGateway,
        notifier: StatusNotifier | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._settings = settings or get_settings()
        self.matching = MatchingEngine(session_factory, notifier, self._settings)
        self.escrows = EscrowService(
            session_factory,
            gateway,
            notifier,
            self._settings,
            on_settled=self._after_settlement,
        )
        self.ledger = LedgerService(session_factory)

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    async def create_intent(
        self,
        owner_id: str,
        title: str,
        required_capabilities: Iterable[str],
        budget_amount: Decimal,
        budget_asset: str,
        payer_address: str,
        *,
        description: str | None = None,
        tags: Iterable[str] = (),
        deadline: datetime | None = None,
        now: datetime | None = None,
    ) -> Intent:
        """Post an ``open`` intent and propose it to the top candidates."""
        if budget_amount <= 0:
            raise PreconditionFailedError("Budget must be positive")
        deadline = self._check_deadline(deadline, now)

        async def work(uow: UnitOfWork) -> Intent:
            return await self._post_in(
                uow,
                Intent(
                    owner_id=owner_id,
                    title=title,
                    description=description,
                    required_capabilities=normalize_tags(required_capabilities),
                    tags=normalize_tags(tags),
                    budget_amount=budget_amount,
                    budget_asset=budget_asset,
                    payer_address=payer_address,
                    status=IntentStatus.OPEN.value,
                    deadline=deadline,
                ),
            )

        return await self._transaction(work)

    async def repost(
        self,
        intent_id: uuid.UUID,
        actor: str,
        *,
        deadline: datetime | None = None,
        now: datetime | None = None,
    ) -> Intent:
        """Post a fresh ``open`` copy of a cancelled or expired intent.

        The original stays terminal; the copy links back via ``reposted_from_id``.
        """
        deadline = self._check_deadline(deadline, now)

        async def work(uow: UnitOfWork) -> Intent:
            old = await get_or_raise(uow.intents.get_by_id, "intent", intent_id)
            ensure_actor(actor, old.owner_id, f"repost intent {intent_id}")
            if old.status not in (IntentStatus.CANCELLED, IntentStatus.EXPIRED):
                raise PreconditionFailedError(
                    f"Only cancelled or expired intents can be reposted (intent is {old.status})"
                )
            return await self._post_in(
                uow,
                Intent(
                    owner_id=old.owner_id,
                    title=old.title,
                    description=old.description,
                    required_capabilities=list(old.required_capabilities),
                    tags=list(old.tags),
                    budget_amount=old.budget_amount,
                    budget_asset=old.budget_asset,
                    payer_address=old.payer_address,
                    status=IntentStatus.OPEN.value,
                    deadline=deadline,
                    reposted_from_id=old.id,
                ),
            )

        return await self._transaction(work)

    # ------------------------------------------------------------------
    # Acceptance and funding
    # ------------------------------------------------------------------

    async def accept_match(self, match_id: uuid.UUID, actor: str) -> Match:
        """Intent owner accepts a proposal; the escrow is opened and funded.

        Funding problems do not undo the acceptance. An unavailable rail
        leaves the escrow ``created`` for ``fund_escrow``; a declined
        transfer cancels the intent.
        """

        async def work(uow: UnitOfWork) -> tuple[Match, uuid.UUID]:
            match = await get_or_raise(uow.matches.get_by_id, "match", match_id)
            intent = await get_or_raise(uow.intents.get_by_id, "intent", match.intent_id)
            ensure_actor(actor, intent.owner_id, f"accept match {match_id}")
            match, intent, agent = await self.matching.accept_in(uow, match)
            escrow = await self.escrows.open_in(uow, intent, match, agent)
            return match, escrow.id

        match, escrow_id = await self._transaction(work)

        try:
            await self._fund(escrow_id, match.intent_id)
        except GatewayUnavailableError:
            logger.warning("intent.funding_pending", match_id=str(match_id), escrow_id=str(escrow_id))
        except GatewayDeclinedError:
            logger.warning("intent.funding_declined", match_id=str(match_id), escrow_id=str(escrow_id))
        return await self.matching.get_match(match_id)

    async def fund_escrow(self, match_id: uuid.UUID, actor: str) -> Escrow:
        """Retry funding the escrow of an accepted match."""

        async def work(uow: UnitOfWork) -> uuid.UUID:
            match = await get_or_raise(uow.matches.get_by_id, "match", match_id)
            intent = await get_or_raise(uow.intents.get_by_id, "intent", match.intent_id)
            ensure_actor(actor, intent.owner_id, f"fund match {match_id}")
            escrow = await uow.escrows.get_by_match(match.id)
            if escrow is None:
                raise PreconditionFailedError(f"Match {match_id} has no escrow")
            if intent.status != IntentStatus.MATCHED and escrow.status == EscrowStatus.CREATED:
                raise PreconditionFailedError(f"Intent {intent.id} is {intent.status}, not matched")
            return escrow.id

        escrow_id = await self._transaction(work)
        match = await self.matching.get_match(match_id)
        return await self._fund(escrow_id, match.intent_id)

    # ------------------------------------------------------------------
    # Work
    # ------------------------------------------------------------------

    async def start_work(self, match_id: uuid.UUID, actor: str) -> Intent:
        """Requires a matched intent, the accepted match and a funded escrow."""

        async def work(uow: UnitOfWork) -> Intent:
            match, intent, agent = await self._load_match(uow, match_id)
            ensure_actor(actor, agent.owner_id if agent else None, f"start work on {match_id}")
            if match.status != MatchStatus.ACCEPTED:
                raise PreconditionFailedError(f"Match {match_id} is {match.status}, not accepted")
            if intent.status != IntentStatus.MATCHED:
                raise PreconditionFailedError(f"Intent {intent.id} is {intent.status}, not matched")
            escrow = await uow.escrows.get_by_match(match.id)
            if escrow is None or escrow.status != EscrowStatus.FUNDED:
                raise PreconditionFailedError(f"Escrow for match {match_id} is not funded")

            guard(IntentStateMachine, "intent", intent.status, "start")
            await uow.intents.set_status(intent, IntentStatus.IN_PROGRESS)
            uow.record(EntityType.INTENT, intent.id, IntentStatus.MATCHED, IntentStatus.IN_PROGRESS)

            guard(AgentStateMachine, "agent", agent.status, "start")
            await uow.agents.set_status(agent, AgentStatus.BUSY)
            uow.record(EntityType.AGENT, agent.id, AgentStatus.MATCHED, AgentStatus.BUSY)
            logger.info("intent.in_progress", intent_id=str(intent.id), match_id=str(match_id))
            return intent

        return await self._transaction(work)

    async def report_progress(
        self,
        match_id: uuid.UUID,
        actor: str,
        progress: int,
        notes: str | None = None,
    ) -> Match:
        """Agent owner records how far the work is. Never completes the intent.

        Raises:
            PreconditionFailedError: Progress outside 0-100, match not accepted
                or intent not in progress.
            NotAuthorizedError: ``actor`` does not own the agent.
        """
        if not 0 <= progress <= 100:
            raise PreconditionFailedError(f"Progress must be between 0 and 100, got {progress}")

        async def work(uow: UnitOfWork) -> Match:
            match, intent, agent = await self._load_match(uow, match_id)
            ensure_actor(actor, agent.owner_id if agent else None, f"report progress on {match_id}")
            if match.status != MatchStatus.ACCEPTED:
                raise PreconditionFailedError(f"Match {match_id} is {match.status}, not accepted")
            if intent.status != IntentStatus.IN_PROGRESS:
                raise PreconditionFailedError(
                    f"Intent {intent.id} is {intent.status}, not in_progress"
                )
            match.progress = progress
            match.progress_notes = notes
            match.progress_updated_at = utcnow()
            await uow.matches.save(match)
            uow.record(
                EntityType.MATCH,
                match.id,
                match.status,
                match.status,
                progress=progress,
                notes=notes,
            )
            logger.info("match.progress", match_id=match.id, intent_id=intent.id, progress=progress)
            return match

        return await self._transaction(work)

    async def complete_work(self, match_id: uuid.UUID, actor: str) -> Intent:
        """Release the escrow; the intent completes in the same transaction.

        Raises:
            PreconditionFailedError: Intent not in progress or escrow disputed.
            GatewayUnavailableError: Payout still pending; safe to call again.
            GatewayDeclinedError: Payout refused; the escrow was refunded and
                the intent cancelled.
        """

        async def work(uow: UnitOfWork) -> tuple[uuid.UUID, uuid.UUID]:
            match, intent, agent = await self._load_match(uow, match_id)
            ensure_actor(actor, agent.owner_id if agent else None, f"complete work on {match_id}")
            if intent.status != IntentStatus.IN_PROGRESS:
                raise PreconditionFailedError(
                    f"Intent {intent.id} is {intent.status}, not in_progress"
                )
            escrow = await uow.escrows.get_by_match(match.id)
            if escrow is None:
                raise PreconditionFailedError(f"Match {match_id} has no escrow")
            if escrow.status == EscrowStatus.DISPUTED:
                raise PreconditionFailedError(f"Escrow {escrow.id} is disputed")
            return intent.id, escrow.id

        intent_id, escrow_id = await self._transaction(work)
        await self.escrows.release(escrow_id)
        return await self.get_intent(intent_id)

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    async def cancel(self, intent_id: uuid.UUID, actor: str, reason: str = "") -> Intent:
        """Cancel an open, matched or in-progress intent; refund if funded."""

        async def work(uow: UnitOfWork) -> uuid.UUID | None:
            intent = await get_or_raise(uow.intents.get_by_id, "intent", intent_id)
            ensure_actor(actor, intent.owner_id, f"cancel intent {intent_id}")
            return await self._close_in(
                uow, intent, IntentStatus.CANCELLED, reason or "cancelled by requester"
            )

        refund_escrow_id = await self._transaction(work)
        if refund_escrow_id is not None:
            await self._refund(refund_escrow_id)
        return await self.get_intent(intent_id)

    async def expire(self, intent_id: uuid.UUID, now: datetime | None = None) -> Intent:
        """Expire an open or matched intent whose deadline has passed."""
        now = now or utcnow()

        async def work(uow: UnitOfWork) -> uuid.UUID | None:
            intent = await get_or_raise(uow.intents.get_by_id, "intent", intent_id)
            deadline = as_utc(intent.deadline)
            if deadline is None or deadline > now:
                raise PreconditionFailedError(f"Intent {intent_id} is not past its deadline")
            return await self._close_in(uow, intent, IntentStatus.EXPIRED, "deadline passed")

        refund_escrow_id = await self._transaction(work)
        if refund_escrow_id is not None:
            await self._refund(refund_escrow_id)
        return await self.get_intent(intent_id)

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def dispute(self, match_id: uuid.UUID, actor: str, reason: str) -> Escrow:
        """Either party freezes the escrow of an in-progress intent."""

        async def work(uow: UnitOfWork) -> Escrow:
            match, intent, agent = await self._load_match(uow, match_id)
            parties = {intent.owner_id, agent.owner_id if agent else None}
            if actor != SYSTEM_ACTOR and actor not in parties:
                raise NotAuthorizedError(actor, f"dispute match {match_id}")
            if intent.status != IntentStatus.IN_PROGRESS:
                raise PreconditionFailedError(
                    f"Intent {intent.id} is {intent.status}, not in_progress"
                )
            escrow = await uow.escrows.get_by_match(match.id)
            if escrow is None:
                raise PreconditionFailedError(f"Match {match_id} has no escrow")
            return await self.escrows.dispute_in(uow, escrow, actor, reason)

        return await self._transaction(work)

    async def resolve_dispute(
        self,
        escrow_id: uuid.UUID,
        resolution: DisputeResolution,
        actor: str = SYSTEM_ACTOR,
    ) -> Intent:
        """Operator decision on a disputed escrow.

        ``release`` pays the agent and completes the intent; ``refund``
        returns the funds and cancels it.
        """
        if actor != SYSTEM_ACTOR:
            raise NotAuthorizedError(actor, f"resolve dispute on escrow {escrow_id}")
        escrow = await self.escrows.get(escrow_id)
        if escrow.status != EscrowStatus.DISPUTED:
            raise PreconditionFailedError(f"Escrow {escrow_id} is {escrow.status}, not disputed")

        logger.info("escrow.dispute_resolving", escrow_id=str(escrow_id), resolution=resolution.value)
        if resolution is DisputeResolution.RELEASE:
            await self.escrows.release(escrow_id)
        else:
            await self.escrows.refund(escrow_id)
        return await self.get_intent(escrow.intent_id)

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_intent(self, intent_id: uuid.UUID) -> Intent:
        return await run_in_transaction(
            self._session_factory,
            lambda uow: get_or_raise(uow.intents.get_by_id, "intent", intent_id),
        )

    async def list_intents(
        self, owner_id: str | None = None, status: IntentStatus | None = None
    ) -> list[Intent]:
        return await run_in_transaction(
            self._session_factory, lambda uow: uow.intents.list_all(owner_id, status)
        )

    async def list_overdue(self, now: datetime | None = None) -> list[Intent]:
        """Open or matched intents whose deadline is at or before ``now``."""
        return await run_in_transaction(
            self._session_factory, lambda uow: uow.intents.get_overdue(now or utcnow())
        )

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

    @staticmethod
    def _check_deadline(deadline: datetime | None, now: datetime | None) -> datetime | None:
        deadline = as_utc(deadline)
        if deadline is not None and deadline <= (now or utcnow()):
            raise PreconditionFailedError("Deadline must be in the future")
        return deadline

    async def _post_in(self, uow: UnitOfWork, intent: Intent) -> Intent:
        intent = await uow.intents.create(intent)
        uow.record(EntityType.INTENT, intent.id, None, IntentStatus.OPEN, owner=intent.owner_id)

        candidates = await self.matching.candidates_in(uow, intent)
        for candidate in candidates[: self._settings.max_auto_proposals]:
            await self.matching.propose_in(uow, intent, candidate.agent)

        logger.info(
            "intent.created",
            intent_id=str(intent.id),
            owner=intent.owner_id,
            budget=str(intent.budget_amount),
            proposals=min(len(candidates), self._settings.max_auto_proposals),
            reposted_from=str(intent.reposted_from_id) if intent.reposted_from_id else None,
        )
        return intent

    async def _load_match(
        self, uow: UnitOfWork, match_id: uuid.UUID
    ) -> tuple[Match, Intent, Agent | None]:
        match = await get_or_raise(uow.matches.get_by_id, "match", match_id)
        intent = await get_or_raise(uow.intents.get_by_id, "intent", match.intent_id)
        agent = await uow.agents.get_by_id(match.agent_id) if match.agent_id else None
        return match, intent, agent

    async def _fund(self, escrow_id: uuid.UUID, intent_id: uuid.UUID) -> Escrow:
        # A declined funding cancels the intent and leaves the escrow `created`;
        # with no fund entry that is its final state.
        try:
            escrow = await self.escrows.fund(escrow_id)
        except GatewayDeclinedError:

            async def work(uow: UnitOfWork) -> None:
                intent = await get_or_raise(uow.intents.get_by_id, "intent", intent_id)
                if not IntentStatus(intent.status).is_terminal:
                    await self._close_in(uow, intent, IntentStatus.CANCELLED, "funding declined")

            await self._transaction(work)
            raise

        if escrow.pending_status == EscrowStatus.REFUNDED:
            await self._refund(escrow.id)
            return await self.escrows.get(escrow_id)
        return escrow

    async def _refund(self, escrow_id: uuid.UUID) -> None:
        try:
            await self.escrows.refund(escrow_id)
        except GatewayUnavailableError:
            # The pending marker stays; the sweep resumes the refund.
            logger.warning("intent.refund_pending", escrow_id=str(escrow_id))

    async def _close_in(
        self,
        uow: UnitOfWork,
        intent: Intent,
        target: IntentStatus,
        reason: str,
    ) -> uuid.UUID | None:
        """Move an intent to cancelled/expired with its matches and agent.

        Returns the id of an escrow whose refund was marked pending, if any.
        """
        event_name = "cancel" if target is IntentStatus.CANCELLED else "expire"
        old = intent.status
        guard(IntentStateMachine, "intent", old, event_name)

        refund_escrow_id = None
        escrow = await uow.escrows.get_by_intent(intent.id)
        if escrow is not None:
            if escrow.status == EscrowStatus.DISPUTED:
                raise PreconditionFailedError(f"Escrow {escrow.id} is disputed; awaiting resolution")
            if escrow.pending_status not in (None, EscrowStatus.REFUNDED):
                raise ConflictError(
                    f"Escrow {escrow.id} has a {escrow.pending_status} transfer in flight"
                )
            # An escrow that never funded stays `created` for good: no money
            # moved, so a cancelled or expired intent has nothing to refund.
            if escrow.status == EscrowStatus.FUNDED:
                if escrow.pending_status is None:
                    await self.escrows.mark_pending_in(uow, escrow, EscrowStatus.REFUNDED)
                refund_escrow_id = escrow.id

        match_status = MatchStatus.REJECTED if event_name == "cancel" else MatchStatus.EXPIRED
        match_event = "reject" if event_name == "cancel" else "expire"
        for match in await uow.matches.get_by_intent(intent.id):
            if not MatchStatus(match.status).is_live:
                continue
            was = match.status
            guard(MatchStateMachine, "match", was, match_event)
            await uow.matches.set_status(match, match_status)
            uow.record(EntityType.MATCH, match.id, was, match_status)
            if was == MatchStatus.ACCEPTED and match.agent_id is not None:
                await self._free_agent(uow, match.agent_id)

        await uow.intents.set_status(intent, target, closed_at=utcnow(), reason=reason)
        uow.record(EntityType.INTENT, intent.id, old, target, reason=reason)
        logger.info(f"intent.{target.value}", intent_id=str(intent.id), reason=reason)
        return refund_escrow_id

    async def _free_agent(self, uow: UnitOfWork, agent_id: uuid.UUID) -> None:
        agent = await uow.agents.get_by_id(agent_id)
        if agent is None or agent.status not in (AgentStatus.MATCHED, AgentStatus.BUSY):
            return
        old = agent.status
        guard(AgentStateMachine, "agent", old, "free")
        await uow.agents.set_status(agent, AgentStatus.IDLE)
        uow.record(EntityType.AGENT, agent.id, old, AgentStatus.IDLE)

    async def _after_settlement(
        self, uow: UnitOfWork, escrow: Escrow, new_status: EscrowStatus
    ) -> None:
        """Runs inside the escrow's settlement transaction.

        A funding that lands after its intent closed is turned into a pending
        refund here, so the money is never left sitting in escrow.
        """
        intent = await get_or_raise(uow.intents.get_by_id, "intent", escrow.intent_id)

        if new_status is EscrowStatus.FUNDED:
            if IntentStatus(intent.status).is_terminal:
                # The intent closed while funding was in flight.
                logger.warning(
                    "intent.funded_after_close",
                    intent_id=str(intent.id),
                    escrow_id=str(escrow.id),
                )
                await self.escrows.mark_pending_in(uow, escrow, EscrowStatus.REFUNDED)
        elif new_status is EscrowStatus.RELEASED:
            old = intent.status
            guard(IntentStateMachine, "intent", old, "complete")
            await uow.intents.set_status(intent, IntentStatus.COMPLETED, closed_at=utcnow())
            uow.record(EntityType.INTENT, intent.id, old, IntentStatus.COMPLETED)
            match = await uow.matches.get_by_id(escrow.match_id)
            if match is not None and match.agent_id is not None:
                await self._free_agent(uow, match.agent_id)
            logger.info("intent.completed", intent_id=str(intent.id), escrow_id=str(escrow.id))
        elif not IntentStatus(intent.status).is_terminal:
            # Declined payout or a dispute settled for the requester.
            await self._close_in(uow, intent, IntentStatus.CANCELLED, "escrow refunded")
