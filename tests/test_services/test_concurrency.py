"""Concurrency and atomicity tests.

Competing calls run concurrently against the same SQLite file, so the
optimistic version checks and the partial unique indexes are exercised for
real. Crash injection replaces a repository write with a failure halfway
through a multi-row transition.
"""

from __future__ import annotations

import asyncio

import pytest

from intent_exchange.domain.exceptions import ConflictError, StaleStateError
from intent_exchange.infrastructure.database.repositories import IntentRepository

REQUESTER = "requester-1"
OWNER = "agent-owner-1"


@pytest.fixture
def settings(settings):  # noqa: ANN001, ANN201
    return settings.model_copy(update={"concurrency_max_attempts": 10})


def _failures(results: list) -> list[BaseException]:
    return [r for r in results if isinstance(r, BaseException)]


class TestCompetingAccepts:
    @pytest.mark.asyncio
    async def test_exactly_one_acceptance_wins(
        self, coordinator, agent_service, register, post_intent  # noqa: ANN001
    ) -> None:
        first = await register()
        second = await register()
        intent = await post_intent()
        m1, m2 = await coordinator.matching.list_matches(intent.id)

        results = await asyncio.gather(
            coordinator.accept_match(m1.id, REQUESTER),
            coordinator.accept_match(m2.id, REQUESTER),
            return_exceptions=True,
        )

        [loser] = _failures(results)
        assert isinstance(loser, StaleStateError | ConflictError)

        statuses = sorted(m.status for m in await coordinator.matching.list_matches(intent.id))
        assert statuses == ["accepted", "superseded"]
        assert (await coordinator.get_intent(intent.id)).status == "matched"

        agent_statuses = sorted(
            [(await agent_service.get_agent(a.id)).status for a in (first, second)]
        )
        assert agent_statuses == ["idle", "matched"]

        escrows = [await coordinator.escrows.get_by_match(m.id) for m in (m1, m2)]
        assert len([e for e in escrows if e is not None]) == 1
        assert await coordinator.ledger.reconcile_all() == []

    @pytest.mark.asyncio
    async def test_same_match_accepted_twice(self, coordinator, register, post_intent) -> None:  # noqa: ANN001
        await register()
        intent = await post_intent()
        [match] = await coordinator.matching.list_matches(intent.id)

        results = await asyncio.gather(
            coordinator.accept_match(match.id, REQUESTER),
            coordinator.accept_match(match.id, REQUESTER),
            return_exceptions=True,
        )
        [loser] = _failures(results)
        assert isinstance(loser, StaleStateError | ConflictError)
        escrow = await coordinator.escrows.get_by_match(match.id)
        assert len(await coordinator.escrows.get_ledger(escrow.id)) == 1


class TestCompetingProposals:
    @pytest.mark.asyncio
    async def test_one_live_match_per_pair(self, coordinator, register, post_intent) -> None:  # noqa: ANN001
        intent = await post_intent(("rust",))
        agent = await register(("rust",))

        results = await asyncio.gather(
            coordinator.matching.propose_match(intent.id, agent.id),
            coordinator.matching.propose_match(intent.id, agent.id),
            return_exceptions=True,
        )
        [loser] = _failures(results)
        assert isinstance(loser, ConflictError)
        assert len(await coordinator.matching.list_matches(intent.id)) == 1


class TestCancelRacingAccept:
    @pytest.mark.asyncio
    async def test_no_funds_stranded(self, coordinator, register, post_intent) -> None:  # noqa: ANN001
        await register()
        intent = await post_intent()
        [match] = await coordinator.matching.list_matches(intent.id)

        await asyncio.gather(
            coordinator.cancel(intent.id, REQUESTER),
            coordinator.accept_match(match.id, REQUESTER),
            return_exceptions=True,
        )
        # Whichever lost, a leftover funded escrow can still be refunded by cancelling again.
        final = await coordinator.get_intent(intent.id)
        if final.status != "cancelled":
            final = await coordinator.cancel(intent.id, REQUESTER)
        assert final.status == "cancelled"

        escrow = await coordinator.escrows.get_by_match(match.id)
        if escrow is not None:
            if escrow.pending_status is not None:
                escrow = await coordinator.escrows.resume_pending(escrow.id)
            assert escrow.status in ("created", "refunded")
        assert await coordinator.ledger.reconcile_all() == []


class TestCrashInjection:
    @pytest.mark.asyncio
    async def test_failed_accept_leaves_nothing_behind(
        self, coordinator, agent_service, notifier, register, post_intent, monkeypatch  # noqa: ANN001
    ) -> None:
        agent = await register()
        other = await register()
        intent = await post_intent()
        matches = await coordinator.matching.list_matches(intent.id)
        chosen = next(m for m in matches if m.agent_id == agent.id)
        notifier.clear()

        async def crash(self, *args: object, **kwargs: object) -> None:  # noqa: ANN001
            raise RuntimeError("connection lost mid-transaction")

        monkeypatch.setattr(IntentRepository, "set_status", crash)
        with pytest.raises(RuntimeError):
            await coordinator.accept_match(chosen.id, REQUESTER)
        monkeypatch.undo()

        assert {m.status for m in await coordinator.matching.list_matches(intent.id)} == {"proposed"}
        assert (await coordinator.get_intent(intent.id)).status == "open"
        assert (await agent_service.get_agent(agent.id)).status == "idle"
        assert (await agent_service.get_agent(other.id)).status == "idle"
        assert await coordinator.escrows.get_by_match(chosen.id) is None
        assert notifier.events == []

        # The same acceptance succeeds once the fault is gone.
        accepted = await coordinator.accept_match(chosen.id, REQUESTER)
        assert accepted.status == "accepted"
