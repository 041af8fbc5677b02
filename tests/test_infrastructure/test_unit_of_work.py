"""Tests for run_in_transaction: retries, rollback and post-commit events."""

from __future__ import annotations

import pytest
from sqlalchemy.orm.exc import StaleDataError

from intent_exchange.domain.enums import AgentStatus, EntityType
from intent_exchange.domain.exceptions import ConflictError, PreconditionFailedError
from intent_exchange.infrastructure.database.orm_models import Agent
from intent_exchange.infrastructure.database.unit_of_work import (
    UnitOfWork,
    is_write_conflict,
    run_in_transaction,
)
from intent_exchange.infrastructure.notifications import InMemoryStatusNotifier


def _agent(name: str = "w") -> Agent:
    return Agent(
        owner_id="agent-owner-1",
        name=name,
        capabilities=["python"],
        wallet_address="0xW",
        status=AgentStatus.IDLE.value,
    )


class TestRunInTransaction:
    @pytest.mark.asyncio
    async def test_commits_and_publishes_after_commit(self, session_factory) -> None:  # noqa: ANN001
        notifier = InMemoryStatusNotifier()

        async def work(uow: UnitOfWork) -> Agent:
            agent = await uow.agents.create(_agent())
            uow.record(EntityType.AGENT, agent.id, None, AgentStatus.IDLE)
            assert notifier.events == []
            return agent

        agent = await run_in_transaction(session_factory, work, notifier=notifier)
        assert agent.version == 1
        assert [e.new_status for e in notifier.events] == ["idle"]

        stored = await run_in_transaction(session_factory, lambda uow: uow.agents.get_by_id(agent.id))
        assert stored is not None

    @pytest.mark.asyncio
    async def test_domain_error_rolls_back_and_publishes_nothing(self, session_factory) -> None:  # noqa: ANN001
        notifier = InMemoryStatusNotifier()

        async def work(uow: UnitOfWork) -> None:
            agent = await uow.agents.create(_agent())
            uow.record(EntityType.AGENT, agent.id, None, AgentStatus.IDLE)
            raise PreconditionFailedError("nope")

        with pytest.raises(PreconditionFailedError):
            await run_in_transaction(session_factory, work, notifier=notifier)

        assert notifier.events == []
        assert await run_in_transaction(session_factory, lambda uow: uow.agents.list_all()) == []

    @pytest.mark.asyncio
    async def test_write_conflict_reruns_work(self, session_factory) -> None:  # noqa: ANN001
        calls = []

        async def work(uow: UnitOfWork) -> int:
            calls.append(1)
            if len(calls) < 3:
                raise StaleDataError("version mismatch")
            return len(calls)

        assert await run_in_transaction(session_factory, work, max_attempts=5) == 3

    @pytest.mark.asyncio
    async def test_persistent_conflict_becomes_conflict_error(self, session_factory) -> None:  # noqa: ANN001
        async def work(uow: UnitOfWork) -> None:
            raise StaleDataError("version mismatch")

        with pytest.raises(ConflictError, match="did not settle after 2 attempts"):
            await run_in_transaction(session_factory, work, max_attempts=2)

    @pytest.mark.asyncio
    async def test_version_increments_on_update(self, session_factory) -> None:  # noqa: ANN001
        agent = await run_in_transaction(session_factory, lambda uow: uow.agents.create(_agent()))

        async def rename(uow: UnitOfWork) -> Agent:
            stored = await uow.agents.get_by_id(agent.id)
            stored.name = "renamed"
            return await uow.agents.save(stored)

        updated = await run_in_transaction(session_factory, rename)
        assert updated.version == 2


class TestIsWriteConflict:
    def test_classification(self) -> None:
        assert is_write_conflict(StaleDataError("x"))
        assert not is_write_conflict(PreconditionFailedError("x"))
        assert not is_write_conflict(ValueError("x"))
