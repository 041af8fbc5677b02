"""Tests for domain enumerations."""

from __future__ import annotations

from intent_exchange.domain.enums import (
    AgentStatus,
    ErrorKind,
    EscrowStatus,
    IntentStatus,
    LedgerEntryKind,
    MatchStatus,
)


class TestIntentStatus:
    def test_all_statuses_exist(self) -> None:
        expected = {"open", "matched", "in_progress", "completed", "cancelled", "expired"}
        assert {s.value for s in IntentStatus} == expected

    def test_status_is_str_enum(self) -> None:
        assert isinstance(IntentStatus.OPEN, str)
        assert IntentStatus.OPEN == "open"

    def test_terminal_statuses(self) -> None:
        terminal = {s for s in IntentStatus if s.is_terminal}
        assert terminal == {IntentStatus.COMPLETED, IntentStatus.CANCELLED, IntentStatus.EXPIRED}


class TestMatchStatus:
    def test_live_statuses(self) -> None:
        assert MatchStatus.PROPOSED.is_live
        assert MatchStatus.ACCEPTED.is_live
        assert not MatchStatus.SUPERSEDED.is_live
        assert not MatchStatus.REJECTED.is_live
        assert not MatchStatus.EXPIRED.is_live


class TestEscrowStatus:
    def test_all_statuses_exist(self) -> None:
        expected = {"created", "funded", "released", "refunded", "disputed"}
        assert {s.value for s in EscrowStatus} == expected

    def test_holds_funds(self) -> None:
        assert EscrowStatus.FUNDED.holds_funds
        assert EscrowStatus.DISPUTED.holds_funds
        assert not EscrowStatus.CREATED.holds_funds
        assert not EscrowStatus.RELEASED.holds_funds


class TestMisc:
    def test_agent_statuses(self) -> None:
        assert {s.value for s in AgentStatus} == {"idle", "matched", "busy", "disabled"}

    def test_ledger_kinds(self) -> None:
        assert {k.value for k in LedgerEntryKind} == {"fund", "release", "refund", "fee"}

    def test_error_kinds_are_wire_safe(self) -> None:
        for kind in ErrorKind:
            assert kind.value == kind.value.lower()
            assert " " not in kind.value
