"""Tests for the transition guards.

These tests verify that:
    1. The happy-path lifecycles are allowed.
    2. Illegal transitions are blocked (TransitionNotAllowed / InvalidStateTransitionError).
    3. Terminal states accept no further events.
    4. The validate_transition / guard helpers behave as documented.
"""

from __future__ import annotations

import warnings

import pytest
from statemachine.exceptions import TransitionNotAllowed

from intent_exchange.domain.exceptions import InvalidStateTransitionError
from intent_exchange.domain.state_machine import (
    AgentStateMachine,
    EscrowStateMachine,
    IntentStateMachine,
    MatchStateMachine,
    guard,
    validate_transition,
)


class TestIntentLifecycle:
    """open -> matched -> in_progress -> completed."""

    def test_full_lifecycle(self) -> None:
        sm = IntentStateMachine("open")
        sm.accept()
        assert sm.status == "matched"
        sm.start()
        assert sm.status == "in_progress"
        sm.complete()
        assert sm.status == "completed"

    def test_status_read_is_warning_free(self) -> None:
        sm = IntentStateMachine("matched")
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            assert sm.status == "matched"

    @pytest.mark.parametrize("status", ["open", "matched", "in_progress"])
    def test_cancel_before_terminal(self, status: str) -> None:
        assert validate_transition(IntentStateMachine, status, "cancel") == "cancelled"

    @pytest.mark.parametrize("status", ["open", "matched"])
    def test_expire_only_before_work_starts(self, status: str) -> None:
        assert validate_transition(IntentStateMachine, status, "expire") == "expired"

    def test_in_progress_cannot_expire(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition(IntentStateMachine, "in_progress", "expire")

    @pytest.mark.parametrize("status", ["completed", "cancelled", "expired"])
    def test_terminal_states_never_reopen(self, status: str) -> None:
        sm = IntentStateMachine(status)
        assert sm.get_allowed_events() == []
        with pytest.raises(TransitionNotAllowed):
            sm.accept()


class TestMatchLifecycle:
    def test_accept(self) -> None:
        assert validate_transition(MatchStateMachine, "proposed", "accept") == "accepted"

    def test_only_proposed_can_be_superseded(self) -> None:
        assert validate_transition(MatchStateMachine, "proposed", "supersede") == "superseded"
        with pytest.raises(TransitionNotAllowed):
            validate_transition(MatchStateMachine, "accepted", "supersede")

    def test_accepted_can_be_rejected_or_expired(self) -> None:
        assert validate_transition(MatchStateMachine, "accepted", "reject") == "rejected"
        assert validate_transition(MatchStateMachine, "accepted", "expire") == "expired"

    def test_superseded_is_final(self) -> None:
        assert MatchStateMachine("superseded").get_allowed_events() == []


class TestEscrowLifecycle:
    def test_fund_then_release(self) -> None:
        sm = EscrowStateMachine("created")
        sm.fund()
        assert sm.status == "funded"
        sm.release()
        assert sm.status == "released"

    def test_dispute_then_refund(self) -> None:
        sm = EscrowStateMachine("funded")
        sm.dispute()
        assert sm.status == "disputed"
        sm.refund()
        assert sm.status == "refunded"

    def test_created_cannot_release(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition(EscrowStateMachine, "created", "release")

    def test_cannot_dispute_twice(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition(EscrowStateMachine, "disputed", "dispute")

    @pytest.mark.parametrize("status", ["released", "refunded"])
    def test_settled_is_final(self, status: str) -> None:
        assert EscrowStateMachine(status).get_allowed_events() == []


class TestAgentAvailability:
    def test_match_start_free(self) -> None:
        sm = AgentStateMachine("idle")
        sm.match()
        sm.start()
        assert sm.status == "busy"
        sm.free()
        assert sm.status == "idle"

    def test_busy_agent_cannot_be_disabled(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition(AgentStateMachine, "busy", "disable")

    def test_disable_and_enable(self) -> None:
        assert validate_transition(AgentStateMachine, "idle", "disable") == "disabled"
        assert validate_transition(AgentStateMachine, "disabled", "enable") == "idle"


class TestHelpers:
    def test_allowed_events(self) -> None:
        allowed = EscrowStateMachine("funded").get_allowed_events()
        assert set(allowed) == {"dispute", "release", "refund"}

    def test_invalid_event_name(self) -> None:
        with pytest.raises(ValueError, match="Unknown event"):
            validate_transition(IntentStateMachine, "open", "nonexistent_event")

    def test_invalid_status(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            IntentStateMachine("INVALID_STATUS")

    def test_guard_translates_to_domain_error(self) -> None:
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            guard(IntentStateMachine, "intent", "completed", "accept")
        assert exc_info.value.current_state == "completed"
        assert exc_info.value.attempted == "accept"
        assert exc_info.value.kind == "invalid_transition"

    def test_guard_returns_new_status(self) -> None:
        assert guard(EscrowStateMachine, "escrow", "funded", "release") == "released"
