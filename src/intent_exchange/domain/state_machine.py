"""Transition guards for agents, intents, matches and escrows.

Uses python-statemachine to enforce legal state transitions at the domain
level. Services instantiate a machine at the entity's current status, fire
the named event, and only then write the resulting status. An illegal
transition raises TransitionNotAllowed, which ``guard`` translates into
InvalidStateTransitionError.

Intent:
    open        -> matched      (accept)
    matched     -> in_progress  (start)
    in_progress -> completed    (complete)
    open | matched | in_progress -> cancelled  (cancel)
    open | matched              -> expired    (expire)

Match:
    proposed -> accepted    (accept)
    proposed -> superseded  (supersede)
    proposed | accepted -> rejected  (reject)
    proposed | accepted -> expired   (expire)

Escrow:
    created  -> funded                  (fund)
    funded   -> disputed                (dispute)
    funded | disputed -> released       (release)
    funded | disputed -> refunded       (refund)

Agent:
    idle     -> matched   (match)
    matched  -> busy      (start)
    matched | busy -> idle  (free)
    idle     -> disabled  (disable)
    disabled -> idle      (enable)
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from intent_exchange.domain.exceptions import InvalidStateTransitionError


class _StatusGuard:
    """Start a machine at a persisted status string instead of the initial state."""

    def __init__(self, current_status: str) -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(f"Unknown status '{current_status}'. Valid states: {valid}")
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the status enum)."""
        return str(self.current_state_value)

    def get_allowed_events(self) -> list[str]:
        """Return the names of events that can fire from the current state."""
        return [str(event.id) for event in self.allowed_events]


class IntentStateMachine(_StatusGuard, StateMachine):
    OPEN = State("Open", value="open", initial=True)
    MATCHED = State("Matched", value="matched")
    IN_PROGRESS = State("In progress", value="in_progress")
    COMPLETED = State("Completed", value="completed", final=True)
    CANCELLED = State("Cancelled", value="cancelled", final=True)
    EXPIRED = State("Expired", value="expired", final=True)

    accept = OPEN.to(MATCHED)
    start = MATCHED.to(IN_PROGRESS)
    complete = IN_PROGRESS.to(COMPLETED)
    cancel = OPEN.to(CANCELLED) | MATCHED.to(CANCELLED) | IN_PROGRESS.to(CANCELLED)
    expire = OPEN.to(EXPIRED) | MATCHED.to(EXPIRED)


class MatchStateMachine(_StatusGuard, StateMachine):
    PROPOSED = State("Proposed", value="proposed", initial=True)
    ACCEPTED = State("Accepted", value="accepted")
    REJECTED = State("Rejected", value="rejected", final=True)
    EXPIRED = State("Expired", value="expired", final=True)
    SUPERSEDED = State("Superseded", value="superseded", final=True)

    accept = PROPOSED.to(ACCEPTED)
    supersede = PROPOSED.to(SUPERSEDED)
    reject = PROPOSED.to(REJECTED) | ACCEPTED.to(REJECTED)
    expire = PROPOSED.to(EXPIRED) | ACCEPTED.to(EXPIRED)


class EscrowStateMachine(_StatusGuard, StateMachine):
    CREATED = State("Created", value="created", initial=True)
    FUNDED = State("Funded", value="funded")
    DISPUTED = State("Disputed", value="disputed")
    RELEASED = State("Released", value="released", final=True)
    REFUNDED = State("Refunded", value="refunded", final=True)

    fund = CREATED.to(FUNDED)
    dispute = FUNDED.to(DISPUTED)
    release = FUNDED.to(RELEASED) | DISPUTED.to(RELEASED)
    refund = FUNDED.to(REFUNDED) | DISPUTED.to(REFUNDED)


class AgentStateMachine(_StatusGuard, StateMachine):
    IDLE = State("Idle", value="idle", initial=True)
    MATCHED = State("Matched", value="matched")
    BUSY = State("Busy", value="busy")
    DISABLED = State("Disabled", value="disabled")

    match = IDLE.to(MATCHED)
    start = MATCHED.to(BUSY)
    free = MATCHED.to(IDLE) | BUSY.to(IDLE)
    disable = IDLE.to(DISABLED)
    enable = DISABLED.to(IDLE)


def validate_transition(
    machine_cls: type[_StatusGuard], current_status: str, event_name: str
) -> str:
    """Validate a state transition and return the new status.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = machine_cls(current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status


def guard(
    machine_cls: type[_StatusGuard], entity: str, current_status: str, event_name: str
) -> str:
    """Like validate_transition, but raises InvalidStateTransitionError."""
    try:
        return validate_transition(machine_cls, current_status, event_name)
    except TransitionNotAllowed as err:
        raise InvalidStateTransitionError(entity, current_status, event_name) from err
