"""
Booking State Machine

    CREATED -> SCHEDULED -> PAYMENT_PENDING -> PAID -> CONFIRMED
    side branches: CANCELLED, RESCHEDULED (back to same state with new time),
    PAYMENT_FAILED (back to PAYMENT_PENDING, or FAILED after max attempts),
    REFUNDED (from PAID / CONFIRMED)

`transition()` is a pure function: it takes a snapshot of the booking
plus one event and returns the resulting snapshot and the side effects
to enqueue, or raises InvalidTransitionError / StaleEventError. It never
touches the database, so it can be unit-tested directly.
"""

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, FrozenSet, Optional, Tuple

from ..errors import InvalidTransitionError, StaleEventError
from ..models.booking import BookingState, TERMINAL_STATES
from ..models.outbox import SideEffectAction


class EventType(str, enum.Enum):
    SCHEDULING_CONFIRMED = "scheduling-confirmed"
    SCHEDULING_CANCELED = "scheduling-canceled"
    SCHEDULING_RESCHEDULED = "scheduling-rescheduled"
    PAYMENT_INITIATED = "payment-initiated"
    PAYMENT_SUCCEEDED = "payment-succeeded"
    PAYMENT_FAILED = "payment-failed"
    PAYMENT_REFUNDED = "payment-refunded"
    CONFIRMATION_FINALIZED = "confirmation-finalized"  # internal
    USER_CANCEL = "user-cancel"                        # direct command


class PaymentOrderingPolicy(str, enum.Enum):
    BUFFER = "buffer"
    DIRECT = "direct"


S = BookingState

# event -> (valid source states, resulting state; None = unchanged)
TRANSITIONS: Dict[EventType, Tuple[FrozenSet[BookingState], Optional[BookingState]]] = {
    EventType.SCHEDULING_CONFIRMED: (frozenset({S.CREATED}), S.SCHEDULED),
    EventType.SCHEDULING_CANCELED: (
        frozenset({S.SCHEDULED, S.PAYMENT_PENDING, S.PAID, S.CONFIRMED}), S.CANCELLED
    ),
    EventType.SCHEDULING_RESCHEDULED: (
        frozenset({S.SCHEDULED, S.PAYMENT_PENDING, S.PAID, S.CONFIRMED}), None
    ),
    EventType.PAYMENT_INITIATED: (frozenset({S.SCHEDULED}), S.PAYMENT_PENDING),
    EventType.PAYMENT_SUCCEEDED: (frozenset({S.PAYMENT_PENDING}), S.PAID),
    EventType.PAYMENT_FAILED: (frozenset({S.PAYMENT_PENDING}), S.PAYMENT_PENDING),
    EventType.PAYMENT_REFUNDED: (frozenset({S.PAID, S.CONFIRMED}), S.REFUNDED),
    EventType.CONFIRMATION_FINALIZED: (frozenset({S.PAID}), S.CONFIRMED),
    EventType.USER_CANCEL: (frozenset({S.CREATED, S.SCHEDULED, S.PAYMENT_PENDING}), S.CANCELLED),
}

# Main line order, used to tell "not there yet" from "already past it"
MAIN_LINE = (S.CREATED, S.SCHEDULED, S.PAYMENT_PENDING, S.PAID, S.CONFIRMED)

# Events that may create a booking when no record matches
ORIGINATING_EVENTS = frozenset({EventType.SCHEDULING_CONFIRMED})


@dataclass(frozen=True)
class BookingSnapshot:
    """The parts of a booking the transition function reads and writes."""
    state: BookingState
    version: int = 0
    payment_attempts: int = 0
    scheduling_ref: Optional[str] = None
    payment_ref: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    amount: Optional[int] = None
    currency: Optional[str] = None


@dataclass(frozen=True)
class TransitionInput:
    """One event as seen by the state machine."""
    event_type: EventType
    sequence: Optional[int] = None
    scheduling_ref: Optional[str] = None
    payment_ref: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    has_scheduling_proof: bool = False


@dataclass(frozen=True)
class TransitionPolicy:
    max_payment_attempts: int = 3
    payment_without_scheduling: PaymentOrderingPolicy = PaymentOrderingPolicy.BUFFER


@dataclass(frozen=True)
class TransitionResult:
    from_state: BookingState
    before: BookingSnapshot
    after: BookingSnapshot
    event_type: EventType
    via_state: Optional[BookingState] = None
    side_effects: Tuple[SideEffectAction, ...] = field(default_factory=tuple)

    @property
    def to_state(self) -> BookingState:
        return self.after.state

    @property
    def version(self) -> int:
        return self.after.version


def valid_sources(event_type: EventType, policy: TransitionPolicy) -> FrozenSet[BookingState]:
    sources, _ = TRANSITIONS[event_type]
    if policy.payment_without_scheduling == PaymentOrderingPolicy.DIRECT:
        if event_type == EventType.SCHEDULING_CONFIRMED:
            # Payment went first; the scheduling event only fills in the slot
            sources = sources | {S.PAYMENT_PENDING, S.PAID, S.CONFIRMED}
    return sources


def is_deferrable(state: BookingState, event_type: EventType, policy: TransitionPolicy) -> bool:
    """
    True when the booking has not reached any source state of the event yet,
    i.e. the event arrived early and may apply after later transitions.
    """
    if state not in MAIN_LINE:
        return False
    positions = [MAIN_LINE.index(s) for s in valid_sources(event_type, policy) if s in MAIN_LINE]
    return bool(positions) and MAIN_LINE.index(state) < min(positions)


def _reject(current: BookingSnapshot, event: TransitionInput, policy: TransitionPolicy):
    state = current.state
    raise InvalidTransitionError(
        f"{event.event_type.value} is not valid in state {state.value}",
        current_state=state.value,
        event_type=event.event_type.value,
        deferrable=is_deferrable(state, event.event_type, policy)
    )


def check_sequence(current: BookingSnapshot, event: TransitionInput) -> None:
    """Raise StaleEventError if the event's sequence is behind the booking version."""
    if event.sequence is not None and event.sequence < current.version:
        raise StaleEventError(
            f"Event sequence {event.sequence} is behind booking version {current.version}",
            sequence=event.sequence,
            version=current.version
        )


def transition(
    current: BookingSnapshot,
    event: TransitionInput,
    policy: TransitionPolicy = TransitionPolicy()
) -> TransitionResult:
    """
    Apply one event to a booking snapshot.

    Version rule: events without a sequence (internal events, direct
    commands, providers that do not send one) are never stale and bump
    the version by one; sequenced events must not be behind the current
    version and the new version is max(version + 1, sequence).

    Raises:
        StaleEventError: sequence < current version
        InvalidTransitionError: event not valid in the current state
    """
    check_sequence(current, event)

    state = current.state
    event_type = event.event_type
    sources = valid_sources(event_type, policy)
    via_state = None
    side_effects = []

    direct_origin = (
        event_type == EventType.PAYMENT_INITIATED
        and policy.payment_without_scheduling == PaymentOrderingPolicy.DIRECT
        and event.has_scheduling_proof
        and state == S.CREATED
    )
    retry_payment = (
        event_type == EventType.PAYMENT_INITIATED
        and state == S.PAYMENT_PENDING
        and current.payment_attempts > 0
    )

    if state in TERMINAL_STATES:
        _reject(current, event, policy)
    if state not in sources and not direct_origin and not retry_payment:
        _reject(current, event, policy)

    _, target = TRANSITIONS[event_type]
    new_state = target or state
    changes = {}

    if event_type == EventType.SCHEDULING_CONFIRMED:
        if state != S.CREATED:
            new_state = state
        changes.update(_schedule_changes(event))

    elif event_type == EventType.SCHEDULING_RESCHEDULED:
        via_state = S.RESCHEDULED
        changes.update(_schedule_changes(event))

    elif event_type == EventType.SCHEDULING_CANCELED:
        if state in (S.PAID, S.CONFIRMED):
            side_effects.append(SideEffectAction.ISSUE_REFUND)
        elif state == S.PAYMENT_PENDING and current.payment_ref:
            side_effects.append(SideEffectAction.CANCEL_PAYMENT_INTENT)

    elif event_type == EventType.PAYMENT_INITIATED:
        new_state = S.PAYMENT_PENDING
        changes.update(_payment_changes(event))
        if direct_origin:
            changes.update(_schedule_changes(event))

    elif event_type == EventType.PAYMENT_SUCCEEDED:
        changes.update(_payment_changes(event))

    elif event_type == EventType.PAYMENT_FAILED:
        attempts = current.payment_attempts + 1
        changes["payment_attempts"] = attempts
        via_state = S.PAYMENT_FAILED
        if attempts >= policy.max_payment_attempts:
            new_state = S.FAILED

    elif event_type == EventType.USER_CANCEL:
        if current.scheduling_ref:
            side_effects.append(SideEffectAction.CANCEL_SCHEDULING_EVENT)
        if state == S.PAYMENT_PENDING and current.payment_ref:
            side_effects.append(SideEffectAction.CANCEL_PAYMENT_INTENT)

    version = current.version + 1
    if event.sequence is not None:
        version = max(version, event.sequence)

    after = replace(current, state=new_state, version=version, **changes)

    return TransitionResult(
        from_state=state,
        before=current,
        after=after,
        event_type=event_type,
        via_state=via_state,
        side_effects=tuple(side_effects)
    )


def _schedule_changes(event: TransitionInput) -> dict:
    changes = {}
    if event.scheduling_ref:
        changes["scheduling_ref"] = event.scheduling_ref
    if event.start_time:
        changes["start_time"] = event.start_time
    if event.end_time:
        changes["end_time"] = event.end_time
    return changes


def _payment_changes(event: TransitionInput) -> dict:
    changes = {}
    if event.payment_ref:
        changes["payment_ref"] = event.payment_ref
    if event.amount is not None:
        changes["amount"] = event.amount
    if event.currency:
        changes["currency"] = event.currency
    return changes
