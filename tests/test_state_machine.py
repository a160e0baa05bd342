"""
Tests for the booking transition function

Tests cover:
- Main line CREATED -> SCHEDULED -> PAYMENT_PENDING -> PAID -> CONFIRMED
- Version / sequence rule (stale detection, max(version + 1, sequence))
- Payment failure counting and the FAILED cut-off
- Cancellation side effects (refund, cancel payment intent, cancel scheduling event)
- Deferrable vs permanent rejections
- Payment-without-scheduling policy
"""

import pytest
from datetime import datetime

from app.errors import InvalidTransitionError, StaleEventError
from app.models.booking import BookingState
from app.models.outbox import SideEffectAction
from app.services.state_machine import (
    BookingSnapshot,
    EventType,
    PaymentOrderingPolicy,
    TransitionInput,
    TransitionPolicy,
    is_deferrable,
    transition,
)

S = BookingState
DIRECT = TransitionPolicy(payment_without_scheduling=PaymentOrderingPolicy.DIRECT)


def snap(state, version=0, **kwargs):
    return BookingSnapshot(state=state, version=version, **kwargs)


class TestMainLine:
    """Canonical progression"""

    def test_scheduling_confirmed_from_created(self):
        start = datetime(2030, 1, 10, 10, 0)
        result = transition(
            snap(S.CREATED),
            TransitionInput(
                EventType.SCHEDULING_CONFIRMED,
                sequence=1,
                scheduling_ref="EVT-1",
                start_time=start,
            )
        )

        assert result.from_state == S.CREATED
        assert result.to_state == S.SCHEDULED
        assert result.version == 1
        assert result.after.scheduling_ref == "EVT-1"
        assert result.after.start_time == start
        assert result.side_effects == ()

    def test_full_main_line(self):
        current = snap(S.CREATED)
        steps = [
            (TransitionInput(EventType.SCHEDULING_CONFIRMED, sequence=1, scheduling_ref="EVT-1"), S.SCHEDULED),
            (TransitionInput(EventType.PAYMENT_INITIATED, sequence=2, payment_ref="pi_1", amount=5000), S.PAYMENT_PENDING),
            (TransitionInput(EventType.PAYMENT_SUCCEEDED, sequence=3, payment_ref="pi_1"), S.PAID),
            (TransitionInput(EventType.CONFIRMATION_FINALIZED), S.CONFIRMED),
        ]
        for event, expected in steps:
            current = transition(current, event).after
            assert current.state == expected

        assert current.version == 4
        assert current.payment_ref == "pi_1"
        assert current.amount == 5000

    def test_input_snapshot_is_not_modified(self):
        before = snap(S.SCHEDULED, version=1)
        result = transition(before, TransitionInput(EventType.PAYMENT_INITIATED, payment_ref="pi_1"))

        assert before.state == S.SCHEDULED
        assert before.payment_ref is None
        assert result.before is before

    def test_refund_from_confirmed(self):
        result = transition(snap(S.CONFIRMED, version=4), TransitionInput(EventType.PAYMENT_REFUNDED, sequence=5))
        assert result.to_state == S.REFUNDED
        assert result.version == 5

    def test_reschedule_keeps_state_and_records_branch(self):
        new_start = datetime(2030, 2, 1, 9, 0)
        result = transition(
            snap(S.PAID, version=3, scheduling_ref="EVT-1"),
            TransitionInput(EventType.SCHEDULING_RESCHEDULED, scheduling_ref="EVT-2", start_time=new_start)
        )

        assert result.to_state == S.PAID
        assert result.via_state == S.RESCHEDULED
        assert result.after.scheduling_ref == "EVT-2"
        assert result.after.start_time == new_start
        assert result.version == 4


class TestVersioning:
    """Sequence numbers vs booking version"""

    def test_lower_sequence_is_stale(self):
        with pytest.raises(StaleEventError) as exc:
            transition(snap(S.PAID, version=3), TransitionInput(EventType.SCHEDULING_CANCELED, sequence=1))

        assert exc.value.sequence == 1
        assert exc.value.version == 3

    def test_stale_check_runs_before_state_check(self):
        # A stale event is ignored even if it would also be invalid
        with pytest.raises(StaleEventError):
            transition(snap(S.CANCELLED, version=5), TransitionInput(EventType.PAYMENT_SUCCEEDED, sequence=2))

    def test_missing_sequence_is_never_stale(self):
        result = transition(snap(S.SCHEDULED, version=7), TransitionInput(EventType.PAYMENT_INITIATED))
        assert result.version == 8

    def test_sequence_equal_to_version_is_applied(self):
        result = transition(snap(S.PAID, version=4), TransitionInput(EventType.SCHEDULING_CANCELED, sequence=4))
        assert result.to_state == S.CANCELLED
        assert result.version == 5

    def test_version_jumps_to_sequence(self):
        result = transition(snap(S.CREATED), TransitionInput(EventType.SCHEDULING_CONFIRMED, sequence=10))
        assert result.version == 10


class TestPaymentFailures:
    """Attempt counter and FAILED cut-off"""

    def test_failure_increments_attempts_and_stays_pending(self):
        result = transition(snap(S.PAYMENT_PENDING, version=2), TransitionInput(EventType.PAYMENT_FAILED))

        assert result.to_state == S.PAYMENT_PENDING
        assert result.via_state == S.PAYMENT_FAILED
        assert result.after.payment_attempts == 1

    def test_third_failure_is_terminal(self):
        current = snap(S.PAYMENT_PENDING, version=2)
        for _ in range(3):
            current = transition(current, TransitionInput(EventType.PAYMENT_FAILED)).after

        assert current.state == S.FAILED
        assert current.payment_attempts == 3

    def test_max_attempts_is_configurable(self):
        policy = TransitionPolicy(max_payment_attempts=1)
        result = transition(snap(S.PAYMENT_PENDING), TransitionInput(EventType.PAYMENT_FAILED), policy)
        assert result.to_state == S.FAILED

    def test_retry_after_failure_replaces_payment_ref(self):
        current = snap(S.PAYMENT_PENDING, version=3, payment_attempts=1, payment_ref="pi_old")
        result = transition(current, TransitionInput(EventType.PAYMENT_INITIATED, payment_ref="pi_new"))

        assert result.to_state == S.PAYMENT_PENDING
        assert result.after.payment_ref == "pi_new"

    def test_second_initiation_without_failure_is_rejected(self):
        with pytest.raises(InvalidTransitionError) as exc:
            transition(snap(S.PAYMENT_PENDING, payment_ref="pi_1"), TransitionInput(EventType.PAYMENT_INITIATED))
        assert exc.value.deferrable is False

    def test_success_after_failed_is_rejected(self):
        with pytest.raises(InvalidTransitionError) as exc:
            transition(snap(S.FAILED, version=5), TransitionInput(EventType.PAYMENT_SUCCEEDED))

        assert exc.value.current_state == "FAILED"
        assert exc.value.event_type == "payment-succeeded"
        assert exc.value.deferrable is False


class TestCancellation:
    """Side effects requested by cancellations"""

    @pytest.mark.parametrize("state", [S.PAID, S.CONFIRMED])
    def test_scheduling_cancel_after_payment_requests_refund(self, state):
        result = transition(
            snap(state, version=3, payment_ref="pi_1"),
            TransitionInput(EventType.SCHEDULING_CANCELED, sequence=4)
        )

        assert result.to_state == S.CANCELLED
        assert result.side_effects == (SideEffectAction.ISSUE_REFUND,)

    def test_scheduling_cancel_while_paying_cancels_intent(self):
        result = transition(
            snap(S.PAYMENT_PENDING, payment_ref="pi_1"),
            TransitionInput(EventType.SCHEDULING_CANCELED)
        )
        assert result.side_effects == (SideEffectAction.CANCEL_PAYMENT_INTENT,)

    def test_scheduling_cancel_before_payment_has_no_side_effects(self):
        result = transition(snap(S.SCHEDULED, scheduling_ref="EVT-1"), TransitionInput(EventType.SCHEDULING_CANCELED))
        assert result.to_state == S.CANCELLED
        assert result.side_effects == ()

    def test_user_cancel_cancels_scheduling_event(self):
        result = transition(snap(S.SCHEDULED, scheduling_ref="EVT-1"), TransitionInput(EventType.USER_CANCEL))
        assert result.side_effects == (SideEffectAction.CANCEL_SCHEDULING_EVENT,)

    def test_user_cancel_while_paying_cancels_both(self):
        result = transition(
            snap(S.PAYMENT_PENDING, scheduling_ref="EVT-1", payment_ref="pi_1"),
            TransitionInput(EventType.USER_CANCEL)
        )
        assert set(result.side_effects) == {
            SideEffectAction.CANCEL_SCHEDULING_EVENT,
            SideEffectAction.CANCEL_PAYMENT_INTENT,
        }

    def test_user_cancel_after_payment_is_rejected(self):
        with pytest.raises(InvalidTransitionError):
            transition(snap(S.PAID, payment_ref="pi_1"), TransitionInput(EventType.USER_CANCEL))

    @pytest.mark.parametrize("state", [S.CANCELLED, S.REFUNDED, S.FAILED])
    def test_terminal_states_accept_nothing(self, state):
        with pytest.raises(InvalidTransitionError):
            transition(snap(state), TransitionInput(EventType.SCHEDULING_CANCELED))


class TestDeferral:
    """Early events are deferrable, late ones are not"""

    def test_payment_before_scheduling_is_deferrable(self):
        with pytest.raises(InvalidTransitionError) as exc:
            transition(snap(S.CREATED), TransitionInput(EventType.PAYMENT_SUCCEEDED, sequence=3))
        assert exc.value.deferrable is True

    def test_success_before_initiation_is_deferrable(self):
        assert is_deferrable(S.SCHEDULED, EventType.PAYMENT_SUCCEEDED, TransitionPolicy())

    def test_event_past_its_source_state_is_not_deferrable(self):
        assert not is_deferrable(S.CONFIRMED, EventType.PAYMENT_SUCCEEDED, TransitionPolicy())
        assert not is_deferrable(S.PAID, EventType.SCHEDULING_CONFIRMED, TransitionPolicy())

    def test_terminal_state_is_not_deferrable(self):
        assert not is_deferrable(S.CANCELLED, EventType.PAYMENT_SUCCEEDED, TransitionPolicy())


class TestDirectPaymentPolicy:
    """payment_without_scheduling=direct"""

    def test_payment_with_scheduling_proof_skips_scheduled(self):
        result = transition(
            snap(S.CREATED),
            TransitionInput(
                EventType.PAYMENT_INITIATED,
                payment_ref="pi_1",
                scheduling_ref="EVT-1",
                has_scheduling_proof=True,
            ),
            DIRECT
        )

        assert result.to_state == S.PAYMENT_PENDING
        assert result.after.scheduling_ref == "EVT-1"
        assert result.after.payment_ref == "pi_1"

    def test_payment_without_proof_still_waits(self):
        with pytest.raises(InvalidTransitionError) as exc:
            transition(snap(S.CREATED), TransitionInput(EventType.PAYMENT_INITIATED, payment_ref="pi_1"), DIRECT)
        assert exc.value.deferrable is True

    def test_late_scheduling_confirmation_fills_slot(self):
        start = datetime(2030, 1, 10, 10, 0)
        result = transition(
            snap(S.PAID, version=3, scheduling_ref="EVT-1"),
            TransitionInput(EventType.SCHEDULING_CONFIRMED, scheduling_ref="EVT-1", start_time=start),
            DIRECT
        )

        assert result.to_state == S.PAID
        assert result.after.start_time == start
        assert result.version == 4

    def test_buffer_policy_rejects_late_scheduling_confirmation(self):
        with pytest.raises(InvalidTransitionError):
            transition(snap(S.PAID, version=3), TransitionInput(EventType.SCHEDULING_CONFIRMED))
