"""
Tests for provider event normalization

Tests cover:
- Calendly invitee events (created, rescheduled, canceled)
- Stripe payment intent, checkout session and refund events
- Correlation keys and sequences
- Ignored and malformed payloads
"""

import json
from datetime import datetime

import pytest

from app.errors import ValidationError
from app.services.event_normalizer import EventNormalizer, NormalizedEvent, compute_event_id
from app.services.state_machine import EventType

from factories import calendly_body, stripe_body


@pytest.fixture
def normalizer():
    return EventNormalizer()


class TestCalendlyNormalization:
    """Scheduling provider payloads"""

    def test_invitee_created(self, normalizer):
        event = normalizer.normalize_body("calendly", calendly_body("cal-1", event_uuid="EVT-9", booking_id="B1", sequence=1))

        assert event.event_type == EventType.SCHEDULING_CONFIRMED
        assert event.event_id == "cal-1"
        assert event.scheduling_ref == "EVT-9"
        assert event.booking_id == "B1"
        assert event.sequence == 1
        assert event.start_time == datetime(2030, 1, 10, 10, 0)
        assert event.end_time == datetime(2030, 1, 10, 11, 0)

    def test_tracking_query_string(self, normalizer):
        body = json.loads(calendly_body("cal-2"))
        body["payload"]["tracking"] = {"utm_content": "booking_id=B7&client_id=C1&builder_id=BLD"}
        event = normalizer.normalize_body("calendly", json.dumps(body).encode())

        assert event.booking_id == "B7"
        assert event.client_id == "C1"
        assert event.builder_id == "BLD"

    def test_created_with_old_event_is_reschedule(self, normalizer):
        body = calendly_body(
            "cal-3",
            event_uuid="EVT-NEW",
            old_event={"uri": "https://api.calendly.com/scheduled_events/EVT-OLD"},
        )
        event = normalizer.normalize_body("calendly", body)

        assert event.event_type == EventType.SCHEDULING_RESCHEDULED
        assert event.scheduling_ref == "EVT-NEW"
        assert event.previous_scheduling_ref == "EVT-OLD"

    def test_old_invitee_uri_gives_previous_ref(self, normalizer):
        body = calendly_body(
            "cal-4",
            event_uuid="EVT-NEW",
            old_invitee="https://api.calendly.com/scheduled_events/EVT-OLD/invitees/INV-1",
        )
        event = normalizer.normalize_body("calendly", body)

        assert event.event_type == EventType.SCHEDULING_RESCHEDULED
        assert event.previous_scheduling_ref == "EVT-OLD"

    def test_canceled(self, normalizer):
        body = calendly_body(
            "cal-5",
            event_type="invitee.canceled",
            cancellation={"reason": "Conflict", "canceled_by": "Client"},
        )
        event = normalizer.normalize_body("calendly", body)

        assert event.event_type == EventType.SCHEDULING_CANCELED
        assert event.cancel_reason == "Conflict"
        assert event.canceled_by == "Client"

    def test_cancel_from_reschedule_is_ignored(self, normalizer):
        body = calendly_body("cal-6", event_type="invitee.canceled", rescheduled=True)
        event = normalizer.normalize_body("calendly", body)

        assert event.event_type is None
        assert not event.is_actionable
        assert "reschedule" in event.ignore_reason

    def test_unhandled_type_is_ignored(self, normalizer):
        body = json.dumps({"event": "routing_form_submission.created", "payload": {}}).encode()
        event = normalizer.normalize_body("calendly", body)

        assert not event.is_actionable
        assert event.raw_type == "routing_form_submission.created"

    def test_missing_start_time(self, normalizer):
        body = json.loads(calendly_body("cal-7"))
        del body["payload"]["event"]["start_time"]
        with pytest.raises(ValidationError):
            normalizer.normalize_body("calendly", json.dumps(body).encode())

    def test_event_id_falls_back_to_payload_hash(self, normalizer):
        body = json.loads(calendly_body("unused"))
        del body["id"]
        raw = json.dumps(body).encode()

        event = normalizer.normalize_body("calendly", raw)
        assert event.event_id == compute_event_id(body)
        assert normalizer.normalize_body("calendly", raw).event_id == event.event_id


class TestStripeNormalization:
    """Payment provider payloads"""

    @pytest.mark.parametrize("raw_type,expected", [
        ("payment_intent.created", EventType.PAYMENT_INITIATED),
        ("payment_intent.succeeded", EventType.PAYMENT_SUCCEEDED),
        ("payment_intent.payment_failed", EventType.PAYMENT_FAILED),
    ])
    def test_payment_intent_events(self, normalizer, raw_type, expected):
        event = normalizer.normalize_body("stripe", stripe_body("evt_1", raw_type, booking_id="B1", sequence=2))

        assert event.event_type == expected
        assert event.payment_ref == "pi_1"
        assert event.booking_id == "B1"
        assert event.sequence == 2
        assert event.amount == 5000
        assert event.currency == "USD"

    def test_checkout_session_uses_payment_intent(self, normalizer):
        body = json.dumps({
            "id": "evt_cs",
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": "cs_1",
                "object": "checkout.session",
                "payment_intent": "pi_77",
                "amount_total": 12000,
                "currency": "eur",
                "metadata": {"bookingId": "B2", "builderId": "BLD", "clientId": "C9"},
            }},
        }).encode()
        event = normalizer.normalize_body("stripe", body)

        assert event.event_type == EventType.PAYMENT_SUCCEEDED
        assert event.payment_ref == "pi_77"
        assert event.amount == 12000
        assert event.builder_id == "BLD"
        assert event.client_id == "C9"

    def test_refund_correlates_by_payment_intent(self, normalizer):
        event = normalizer.normalize_body("stripe", stripe_body("evt_r", "charge.refunded", payment_intent="pi_5", amount=2500))

        assert event.event_type == EventType.PAYMENT_REFUNDED
        assert event.payment_ref == "pi_5"
        assert event.amount == 2500

    def test_scheduling_proof_from_metadata(self, normalizer):
        event = normalizer.normalize_body("stripe", stripe_body("evt_p", "payment_intent.created", calendly_event_id="EVT-1"))

        assert event.has_scheduling_proof
        assert event.scheduling_ref == "EVT-1"

    def test_unhandled_type_is_ignored(self, normalizer):
        body = json.dumps({"id": "evt_x", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}).encode()
        event = normalizer.normalize_body("stripe", body)
        assert not event.is_actionable

    def test_missing_payment_reference(self, normalizer):
        body = json.dumps({
            "id": "evt_bad",
            "type": "payment_intent.succeeded",
            "data": {"object": {"object": "payment_intent"}},
        }).encode()
        with pytest.raises(ValidationError):
            normalizer.normalize_body("stripe", body)

    def test_negative_sequence(self, normalizer):
        with pytest.raises(ValidationError):
            normalizer.normalize_body("stripe", stripe_body("evt_s", sequence=-1))


class TestMalformedBodies:
    """Bodies that never reach the state machine"""

    @pytest.mark.parametrize("raw", [b"not json", b"[]", b'"string"'])
    def test_non_object_bodies(self, normalizer, raw):
        with pytest.raises(ValidationError):
            normalizer.normalize_body("stripe", raw)

    def test_missing_type(self, normalizer):
        with pytest.raises(ValidationError):
            normalizer.normalize_body("stripe", b'{"id": "evt_1", "data": {"object": {}}}')


class TestSerialization:
    """Pending buffer storage"""

    def test_dict_round_trip_keeps_types(self, normalizer):
        event = normalizer.normalize_body("calendly", calendly_body("cal-rt", booking_id="B1", sequence=3))
        restored = NormalizedEvent.from_dict(json.loads(json.dumps(event.to_dict())))

        assert restored.event_type == EventType.SCHEDULING_CONFIRMED
        assert restored.start_time == event.start_time
        assert restored.to_transition_input() == event.to_transition_input()
