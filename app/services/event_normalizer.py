"""
Event Normalizer

Maps each provider's raw webhook body into a provider-agnostic
NormalizedEvent:

Calendly (scheduling provider)
    invitee.created       -> scheduling-confirmed
                             (scheduling-rescheduled when it replaces an old invitee)
    invitee.rescheduled   -> scheduling-rescheduled
    invitee.canceled      -> scheduling-canceled
                             (ignored when rescheduled=true: the new
                             invitee.created carries the move)

Stripe (payment provider)
    payment_intent.created, checkout.session.created  -> payment-initiated
    payment_intent.succeeded, checkout.session.completed -> payment-succeeded
    payment_intent.payment_failed, checkout.session.expired -> payment-failed
    charge.refunded -> payment-refunded

Well-formed events of any other type normalize with event_type=None and
are acknowledged as ignored.
"""

import json
import hashlib
import logging
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import parse_qs

from ..errors import ValidationError
from .signature_verifier import VerifiedPayload
from .state_machine import EventType, TransitionInput

logger = logging.getLogger(__name__)


CALENDLY_EVENT_MAP = {
    "invitee.created": EventType.SCHEDULING_CONFIRMED,
    "invitee.rescheduled": EventType.SCHEDULING_RESCHEDULED,
    "invitee.canceled": EventType.SCHEDULING_CANCELED,
}

STRIPE_EVENT_MAP = {
    "payment_intent.created": EventType.PAYMENT_INITIATED,
    "checkout.session.created": EventType.PAYMENT_INITIATED,
    "payment_intent.succeeded": EventType.PAYMENT_SUCCEEDED,
    "checkout.session.completed": EventType.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventType.PAYMENT_FAILED,
    "checkout.session.expired": EventType.PAYMENT_FAILED,
    "charge.refunded": EventType.PAYMENT_REFUNDED,
}


@dataclass
class NormalizedEvent:
    """Provider-agnostic view of one webhook delivery."""
    provider: str
    event_id: str
    raw_type: str
    event_type: Optional[EventType] = None  # None = well-formed but not handled
    sequence: Optional[int] = None

    # Correlation keys
    booking_id: Optional[str] = None
    scheduling_ref: Optional[str] = None
    previous_scheduling_ref: Optional[str] = None
    payment_ref: Optional[str] = None

    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    amount: Optional[int] = None  # minor units
    currency: Optional[str] = None

    builder_id: Optional[str] = None
    client_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    canceled_by: Optional[str] = None
    has_scheduling_proof: bool = False

    ignore_reason: Optional[str] = None
    occurred_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_actionable(self) -> bool:
        return self.event_type is not None

    @property
    def has_correlation(self) -> bool:
        return bool(self.booking_id or self.scheduling_ref or self.previous_scheduling_ref or self.payment_ref)

    def to_transition_input(self) -> TransitionInput:
        return TransitionInput(
            event_type=self.event_type,
            sequence=self.sequence,
            scheduling_ref=self.scheduling_ref,
            payment_ref=self.payment_ref,
            start_time=self.start_time,
            end_time=self.end_time,
            amount=self.amount,
            currency=self.currency,
            has_scheduling_proof=self.has_scheduling_proof,
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe dict for the pending buffer."""
        data = asdict(self)
        data["event_type"] = self.event_type.value if self.event_type else None
        for key in ("start_time", "end_time", "occurred_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NormalizedEvent":
        data = dict(data)
        if data.get("event_type"):
            data["event_type"] = EventType(data["event_type"])
        for key in ("start_time", "end_time", "occurred_at"):
            if data.get(key):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 string or unix seconds -> naive UTC datetime."""
    if value in (None, ""):
        return None
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    except (ValueError, OverflowError, OSError):
        raise ValidationError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_sequence(*candidates: Any) -> Optional[int]:
    for value in candidates:
        if value in (None, ""):
            continue
        try:
            sequence = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid sequence: {value!r}")
        if sequence < 0:
            raise ValidationError(f"Invalid sequence: {value!r}")
        return sequence
    return None


def _uuid_from_uri(value: Optional[str]) -> Optional[str]:
    """Calendly references resources by URI; the last path part is the uuid."""
    if not value:
        return None
    return value.rstrip("/").rsplit("/", 1)[-1]


def compute_event_id(payload: dict) -> str:
    """SHA256 of the canonical payload, for providers without an event id."""
    normalized = json.dumps(payload, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(normalized.encode()).hexdigest()


class EventNormalizer:
    """
    Turns verified webhook bodies into NormalizedEvent instances.

    Raises ValidationError for bodies that are not JSON objects or that
    are missing the fields their event type needs.
    """

    def normalize(self, verified: VerifiedPayload) -> NormalizedEvent:
        return self.normalize_body(verified.provider, verified.raw_body)

    def normalize_body(self, provider: str, raw_body: bytes) -> NormalizedEvent:
        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            raise ValidationError("Body is not valid JSON")

        if not isinstance(payload, dict):
            raise ValidationError("Body must be a JSON object")

        if provider == "calendly":
            return self._normalize_calendly(payload)
        if provider == "stripe":
            return self._normalize_stripe(payload)
        raise ValidationError(f"Unknown provider: {provider}")

    # ==================
    # Calendly
    # ==================

    def _normalize_calendly(self, payload: dict) -> NormalizedEvent:
        raw_type = payload.get("event")
        if not raw_type or not isinstance(raw_type, str):
            raise ValidationError("Missing Calendly event type")

        body = payload.get("payload")
        if not isinstance(body, dict):
            raise ValidationError("Missing Calendly payload object")

        event = NormalizedEvent(
            provider="calendly",
            event_id=str(payload.get("id") or compute_event_id(payload)),
            raw_type=raw_type,
            occurred_at=parse_timestamp(payload.get("created_at")),
        )

        event_type = CALENDLY_EVENT_MAP.get(raw_type)
        if event_type is None:
            event.ignore_reason = f"Unhandled Calendly event type: {raw_type}"
            return event

        scheduled = body.get("event")
        if isinstance(scheduled, str):
            scheduled = {"uri": scheduled}
        if not isinstance(scheduled, dict):
            raise ValidationError("Calendly payload has no scheduled event")

        event.scheduling_ref = scheduled.get("uuid") or _uuid_from_uri(scheduled.get("uri"))
        if not event.scheduling_ref:
            raise ValidationError("Calendly scheduled event has no uuid")

        event.start_time = parse_timestamp(scheduled.get("start_time"))
        event.end_time = parse_timestamp(scheduled.get("end_time"))
        event.sequence = _parse_sequence(payload.get("sequence"), body.get("sequence"))

        tracking = body.get("tracking") or (body.get("invitee") or {}).get("tracking") or {}
        self._apply_calendly_tracking(event, tracking)

        old = body.get("old_event") or body.get("rescheduled_from")
        old_invitee = body.get("old_invitee")
        if isinstance(old, dict):
            event.previous_scheduling_ref = old.get("uuid") or _uuid_from_uri(old.get("uri"))
        elif isinstance(old, str):
            event.previous_scheduling_ref = _uuid_from_uri(old)
        elif old_invitee:
            # .../scheduled_events/<event uuid>/invitees/<invitee uuid>
            parts = str(old_invitee).rstrip("/").split("/")
            if "scheduled_events" in parts:
                idx = parts.index("scheduled_events")
                if idx + 1 < len(parts):
                    event.previous_scheduling_ref = parts[idx + 1]

        if event_type == EventType.SCHEDULING_CONFIRMED and (event.previous_scheduling_ref or old_invitee):
            event_type = EventType.SCHEDULING_RESCHEDULED

        if event_type == EventType.SCHEDULING_CANCELED:
            if body.get("rescheduled"):
                event.ignore_reason = "Cancellation caused by reschedule"
                return event
            cancellation = body.get("cancellation") or {}
            event.cancel_reason = cancellation.get("reason")
            event.canceled_by = cancellation.get("canceled_by")

        if event_type == EventType.SCHEDULING_CONFIRMED and not event.start_time:
            raise ValidationError("Calendly invitee.created without start_time")

        event.event_type = event_type
        return event

    def _apply_calendly_tracking(self, event: NormalizedEvent, tracking: dict) -> None:
        """
        utm_content carries either the internal booking id or a query string
        (booking_id=...&client_id=...&builder_id=...).
        """
        content = tracking.get("utm_content")
        if not content:
            return
        if "=" in content:
            params = {k: v[0] for k, v in parse_qs(content).items() if v}
            event.booking_id = params.get("booking_id")
            event.client_id = params.get("client_id")
            event.builder_id = params.get("builder_id")
        else:
            event.booking_id = content.strip()

    # ==================
    # Stripe
    # ==================

    def _normalize_stripe(self, payload: dict) -> NormalizedEvent:
        raw_type = payload.get("type")
        if not raw_type or not isinstance(raw_type, str):
            raise ValidationError("Missing Stripe event type")

        data = payload.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            raise ValidationError("Missing Stripe data.object")

        event = NormalizedEvent(
            provider="stripe",
            event_id=str(payload.get("id") or compute_event_id(payload)),
            raw_type=raw_type,
            occurred_at=parse_timestamp(payload.get("created")),
        )

        event_type = STRIPE_EVENT_MAP.get(raw_type)
        if event_type is None:
            event.ignore_reason = f"Unhandled Stripe event type: {raw_type}"
            return event

        metadata = obj.get("metadata") or {}
        event.booking_id = metadata.get("bookingId") or None
        event.builder_id = metadata.get("builderId") or None
        event.client_id = metadata.get("clientId") or None
        event.scheduling_ref = metadata.get("calendlyEventId") or None
        event.has_scheduling_proof = bool(event.scheduling_ref)
        event.start_time = parse_timestamp(metadata.get("startTime"))
        event.end_time = parse_timestamp(metadata.get("endTime"))
        event.sequence = _parse_sequence(payload.get("sequence"), metadata.get("sequence"))

        obj_type = obj.get("object")
        if raw_type.startswith("checkout.session."):
            event.payment_ref = obj.get("payment_intent") or obj.get("id")
            event.amount = obj.get("amount_total")
        elif raw_type == "charge.refunded":
            event.payment_ref = obj.get("payment_intent")
            event.amount = obj.get("amount_refunded")
        else:
            event.payment_ref = obj.get("id")
            event.amount = obj.get("amount")

        if obj_type == "payment_intent" and raw_type == "payment_intent.payment_failed":
            error = obj.get("last_payment_error") or {}
            event.extra["failure_message"] = error.get("message")

        event.currency = (obj.get("currency") or "").upper() or None

        if not event.payment_ref:
            raise ValidationError(f"Stripe {raw_type} has no payment reference")

        event.event_type = event_type
        return event
