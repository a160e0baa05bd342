"""
Side-effect planning: turns the actions a transition asks for into
SideEffectOutbox rows inside the transition's unit of work.

The outbox idempotency key is deterministic per booking and action, so
a redelivered cancel can never enqueue a second refund.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..config import settings as default_settings, Settings
from ..models.booking import Booking
from ..models.outbox import SideEffectOutbox, SideEffectAction, OutboxStatus, ACTION_PROVIDERS

logger = logging.getLogger(__name__)


def compute_refund_amount(booking: Booking, policy: str, now: Optional[datetime] = None) -> Optional[int]:
    """
    Amount to refund in minor units.

    full   -> the whole amount (None when the amount is unknown: provider refunds the full charge)
    tiered -> 100% when cancelled 24h+ before start, 50% at 12-24h, nothing under 12h
    """
    if policy != "tiered" or booking.amount is None or booking.start_time is None:
        return booking.amount

    now = now or datetime.utcnow()
    hours_until_start = (booking.start_time - now).total_seconds() / 3600

    if hours_until_start >= 24:
        return booking.amount
    if hours_until_start >= 12:
        return booking.amount // 2
    return 0


def idempotency_key_for(booking: Booking, action: SideEffectAction) -> str:
    if action == SideEffectAction.ISSUE_REFUND:
        return f"refund:{booking.id}"
    if action == SideEffectAction.CANCEL_SCHEDULING_EVENT:
        return f"cancel-scheduling:{booking.id}:{booking.scheduling_ref}"
    return f"cancel-payment:{booking.id}:{booking.payment_ref}"


def enqueue_side_effect(
    db: Session,
    booking: Booking,
    action: SideEffectAction,
    settings: Settings = default_settings,
    reason: Optional[str] = None,
    now: Optional[datetime] = None
) -> Optional[SideEffectOutbox]:
    """
    Add an outbox row for one action. Returns None when nothing needs to
    be sent (already queued, zero refund, missing reference).
    """
    key = idempotency_key_for(booking, action)

    existing = db.query(SideEffectOutbox).filter(SideEffectOutbox.idempotency_key == key).first()
    if existing:
        logger.info(f"Side effect {key} already queued (status={existing.status})")
        return None

    if action == SideEffectAction.ISSUE_REFUND:
        if not booking.payment_ref:
            logger.error(f"Booking {booking.id} cancelled after payment but has no payment reference")
            return None
        amount = compute_refund_amount(booking, settings.refund_policy, now)
        if amount == 0:
            logger.info(f"Booking {booking.id} cancelled inside the no-refund window, skipping refund")
            booking.refund_amount = 0
            return None
        booking.refund_amount = amount if amount is not None else booking.amount
        payload = {
            "payment_intent": booking.payment_ref,
            "amount": amount,
            "reason": "requested_by_customer",
        }
    elif action == SideEffectAction.CANCEL_SCHEDULING_EVENT:
        if not booking.scheduling_ref:
            return None
        payload = {"event_uuid": booking.scheduling_ref, "reason": reason}
    else:
        if not booking.payment_ref:
            return None
        payload = {"payment_intent": booking.payment_ref}

    entry = SideEffectOutbox(
        booking_id=booking.id,
        action=action.value,
        provider=ACTION_PROVIDERS[action.value],
        payload=payload,
        status=OutboxStatus.PENDING.value,
        attempts=0,
        max_attempts=settings.outbox_max_attempts,
        next_attempt_at=now or datetime.utcnow(),
        idempotency_key=key,
    )
    db.add(entry)
    logger.info(f"Queued side effect {action.value} for booking {booking.id}")
    return entry
