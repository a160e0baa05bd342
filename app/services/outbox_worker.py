"""
Side-Effect Outbox Worker

Executes SideEffectOutbox rows (refunds, scheduling cancellations,
payment-intent cancellations) outside the webhook request:

- skip_locked claiming so several workers never run the same entry
- exponential backoff: 1, 2, 4, 8 ... minutes (capped at 60)
- credential exhaustion reschedules without consuming an attempt
- exhausted entries become FAILED and wait for an operator retry
- entries abandoned in PROCESSING by a crashed worker are requeued
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from ..config import settings as default_settings, Settings
from ..database import SessionLocal
from ..errors import CredentialExhaustionError, ProviderError
from ..models.booking import Booking
from ..models.outbox import SideEffectOutbox, OutboxStatus, SideEffectAction
from ..utils.db_helpers import get_pending_with_skip_locked
from .provider_clients import CalendlyClient, ProviderClient, StripeClient

logger = logging.getLogger(__name__)


class OutboxProcessor:
    """
    Processes due SideEffectOutbox entries.

    Should be run periodically by the background loop or worker.py.
    """

    def __init__(
        self,
        db: Session,
        clients: Dict[str, ProviderClient],
        settings: Settings = default_settings
    ):
        self.db = db
        self.clients = clients
        self.settings = settings

    def get_pending_events(self, limit: int = 50) -> List[SideEffectOutbox]:
        """
        Entries that are PENDING or RETRYING, due, and not exhausted.
        Oldest first; skip_locked on PostgreSQL.
        """
        now = datetime.utcnow()
        return get_pending_with_skip_locked(
            self.db,
            SideEffectOutbox,
            and_(
                SideEffectOutbox.status.in_([
                    OutboxStatus.PENDING.value,
                    OutboxStatus.RETRYING.value
                ]),
                SideEffectOutbox.next_attempt_at <= now,
                SideEffectOutbox.attempts < SideEffectOutbox.max_attempts
            ),
            order_by=SideEffectOutbox.next_attempt_at,
            limit=limit
        )

    def get_stale_processing(self, now: Optional[datetime] = None) -> List[SideEffectOutbox]:
        """Entries stuck in PROCESSING past the timeout (worker died mid-call)"""
        cutoff = (now or datetime.utcnow()) - timedelta(seconds=self.settings.outbox_processing_timeout_seconds)
        return self.db.query(SideEffectOutbox).filter(
            SideEffectOutbox.status == OutboxStatus.PROCESSING.value,
            SideEffectOutbox.updated_at < cutoff
        ).all()

    def recover_stale_entries(self, now: Optional[datetime] = None) -> int:
        """
        Put abandoned PROCESSING entries back in the queue.

        The interrupted call counts as a failed attempt, so an entry that
        was on its last attempt becomes FAILED. Returns count recovered.
        """
        stale = self.get_stale_processing(now)
        for entry in stale:
            logger.warning(f"Outbox entry {entry.id} ({entry.action}) abandoned in processing, recovering")
            self._handle_failure(entry, entry.last_error or "interrupted while processing")
            if entry.status == OutboxStatus.RETRYING.value:
                entry.next_attempt_at = now or datetime.utcnow()
        if stale:
            self.db.commit()
        return len(stale)

    def get_failed_events(self, limit: int = 100) -> List[SideEffectOutbox]:
        """Entries that have permanently failed"""
        return self.db.query(SideEffectOutbox).filter(
            SideEffectOutbox.status == OutboxStatus.FAILED.value
        ).order_by(SideEffectOutbox.created_at.desc()).limit(limit).all()

    def retry_failed_event(self, entry_id: str) -> bool:
        """Manually retry a failed entry"""
        entry = self.db.query(SideEffectOutbox).filter(SideEffectOutbox.id == entry_id).first()

        if not entry or entry.status != OutboxStatus.FAILED.value:
            return False

        entry.status = OutboxStatus.PENDING.value
        entry.attempts = 0
        entry.next_attempt_at = datetime.utcnow()
        entry.last_error = None
        self.db.commit()
        logger.info(f"Outbox entry {entry.id} ({entry.action}) queued for manual retry")
        return True

    def process_batch(self, limit: Optional[int] = None) -> Dict[str, int]:
        """Process one batch of due entries. Returns counters."""
        self.recover_stale_entries()
        entries = self.get_pending_events(limit or self.settings.worker_batch_size)
        stats = {"processed": 0, "succeeded": 0, "failed": 0}

        for entry in entries:
            stats["processed"] += 1
            if self.process_event(entry):
                stats["succeeded"] += 1
            else:
                stats["failed"] += 1

        if stats["processed"]:
            logger.info(f"Outbox batch: {stats}")
        return stats

    def process_event(self, entry: SideEffectOutbox) -> bool:
        """
        Process a single outbox entry.

        Returns True if successful, False if failed or rescheduled.
        """
        entry.status = OutboxStatus.PROCESSING.value
        entry.attempts += 1
        self.db.commit()

        try:
            entry.response_data = self._execute(entry)
            entry.status = OutboxStatus.COMPLETED.value
            entry.completed_at = datetime.utcnow()
            entry.last_error = None
            self.db.commit()
        except CredentialExhaustionError as e:
            # Not the entry's fault: wait for credentials, keep the attempt
            entry.attempts -= 1
            entry.status = OutboxStatus.RETRYING.value
            entry.next_attempt_at = datetime.utcnow() + timedelta(seconds=self.settings.credential_rate_limit_cooldown)
            entry.last_error = e.message
            self.db.commit()
            logger.warning(f"Outbox entry {entry.id} waiting for {e.provider} credentials")
            return False
        except ProviderError as e:
            if e.kind == "permanent":
                entry.attempts = entry.max_attempts
            self._handle_failure(entry, f"{e.code}: {e.message}")
            self.db.commit()
            return False
        except (KeyError, ValueError) as e:
            logger.error(f"Malformed outbox entry {entry.id}: {e}")
            entry.attempts = entry.max_attempts
            self._handle_failure(entry, f"malformed entry: {e}")
            self.db.commit()
            return False
        except Exception as e:
            logger.error(f"Error processing outbox entry {entry.id}: {e}")
            self.db.rollback()
            self._handle_failure(entry, f"{type(e).__name__}: {e}")
            self.db.commit()
            return False

        logger.info(f"Outbox entry {entry.id} ({entry.action}) completed for booking {entry.booking_id}")
        return True

    def _handle_failure(self, entry: SideEffectOutbox, error: str):
        """Handle entry processing failure with exponential backoff"""
        entry.last_error = error[:1000]

        if entry.attempts >= entry.max_attempts:
            entry.status = OutboxStatus.FAILED.value
            logger.error(
                f"Outbox entry {entry.id} ({entry.action}) for booking {entry.booking_id} "
                f"permanently failed after {entry.attempts} attempts: {error}"
            )
        else:
            entry.status = OutboxStatus.RETRYING.value
            # Exponential backoff: 1, 2, 4, 8, 16 minutes
            delay_minutes = min(2 ** (entry.attempts - 1), 60)
            entry.next_attempt_at = datetime.utcnow() + timedelta(minutes=delay_minutes)
            logger.warning(f"Outbox entry {entry.id} will retry in {delay_minutes} minutes")

    def _execute(self, entry: SideEffectOutbox) -> dict:
        payload = entry.payload or {}
        action = SideEffectAction(entry.action)

        if action == SideEffectAction.ISSUE_REFUND:
            client: StripeClient = self.clients["stripe"]
            response = client.issue_refund(
                payload["payment_intent"],
                idempotency_key=entry.idempotency_key,
                amount=payload.get("amount"),
                reason=payload.get("reason") or "requested_by_customer",
                metadata={"bookingId": entry.booking_id},
            )
            refund_id = response.data.get("id")
            if refund_id:
                booking = self.db.query(Booking).filter(Booking.id == entry.booking_id).first()
                if booking:
                    booking.refund_reference = refund_id
            return {"refund_id": refund_id, "status": response.data.get("status")}

        if action == SideEffectAction.CANCEL_PAYMENT_INTENT:
            client: StripeClient = self.clients["stripe"]
            response = client.cancel_payment_intent(payload["payment_intent"], idempotency_key=entry.idempotency_key)
            return {"payment_intent": response.data.get("id"), "status": response.data.get("status")}

        client: CalendlyClient = self.clients["calendly"]
        response = client.cancel_event(payload["event_uuid"], reason=payload.get("reason"))
        return {"status_code": response.status_code}


def run_outbox_cycle(clients: Dict[str, ProviderClient], settings: Settings = default_settings) -> Dict[str, int]:
    """One batch with its own session (background loop and worker.py)."""
    db = SessionLocal()
    try:
        return OutboxProcessor(db, clients, settings).process_batch()
    finally:
        db.close()
