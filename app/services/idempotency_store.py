"""
Idempotency Store

Durable (provider, event_id) -> outcome ledger backed by the
ProcessedEvent unique constraint.

record_if_new() must be the first write of the unit of work: on a
duplicate key it rolls the session back. The outcome is marked later in
the same transaction as the booking update, so a crash between the two
leaves nothing behind and the redelivery is processed from scratch.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.processed_event import ProcessedEvent, EventOutcome

logger = logging.getLogger(__name__)


@dataclass
class IdempotencyCheck:
    is_new: bool
    record: Optional[ProcessedEvent] = None
    prior_outcome: Optional[str] = None
    prior_booking_id: Optional[str] = None


class IdempotencyStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, provider: str, event_id: str) -> Optional[ProcessedEvent]:
        return self.db.query(ProcessedEvent).filter(
            ProcessedEvent.provider == provider,
            ProcessedEvent.event_id == event_id
        ).first()

    def record_if_new(self, provider: str, event_id: str, event_type: Optional[str] = None) -> IdempotencyCheck:
        """
        Atomic check-and-insert.

        Returns IdempotencyCheck(is_new=True, record=<row>) for the first
        writer, otherwise is_new=False with the prior outcome.
        """
        existing = self.get(provider, event_id)
        if existing:
            return self._duplicate(existing)

        record = ProcessedEvent(
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            outcome=EventOutcome.PROCESSING.value
        )
        self.db.add(record)
        try:
            self.db.flush()
        except IntegrityError:
            # Lost the race against a concurrent delivery of the same event
            self.db.rollback()
            existing = self.get(provider, event_id)
            if existing is None:
                raise
            return self._duplicate(existing)

        return IdempotencyCheck(is_new=True, record=record)

    def _duplicate(self, existing: ProcessedEvent) -> IdempotencyCheck:
        logger.info(f"Duplicate event {existing.provider}:{existing.event_id} (prior outcome: {existing.outcome})")
        return IdempotencyCheck(
            is_new=False,
            record=existing,
            prior_outcome=existing.outcome,
            prior_booking_id=existing.booking_id
        )

    def mark(
        self,
        record: ProcessedEvent,
        outcome: EventOutcome,
        booking_id: Optional[str] = None,
        error_code: Optional[str] = None
    ) -> ProcessedEvent:
        """Set the outcome. Committed by the caller with the booking update."""
        record.outcome = outcome.value
        if booking_id:
            record.booking_id = booking_id
        record.error_code = error_code
        record.updated_at = datetime.utcnow()
        return record

    def mark_by_key(
        self,
        provider: str,
        event_id: str,
        outcome: EventOutcome,
        booking_id: Optional[str] = None,
        error_code: Optional[str] = None
    ) -> Optional[ProcessedEvent]:
        record = self.get(provider, event_id)
        if record:
            self.mark(record, outcome, booking_id, error_code)
        return record

    def purge_expired(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """Delete ledger rows older than the retention window. Returns count."""
        cutoff = (now or datetime.utcnow()) - timedelta(days=retention_days)
        deleted = self.db.query(ProcessedEvent).filter(
            ProcessedEvent.created_at < cutoff,
            ProcessedEvent.outcome != EventOutcome.DEFERRED.value
        ).delete(synchronize_session=False)
        if deleted:
            logger.info(f"Purged {deleted} processed events older than {retention_days} days")
        return deleted
