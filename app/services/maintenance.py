"""
Periodic maintenance for the reconciliation engine.

- expire buffered events that waited too long (ledger outcome -> rejected)
- garbage-collect idempotency ledger rows past the retention window
- finalize settled bookings (PAID with a scheduling reference -> CONFIRMED)
- restore credentials whose cooldown elapsed
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session

from ..config import settings as default_settings, Settings
from ..errors import InvalidTransitionError, ReconciliationError
from ..models.booking import Booking, BookingState
from ..models.pending_event import PendingEvent, PendingStatus
from ..models.processed_event import EventOutcome
from .booking_events import BookingEventBus
from .credential_manager import CredentialManager
from .idempotency_store import IdempotencyStore
from .reconciliation import ReconciliationCoordinator

logger = logging.getLogger(__name__)


class MaintenanceService:
    def __init__(
        self,
        db: Session,
        credentials: Optional[CredentialManager] = None,
        event_bus: Optional[BookingEventBus] = None,
        settings: Settings = default_settings
    ):
        self.db = db
        self.credentials = credentials
        self.event_bus = event_bus
        self.settings = settings

    def expire_pending_events(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        ledger = IdempotencyStore(self.db)

        expired = self.db.query(PendingEvent).filter(
            PendingEvent.status == PendingStatus.PENDING.value,
            PendingEvent.expires_at <= now
        ).all()

        for pending in expired:
            pending.status = PendingStatus.EXPIRED.value
            pending.reason = "pending_expired"
            pending.resolved_at = now
            ledger.mark_by_key(
                pending.provider,
                pending.event_id,
                EventOutcome.REJECTED,
                pending.booking_id,
                "pending_expired"
            )
            logger.warning(
                f"Buffered {pending.event_type} {pending.provider}:{pending.event_id} expired "
                f"without a matching booking state"
            )

        self.db.commit()
        return len(expired)

    def purge_processed_events(self, now: Optional[datetime] = None) -> int:
        deleted = IdempotencyStore(self.db).purge_expired(self.settings.processed_event_retention_days, now)
        self.db.commit()
        return deleted

    def finalize_settled_bookings(self, limit: int = 100) -> int:
        """Confirm bookings whose scheduling and payment have both settled."""
        booking_ids = [
            row.id for row in self.db.query(Booking.id).filter(
                Booking.state == BookingState.PAID.value,
                Booking.scheduling_ref.isnot(None)
            ).limit(limit).all()
        ]
        self.db.rollback()

        coordinator = ReconciliationCoordinator(self.db, event_bus=self.event_bus, settings=self.settings)
        finalized = 0
        for booking_id in booking_ids:
            try:
                coordinator.finalize_booking(booking_id)
                finalized += 1
            except InvalidTransitionError:
                # Moved on (cancelled, refunded) since the query
                continue
            except ReconciliationError as e:
                logger.warning(f"Could not finalize booking {booking_id}: {e.message}")
        return finalized

    def restore_credentials(self) -> int:
        if self.credentials is None:
            return 0
        return self.credentials.health_check()

    def run(self) -> Dict[str, int]:
        stats = {
            "pending_expired": self.expire_pending_events(),
            "processed_purged": self.purge_processed_events(),
            "bookings_finalized": self.finalize_settled_bookings(),
            "credentials_restored": self.restore_credentials(),
        }
        if any(stats.values()):
            logger.info(f"Maintenance run: {stats}")
        return stats
