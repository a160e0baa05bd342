"""
Booking persistence helpers: correlation lookup, creation, locking and
writing a TransitionResult back onto the row.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..models.booking import Booking, BookingState, BookingSource
from ..models.booking_transition import BookingTransition
from ..utils.db_helpers import acquire_row_lock
from .state_machine import BookingSnapshot, TransitionResult

logger = logging.getLogger(__name__)


class BookingStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, booking_id: str) -> Optional[Booking]:
        return self.db.query(Booking).filter(Booking.id == booking_id).first()

    def find_by_correlation(
        self,
        booking_id: Optional[str] = None,
        scheduling_ref: Optional[str] = None,
        payment_ref: Optional[str] = None,
        previous_scheduling_ref: Optional[str] = None
    ) -> Optional[Booking]:
        """
        Resolve a booking from event correlation keys.
        Internal id wins, then the scheduling reference (current, then the
        one being replaced by a reschedule), then the payment reference.
        """
        if booking_id:
            booking = self.get(booking_id)
            if booking:
                return booking
        for ref in (scheduling_ref, previous_scheduling_ref):
            if ref:
                booking = self.db.query(Booking).filter(Booking.scheduling_ref == ref).first()
                if booking:
                    return booking
        if payment_ref:
            return self.db.query(Booking).filter(Booking.payment_ref == payment_ref).first()
        return None

    def create(
        self,
        source: BookingSource,
        booking_id: Optional[str] = None,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        builder_id: Optional[str] = None,
        client_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None
    ) -> Booking:
        """New booking in CREATED at version 0. Flushed, not committed."""
        booking = Booking(
            state=BookingState.CREATED.value,
            version=0,
            payment_attempts=0,
            source=source.value,
            amount=amount,
            currency=currency,
            builder_id=builder_id,
            client_id=client_id,
            start_time=start_time,
            end_time=end_time,
        )
        if booking_id:
            booking.id = booking_id
        self.db.add(booking)
        self.db.flush()
        logger.info(f"Booking created: {booking.id} (source={source.value})")
        return booking

    def lock(self, booking_id: str) -> Optional[Booking]:
        """Re-read the booking under a row lock (PostgreSQL) and refresh it."""
        booking = acquire_row_lock(self.db, Booking, Booking.id == booking_id)
        if booking is not None:
            self.db.refresh(booking)
        return booking

    @staticmethod
    def snapshot(booking: Booking) -> BookingSnapshot:
        return BookingSnapshot(
            state=BookingState(booking.state),
            version=booking.version or 0,
            payment_attempts=booking.payment_attempts or 0,
            scheduling_ref=booking.scheduling_ref,
            payment_ref=booking.payment_ref,
            start_time=booking.start_time,
            end_time=booking.end_time,
            amount=booking.amount,
            currency=booking.currency,
        )

    def apply(
        self,
        booking: Booking,
        result: TransitionResult,
        provider: Optional[str] = None,
        event_id: Optional[str] = None,
        actor: Optional[str] = None
    ) -> BookingTransition:
        """Copy the transition result onto the row and append the audit entry."""
        after = result.after
        booking.state = after.state.value
        booking.version = after.version
        booking.payment_attempts = after.payment_attempts
        booking.scheduling_ref = after.scheduling_ref
        booking.payment_ref = after.payment_ref
        booking.start_time = after.start_time
        booking.end_time = after.end_time
        booking.amount = after.amount
        booking.currency = after.currency
        booking.updated_at = datetime.utcnow()

        audit = BookingTransition(
            booking_id=booking.id,
            event_type=result.event_type.value,
            from_state=result.from_state.value,
            to_state=after.state.value,
            via_state=result.via_state.value if result.via_state else None,
            version=after.version,
            provider=provider,
            event_id=event_id,
            actor=actor,
        )
        self.db.add(audit)
        return audit

    def transitions(self, booking_id: str) -> list:
        return self.db.query(BookingTransition).filter(
            BookingTransition.booking_id == booking_id
        ).order_by(BookingTransition.version, BookingTransition.created_at).all()
