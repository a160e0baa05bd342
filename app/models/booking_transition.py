"""
Booking Transition Audit

Append-only row per accepted transition. Never updated or deleted.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from ..database import Base


class BookingTransition(Base):
    __tablename__ = "booking_transitions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)

    event_type = Column(String(50), nullable=False)
    from_state = Column(String(30), nullable=False)
    to_state = Column(String(30), nullable=False)
    via_state = Column(String(30), nullable=True)  # RESCHEDULED / PAYMENT_FAILED branch
    version = Column(Integer, nullable=False)

    # Where the transition came from
    provider = Column(String(50), nullable=True)   # None for direct commands
    event_id = Column(String(255), nullable=True)
    actor = Column(String(255), nullable=True)     # user id for direct commands

    created_at = Column(DateTime, default=datetime.utcnow)

    booking = relationship("Booking")

    __table_args__ = (
        Index("ix_transitions_booking_version", "booking_id", "version"),
    )

    def __repr__(self):
        return f"<BookingTransition {self.booking_id} {self.from_state}->{self.to_state} v{self.version}>"
