"""
Pending Event Buffer

Normalized events that arrived before the booking reached their source
state (e.g. payment-succeeded before scheduling-confirmed). Drained after
every accepted transition on the matching booking, expired by maintenance.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, Index, JSON
from ..database import Base
import enum


class PendingStatus(str, enum.Enum):
    PENDING = "pending"
    APPLIED = "applied"
    REJECTED = "rejected"
    EXPIRED = "expired"


class PendingEvent(Base):
    __tablename__ = "pending_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    provider = Column(String(50), nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(50), nullable=False)
    sequence = Column(Integer, nullable=True)

    # Correlation keys used to find the event again
    booking_id = Column(String(36), nullable=True)
    scheduling_ref = Column(String(255), nullable=True)
    payment_ref = Column(String(255), nullable=True)

    event_data = Column(JSON, nullable=False)  # NormalizedEvent.to_dict()

    status = Column(String(20), default=PendingStatus.PENDING.value, nullable=False)
    reason = Column(String(255), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_pending_status_booking", "status", "booking_id"),
        Index("ix_pending_status_sched", "status", "scheduling_ref"),
        Index("ix_pending_status_payment", "status", "payment_ref"),
        Index("ix_pending_expires", "expires_at"),
    )

    def __repr__(self):
        return f"<PendingEvent {self.provider}:{self.event_id} {self.event_type} {self.status}>"
