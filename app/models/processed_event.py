"""
Idempotency Ledger

One row per (provider, event_id). The unique constraint is the
atomic check-and-insert: the first writer wins and every concurrent
or later redelivery observes a duplicate.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Index, UniqueConstraint
from ..database import Base
import enum


class EventOutcome(str, enum.Enum):
    PROCESSING = "processing"  # inserted, outcome not decided yet
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"      # invalid transition / unknown correlation
    IGNORED = "ignored"        # stale or intentionally not processed
    DEFERRED = "deferred"      # parked in the pending buffer


class ProcessedEvent(Base):
    __tablename__ = "processed_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    provider = Column(String(50), nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=True)

    outcome = Column(String(20), default=EventOutcome.PROCESSING.value, nullable=False)
    booking_id = Column(String(36), nullable=True)  # None if rejected before resolution
    error_code = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_processed_event"),
        Index("ix_processed_events_created", "created_at"),
    )

    def __repr__(self):
        return f"<ProcessedEvent {self.provider}:{self.event_id} {self.outcome}>"
