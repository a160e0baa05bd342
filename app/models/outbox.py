import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, Text, DateTime, Index, JSON
from ..database import Base
import enum


class OutboxStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"  # exhausted, needs an operator


class SideEffectAction(str, enum.Enum):
    ISSUE_REFUND = "issue_refund"
    CANCEL_SCHEDULING_EVENT = "cancel_scheduling_event"
    CANCEL_PAYMENT_INTENT = "cancel_payment_intent"


ACTION_PROVIDERS = {
    SideEffectAction.ISSUE_REFUND.value: "stripe",
    SideEffectAction.CANCEL_PAYMENT_INTENT.value: "stripe",
    SideEffectAction.CANCEL_SCHEDULING_EVENT.value: "calendly",
}


class SideEffectOutbox(Base):
    """
    Outbox pattern for outbound provider calls.
    Rows are written in the same transaction as the booking transition
    and executed later by the OutboxProcessor.
    """
    __tablename__ = "side_effect_outbox"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    booking_id = Column(String(36), nullable=False)
    action = Column(String(50), nullable=False)
    provider = Column(String(50), nullable=False)

    payload = Column(JSON, nullable=False)

    # Processing status
    status = Column(String(20), default=OutboxStatus.PENDING.value)
    attempts = Column(Integer, default=0)
    max_attempts = Column(Integer, default=5)
    next_attempt_at = Column(DateTime, default=datetime.utcnow)

    # Result tracking
    last_error = Column(Text, nullable=True)
    response_data = Column(JSON, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Also sent to the provider as its Idempotency-Key
    idempotency_key = Column(String(255), nullable=False, unique=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_side_effect_status_next", "status", "next_attempt_at"),
        Index("ix_side_effect_booking", "booking_id"),
    )

    def __repr__(self):
        return f"<SideEffectOutbox {self.action} status={self.status}>"
