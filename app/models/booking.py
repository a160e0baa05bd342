import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, Text, DateTime, Index
from ..database import Base
import enum


class BookingState(str, enum.Enum):
    CREATED = "CREATED"
    SCHEDULED = "SCHEDULED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAID = "PAID"
    CONFIRMED = "CONFIRMED"
    # Side branches. RESCHEDULED and PAYMENT_FAILED are pass-through
    # states: the booking re-enters SCHEDULED / PAYMENT_PENDING and the
    # audit row records which branch was taken.
    RESCHEDULED = "RESCHEDULED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


TERMINAL_STATES = frozenset({
    BookingState.CANCELLED,
    BookingState.REFUNDED,
    BookingState.FAILED,
})


class BookingSource(str, enum.Enum):
    """What created the booking record"""
    DIRECT = "direct"          # POST /bookings (booking intent)
    SCHEDULING = "scheduling"  # first scheduling-provider event
    PAYMENT = "payment"        # payment-initiated carrying scheduling proof


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Correlation keys (one live reference per provider)
    scheduling_ref = Column(String(255), nullable=True, unique=True)
    payment_ref = Column(String(255), nullable=True, unique=True)

    state = Column(String(30), default=BookingState.CREATED.value, nullable=False)
    version = Column(Integer, default=0, nullable=False)
    payment_attempts = Column(Integer, default=0, nullable=False)

    # Amount in minor units (cents)
    amount = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=True)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)

    # Parties (identifiers resolved by the surrounding application)
    builder_id = Column(String(255), nullable=True)
    client_id = Column(String(255), nullable=True)

    source = Column(String(20), default=BookingSource.DIRECT.value)

    # Cancellation / refund bookkeeping
    cancel_reason = Column(Text, nullable=True)
    cancelled_by = Column(String(255), nullable=True)
    refund_amount = Column(Integer, nullable=True)
    refund_reference = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_bookings_state", "state"),
        Index("ix_bookings_client", "client_id"),
    )

    @property
    def is_terminal(self) -> bool:
        return BookingState(self.state) in TERMINAL_STATES

    def __repr__(self):
        return f"<Booking {self.id} {self.state} v{self.version}>"
