import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, Text, DateTime, Index, JSON
from ..database import Base
import enum


class DeadLetterStatus(str, enum.Enum):
    PENDING = "pending"      # waiting for an operator
    REPLAYED = "replayed"    # replay attempted, see replay_outcome
    RESOLVED = "resolved"    # a later delivery or replay applied it
    IGNORED = "ignored"


class DeadLetterEvent(Base):
    """
    Inbound webhook whose transition kept failing with transient
    persistence errors. Raw body and signature headers are kept so the
    delivery can be replayed through the full pipeline.
    """
    __tablename__ = "dead_letter_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    provider = Column(String(50), nullable=False)
    event_id = Column(String(255), nullable=True)
    event_type = Column(String(100), nullable=True)

    raw_body = Column(Text, nullable=False)
    headers = Column(JSON, nullable=True)  # signature headers only

    reason = Column(Text, nullable=True)
    attempts = Column(Integer, default=0)

    status = Column(String(20), default=DeadLetterStatus.PENDING.value, nullable=False)
    replay_outcome = Column(String(20), nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_dead_letter_status", "status"),
        Index("ix_dead_letter_event", "provider", "event_id"),
    )

    def __repr__(self):
        return f"<DeadLetterEvent {self.provider}:{self.event_id} {self.status}>"
