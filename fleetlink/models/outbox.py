import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, Index
import enum

from ..database import Base


class OutboxStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


class OutboxKind(str, enum.Enum):
    HISTORY = "history"
    NOTIFICATION = "notification"
    BOOKING_PROMOTION = "booking_promotion"


class SideEffectOutbox(Base):
    """
    Outbox for best-effort side effects of booking operations.

    Rows are written in the same transaction as the booking/instruction
    mutation and materialized later (history rows, notifications, retried
    booking promotions) by OutboxProcessor.
    """
    __tablename__ = "side_effect_outbox"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    kind = Column(String(30), nullable=False)
    booking_id = Column(String(36), nullable=True, index=True)
    payload = Column(JSON, nullable=False)

    # Processing status
    status = Column(String(20), default=OutboxStatus.PENDING.value)
    attempts = Column(Integer, default=0)
    max_attempts = Column(Integer, default=5)
    next_attempt_at = Column(DateTime, default=datetime.utcnow)

    last_error = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Idempotency key for deduplication
    idempotency_key = Column(String(255), nullable=True, unique=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_side_effect_outbox_status_next", "status", "next_attempt_at"),
    )

    def __repr__(self):
        return f"<SideEffectOutbox {self.kind} status={self.status}>"
