"""
Booking history - append-only audit trail used for dispute resolution
"""
from sqlalchemy import Column, String, DateTime, Text, JSON, ForeignKey, Index
from datetime import datetime
from decimal import Decimal
import uuid
import enum

from ..database import Base


def serialize_for_json(obj):
    """Convert non-JSON-serializable types to serializable ones"""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return {k: serialize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [serialize_for_json(i) for i in obj]
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, enum.Enum):
        return obj.value
    return obj


class HistoryAction(str, enum.Enum):
    WEEKLY_PAYMENT_INSTRUCTION_CREATED = "weekly_payment_instruction_created"
    FIRST_PAYMENT_SENT = "first_payment_sent"
    BANK_TRANSFER_CONFIRMED = "bank_transfer_confirmed"
    DEPOSIT_REFUNDED = "deposit_refunded"
    REFUND_REJECTED = "refund_rejected"
    PARTNER_ACCEPTED = "partner_accepted"
    PARTNER_REJECTED = "partner_rejected"
    BOOKING_AUTO_REJECTED = "booking_auto_rejected"
    BOOKING_ACTIVATED = "booking_activated"
    BOOKING_COMPLETED = "booking_completed"
    BOOKING_CANCELLED = "booking_cancelled"
    VEHICLE_RELEASED = "vehicle_released"
    ISSUE_REPORTED = "issue_reported"
    VEHICLE_CHANGED = "vehicle_changed"
    RETURN_REQUESTED = "return_requested"
    RETURN_APPROVED = "return_approved"
    RETURN_REJECTED = "return_rejected"


class BookingHistory(Base):
    """
    One row per state-changing action. Rows are never updated or deleted;
    ordering by created_at is the canonical trail.
    """
    __tablename__ = "booking_history"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    action = Column(String(60), nullable=False)
    performed_by = Column(String(36), nullable=True)
    performed_by_type = Column(String(30), nullable=False)
    details = Column(JSON, nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_history_booking_created", "booking_id", "created_at"),
        Index("ix_history_action", "action"),
    )

    @classmethod
    def build(
        cls,
        booking_id: str,
        action,
        performed_by,
        performed_by_type: str,
        description: str = None,
        details: dict = None,
        created_at: datetime = None,
    ) -> "BookingHistory":
        return cls(
            booking_id=booking_id,
            action=action.value if isinstance(action, enum.Enum) else action,
            performed_by=performed_by,
            performed_by_type=performed_by_type,
            description=description,
            details=serialize_for_json(details or {}),
            created_at=created_at or datetime.utcnow(),
        )

    def __repr__(self):
        return f"<BookingHistory {self.action} on {self.booking_id}>"
