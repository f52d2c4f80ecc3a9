"""
Notification model
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, Boolean, DateTime, Text, JSON, Index
import enum

from ..database import Base


class RecipientType(str, enum.Enum):
    DRIVER = "driver"
    PARTNER = "partner"
    PARTNER_STAFF = "partner_staff"
    PLATFORM_OPERATOR = "platform_operator"


class NotificationPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationType(str, enum.Enum):
    # Payments
    PAYMENT_INSTRUCTION_CREATED = "payment_instruction_created"
    PAYMENT_SENT = "payment_sent"
    NEW_BOOKING = "new_booking"
    PAYMENT_CONFIRMED = "payment_confirmed"
    DEPOSIT_REFUNDED = "deposit_refunded"
    REFUND_REJECTED = "refund_rejected"

    # Lifecycle
    BOOKING_ACCEPTED = "booking_accepted"
    BOOKING_ACCEPTED_ADMIN = "booking_accepted_admin"
    BOOKING_REJECTED = "booking_rejected"
    BOOKING_REJECTED_ADMIN = "booking_rejected_admin"
    BOOKING_AUTO_REJECTED = "booking_auto_rejected"
    BOOKING_AUTO_REJECTED_ADMIN = "booking_auto_rejected_admin"
    BOOKING_ACTIVATED = "booking_activated"
    BOOKING_ACTIVATED_ADMIN = "booking_activated_admin"
    BOOKING_COMPLETED = "booking_completed"
    BOOKING_COMPLETED_ADMIN = "booking_completed_admin"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_CANCELLED_ADMIN = "booking_cancelled_admin"

    # Vehicle
    VEHICLE_RELEASED = "vehicle_released"
    VEHICLE_RELEASED_ADMIN = "vehicle_released_admin"
    VEHICLE_CHANGED = "vehicle_changed"
    VEHICLE_CHANGED_ADMIN = "vehicle_changed_admin"

    # Returns
    RETURN_REQUESTED = "return_requested"
    RETURN_REQUESTED_ADMIN = "return_requested_admin"
    RETURN_APPROVED = "return_approved"
    RETURN_APPROVED_ADMIN = "return_approved_admin"
    RETURN_REJECTED = "return_rejected"
    RETURN_REJECTED_ADMIN = "return_rejected_admin"

    # Issues
    ISSUE_REPORTED = "issue_reported"
    ISSUE_REPORTED_DRIVER = "issue_reported_driver"
    ISSUE_REPORTED_ADMIN = "issue_reported_admin"
    CRITICAL_ISSUE_ALERT = "critical_issue_alert"


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # null recipient_id = operator channel, visible to every platform operator
    recipient_id = Column(String(36), nullable=True, index=True)
    recipient_type = Column(String(30), nullable=False)

    type = Column(String(50), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=True)
    data = Column(JSON, nullable=True)  # booking_id, instruction_id, amounts
    priority = Column(String(20), default=NotificationPriority.MEDIUM.value)

    is_read = Column(Boolean, default=False, index=True)
    read_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("ix_notification_recipient_read", "recipient_type", "recipient_id", "is_read"),
    )

    def __repr__(self):
        return f"<Notification {self.type} -> {self.recipient_type}:{self.recipient_id}>"

    def mark_as_read(self):
        self.is_read = True
        self.read_at = datetime.utcnow()
