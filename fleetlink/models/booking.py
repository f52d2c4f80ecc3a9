import uuid
from datetime import datetime
from sqlalchemy import Column, String, Date, Numeric, Text, ForeignKey, DateTime, Index, Boolean, JSON
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class BookingStatus(str, enum.Enum):
    PENDING_PAYMENT = "pending_payment"
    PENDING_PARTNER_APPROVAL = "pending_partner_approval"
    PARTNER_ACCEPTED = "partner_accepted"
    PENDING_INSURANCE_UPLOAD = "pending_insurance_upload"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PARTNER_REJECTED = "partner_rejected"
    AUTO_REJECTED = "auto_rejected"


class PaymentStatus(str, enum.Enum):
    """Cached view of the payment ledger, the instructions are authoritative"""
    PENDING = "pending"
    ACTIVE = "active"          # weekly instruction set up
    CONFIRMED = "confirmed"    # partner confirmed a bank transfer
    PAID = "paid"
    COMPLETED = "completed"


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    driver_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    partner_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True)

    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    status = Column(String(40), default=BookingStatus.PENDING_PAYMENT.value, nullable=False)

    # Financial summary
    total_amount = Column(Numeric(10, 2), default=0)
    weekly_rate = Column(Numeric(10, 2), nullable=True)
    payment_status = Column(String(30), default=PaymentStatus.PENDING.value)
    payment_method = Column(String(30), nullable=True)
    payment_instruction_id = Column(String(36), nullable=True)
    deposit_refunded = Column(Numeric(10, 2), default=0)

    # Vehicle snapshot taken at request time (plate fallbacks)
    vehicle_reg = Column(String(20), nullable=True)
    car_info = Column(JSON, nullable=True)

    # Facts supplied by document/insurance verification
    insurance_required = Column(Boolean, default=False)
    driver_insurance_valid = Column(Boolean, default=False)
    partner_provides_insurance = Column(Boolean, default=False)
    requires_document_verification = Column(Boolean, default=False)
    all_documents_approved = Column(Boolean, default=False)

    # Partner approval
    partner_acceptance_deadline = Column(DateTime, nullable=True)
    partner_accepted_at = Column(DateTime, nullable=True)
    partner_rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    auto_rejected_at = Column(DateTime, nullable=True)
    auto_rejection_reason = Column(Text, nullable=True)

    # Activation
    activated_at = Column(DateTime, nullable=True)
    activated_by = Column(String(36), nullable=True)
    activated_by_type = Column(String(30), nullable=True)
    activation_trigger = Column(String(30), nullable=True)
    activation_bypassed = Column(Boolean, default=False)

    # Vehicle release
    vehicle_released_at = Column(DateTime, nullable=True)
    vehicle_released_by = Column(String(36), nullable=True)
    vehicle_released_by_type = Column(String(30), nullable=True)
    vehicle_release_reason = Column(Text, nullable=True)

    # Return requests
    return_requested = Column(Boolean, default=False)
    return_requested_at = Column(DateTime, nullable=True)
    return_requested_by = Column(String(36), nullable=True)
    return_requested_by_type = Column(String(30), nullable=True)
    return_reason = Column(Text, nullable=True)
    return_approved_at = Column(DateTime, nullable=True)
    return_approved_by = Column(String(36), nullable=True)
    return_approved_by_type = Column(String(30), nullable=True)
    return_rejected_at = Column(DateTime, nullable=True)
    return_rejected_by = Column(String(36), nullable=True)
    return_rejected_by_type = Column(String(30), nullable=True)
    return_rejection_reason = Column(Text, nullable=True)

    # Termination
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    vehicle = relationship("Vehicle", foreign_keys=[vehicle_id])
    issues = relationship(
        "BookingIssue",
        back_populates="booking",
        order_by="BookingIssue.reported_at",
    )
    payment_instructions = relationship(
        "PaymentInstruction",
        back_populates="booking",
        order_by="PaymentInstruction.created_at",
    )

    __table_args__ = (
        Index("ix_booking_driver", "driver_id"),
        Index("ix_booking_partner", "partner_id"),
        Index("ix_booking_status_deadline", "status", "partner_acceptance_deadline"),
    )

    def __repr__(self):
        return f"<Booking {self.id} {self.status}>"
