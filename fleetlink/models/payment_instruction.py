"""
Payment instruction ledger models

A PaymentInstruction is a tracked obligation for a driver to pay a partner
(weekly rent, deposit, adjustments...). Transactions are the money-movement
records produced from instructions (mark sent, deposit refunds).
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, Numeric, Text, ForeignKey, DateTime, Index, JSON
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class InstructionMethod(str, enum.Enum):
    BANK_TRANSFER = "bank_transfer"
    DIRECT_DEBIT = "direct_debit"


class InstructionFrequency(str, enum.Enum):
    WEEKLY = "weekly"
    ONE_OFF = "one_off"


class InstructionType(str, enum.Enum):
    WEEKLY_RENT = "weekly_rent"
    DEPOSIT = "deposit"
    ADJUSTMENT = "adjustment"
    TOP_UP = "top_up"
    REFUND = "refund"


class InstructionStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    RECEIVED = "received"
    AUTO = "auto"
    DEPOSIT_PENDING = "deposit_pending"
    DEPOSIT_REFUND_PENDING = "deposit_refund_pending"
    DEPOSIT_REFUNDED = "deposit_refunded"
    REFUND_REJECTED = "refund_rejected"


# No instruction leaves these; a new instruction must be created instead
TERMINAL_INSTRUCTION_STATUSES = (
    InstructionStatus.DEPOSIT_REFUNDED.value,
    InstructionStatus.REFUND_REJECTED.value,
)

# End of the bank transfer / direct debit paths
SETTLED_INSTRUCTION_STATUSES = (
    InstructionStatus.RECEIVED.value,
    InstructionStatus.AUTO.value,
)


class TransactionType(str, enum.Enum):
    INCOME = "income"
    EXPENSE = "expense"


class TransactionStatus(str, enum.Enum):
    PENDING_CONFIRMATION = "pending_confirmation"
    COMPLETED = "completed"
    REFUNDED = "refunded"


DEPOSIT_REFUND_CATEGORY = "Deposit Refund"
DEPOSIT_CATEGORY = "Deposit"


class PaymentInstruction(Base):
    __tablename__ = "payment_instructions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    driver_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    partner_id = Column(String(36), ForeignKey("users.id"), nullable=False)

    method = Column(String(30), nullable=False, default=InstructionMethod.BANK_TRANSFER.value)
    frequency = Column(String(20), nullable=False, default=InstructionFrequency.WEEKLY.value)
    type = Column(String(30), nullable=False, default=InstructionType.WEEKLY_RENT.value)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(40), nullable=False, default=InstructionStatus.PENDING.value)

    # Snapshot for the driver's transfer reference
    vehicle_reg = Column(String(20), nullable=True)
    bank_account_name = Column(String(100), nullable=True)
    bank_account_number = Column(String(20), nullable=True)
    bank_sort_code = Column(String(10), nullable=True)

    next_due_date = Column(DateTime, nullable=True)
    last_sent_at = Column(DateTime, nullable=True)
    received_at = Column(DateTime, nullable=True)
    confirmed_by = Column(String(36), nullable=True)

    refunded_amount = Column(Numeric(10, 2), nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    refund_rejection_reason = Column(Text, nullable=True)
    refund_rejected_at = Column(DateTime, nullable=True)

    # For refund instructions created when a partner rejects
    source_instruction_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    booking = relationship("Booking", back_populates="payment_instructions")

    __table_args__ = (
        Index("ix_instruction_booking_status", "booking_id", "status"),
        Index("ix_instruction_driver", "driver_id"),
        Index("ix_instruction_partner", "partner_id"),
    )

    def __repr__(self):
        return f"<PaymentInstruction {self.id} {self.type}/{self.status}>"


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True)
    payment_instruction_id = Column(
        String(36), ForeignKey("payment_instructions.id", ondelete="SET NULL"), nullable=True
    )
    type = Column(String(20), nullable=False)
    category = Column(String(50), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(30), default=TransactionStatus.COMPLETED.value)
    description = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_transaction_instruction", "payment_instruction_id", "category", "type"),
    )

    def __repr__(self):
        return f"<Transaction {self.type} {self.category} {self.amount}>"
