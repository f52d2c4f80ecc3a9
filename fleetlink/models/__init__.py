# Models package
from .user import User, PartnerStaff, UserRole
from .vehicle import Vehicle, VehicleStatus
from .booking import Booking, BookingStatus, PaymentStatus
from .payment_instruction import (
    PaymentInstruction,
    Transaction,
    InstructionMethod,
    InstructionFrequency,
    InstructionType,
    InstructionStatus,
    TransactionType,
    TransactionStatus,
    TERMINAL_INSTRUCTION_STATUSES,
    SETTLED_INSTRUCTION_STATUSES,
)
from .issue import BookingIssue, IssueType, IssueSeverity, IssueStatus
from .booking_history import BookingHistory, HistoryAction
from .notification import Notification, NotificationType, NotificationPriority, RecipientType
from .outbox import SideEffectOutbox, OutboxStatus, OutboxKind

__all__ = [
    "User", "PartnerStaff", "UserRole",
    "Vehicle", "VehicleStatus",
    "Booking", "BookingStatus", "PaymentStatus",
    "PaymentInstruction", "Transaction",
    "InstructionMethod", "InstructionFrequency", "InstructionType", "InstructionStatus",
    "TransactionType", "TransactionStatus",
    "TERMINAL_INSTRUCTION_STATUSES", "SETTLED_INSTRUCTION_STATUSES",
    "BookingIssue", "IssueType", "IssueSeverity", "IssueStatus",
    "BookingHistory", "HistoryAction",
    "Notification", "NotificationType", "NotificationPriority", "RecipientType",
    "SideEffectOutbox", "OutboxStatus", "OutboxKind",
]
