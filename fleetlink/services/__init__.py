# Services package
from .recipients import BookingEvent, Recipient, resolve_recipients
from .outbox_worker import (
    OutboxProcessor,
    enqueue_history,
    enqueue_notification,
    enqueue_booking_promotion,
    drain_inline
)
from .notification_fanout import fan_out, format_amount
from .transitions import BookingAction, Transition, TRANSITIONS
from .vehicle_assignment import release_vehicle, bind_vehicle, free_vehicle, force_maintenance
from .payment_ledger import (
    create_weekly_instruction,
    mark_sent,
    confirm_bank_transfer,
    refund_deposit,
    reject_refund
)
from .booking_state_machine import (
    check_activation_readiness,
    activate,
    promote_after_first_payment,
    respond_to_booking,
    complete_booking,
    cancel_booking,
    auto_reject_expired
)
from .issue_log import report_issue, list_issues

__all__ = [
    "BookingEvent", "Recipient", "resolve_recipients",
    "OutboxProcessor", "enqueue_history", "enqueue_notification",
    "enqueue_booking_promotion", "drain_inline",
    "fan_out", "format_amount",
    "BookingAction", "Transition", "TRANSITIONS",
    "release_vehicle", "bind_vehicle", "free_vehicle", "force_maintenance",
    "create_weekly_instruction", "mark_sent", "confirm_bank_transfer",
    "refund_deposit", "reject_refund",
    "check_activation_readiness", "activate", "promote_after_first_payment",
    "respond_to_booking", "complete_booking", "cancel_booking", "auto_reject_expired",
    "report_issue", "list_issues",
]
