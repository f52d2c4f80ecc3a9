"""
Recipient resolution for booking events.

``resolve_recipients`` is pure: it only looks at the booking's party ids, the
reporter type and the staff roster handed in by the caller, so every entry
point derives the same audience for the same event.
"""

from typing import Iterable, List, NamedTuple, Optional

from ..models.notification import RecipientType


class Recipient(NamedTuple):
    recipient_id: Optional[str]
    recipient_type: str


# Operator notifications go to a shared channel, not a user
OPERATOR = Recipient(None, RecipientType.PLATFORM_OPERATOR.value)

DRIVER = "driver"
PARTNER = "partner"
FINANCIAL_STAFF = "financial_staff"
OPERATOR_CHANNEL = "operator"


class BookingEvent:
    PAYMENT_INSTRUCTION_CREATED = "payment_instruction_created"
    FIRST_PAYMENT_SENT = "first_payment_sent"
    PAYMENT_SENT = "payment_sent"
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
    CRITICAL_ISSUE = "critical_issue"
    VEHICLE_CHANGED = "vehicle_changed"
    RETURN_REQUESTED = "return_requested"
    RETURN_APPROVED = "return_approved"
    RETURN_REJECTED = "return_rejected"


EVENT_AUDIENCES = {
    BookingEvent.PAYMENT_INSTRUCTION_CREATED: (DRIVER, PARTNER),
    BookingEvent.FIRST_PAYMENT_SENT: (PARTNER, FINANCIAL_STAFF),
    BookingEvent.PAYMENT_SENT: (PARTNER, FINANCIAL_STAFF),
    BookingEvent.BANK_TRANSFER_CONFIRMED: (DRIVER,),
    BookingEvent.DEPOSIT_REFUNDED: (DRIVER,),
    BookingEvent.REFUND_REJECTED: (DRIVER,),
    BookingEvent.PARTNER_ACCEPTED: (DRIVER, OPERATOR_CHANNEL),
    BookingEvent.PARTNER_REJECTED: (DRIVER, OPERATOR_CHANNEL),
    BookingEvent.BOOKING_AUTO_REJECTED: (DRIVER, OPERATOR_CHANNEL),
    BookingEvent.BOOKING_ACTIVATED: (DRIVER, OPERATOR_CHANNEL),
    BookingEvent.BOOKING_COMPLETED: (DRIVER, PARTNER, OPERATOR_CHANNEL),
    BookingEvent.BOOKING_CANCELLED: (DRIVER, PARTNER, OPERATOR_CHANNEL),
    BookingEvent.VEHICLE_RELEASED: (DRIVER, PARTNER, OPERATOR_CHANNEL),
    BookingEvent.ISSUE_REPORTED: (PARTNER, DRIVER, OPERATOR_CHANNEL),
    BookingEvent.CRITICAL_ISSUE: (OPERATOR_CHANNEL,),
    BookingEvent.VEHICLE_CHANGED: (DRIVER, OPERATOR_CHANNEL),
    BookingEvent.RETURN_REQUESTED: (DRIVER, PARTNER, OPERATOR_CHANNEL),
    BookingEvent.RETURN_APPROVED: (DRIVER, PARTNER, OPERATOR_CHANNEL),
    BookingEvent.RETURN_REJECTED: (DRIVER, PARTNER, OPERATOR_CHANNEL),
}

# Events where the acting party is not told about its own action
SKIP_REPORTER_EVENTS = {
    BookingEvent.ISSUE_REPORTED,
    BookingEvent.RETURN_REQUESTED,
    BookingEvent.RETURN_APPROVED,
    BookingEvent.RETURN_REJECTED,
}


def needs_financial_staff(event_type: str) -> bool:
    return FINANCIAL_STAFF in EVENT_AUDIENCES.get(event_type, ())


def resolve_recipients(
    event_type: str,
    booking,
    reporter_type: Optional[str] = None,
    financial_staff_ids: Iterable[str] = (),
) -> List[Recipient]:
    """
    Audience for ``event_type`` on ``booking``, in a stable order.

    ``booking`` only needs ``driver_id`` and ``partner_id``. A recipient never
    appears twice (e.g. a partner listed on its own staff roster).

    Raises:
        KeyError: unknown event type
    """
    audience = EVENT_AUDIENCES[event_type]
    skip = reporter_type if event_type in SKIP_REPORTER_EVENTS else None

    recipients: List[Recipient] = []
    for group in audience:
        if group == DRIVER and skip != DRIVER and booking.driver_id:
            recipients.append(Recipient(booking.driver_id, RecipientType.DRIVER.value))
        elif group == PARTNER and skip != PARTNER and booking.partner_id:
            recipients.append(Recipient(booking.partner_id, RecipientType.PARTNER.value))
        elif group == FINANCIAL_STAFF:
            for staff_id in financial_staff_ids:
                recipients.append(Recipient(staff_id, RecipientType.PARTNER_STAFF.value))
        elif group == OPERATOR_CHANNEL:
            recipients.append(OPERATOR)

    seen = set()
    unique = []
    for recipient in recipients:
        key = recipient.recipient_id or recipient.recipient_type
        if key in seen:
            continue
        seen.add(key)
        unique.append(recipient)
    return unique
