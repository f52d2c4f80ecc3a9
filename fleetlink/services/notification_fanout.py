"""
Notification fan-out for booking events.

One call per event: the audience comes from ``resolve_recipients``, the
wording from ``TEMPLATES`` (per event and recipient type), and every message
is appended to the side-effect outbox in the caller's transaction.
"""

import logging
from decimal import Decimal
from typing import Dict, List, NamedTuple, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..models.notification import NotificationType, NotificationPriority, RecipientType
from ..models.outbox import SideEffectOutbox
from .actors import get_financial_staff_ids
from .outbox_worker import enqueue_notification
from .recipients import BookingEvent, needs_financial_staff, resolve_recipients

logger = logging.getLogger(__name__)

LOW = NotificationPriority.LOW.value
MEDIUM = NotificationPriority.MEDIUM.value
HIGH = NotificationPriority.HIGH.value
CRITICAL = NotificationPriority.CRITICAL.value

DRIVER = RecipientType.DRIVER.value
PARTNER = RecipientType.PARTNER.value
OPERATOR = RecipientType.PLATFORM_OPERATOR.value


class NotificationTemplate(NamedTuple):
    type: str
    title: str
    message: str
    priority: str = MEDIUM


T = NotificationType

TEMPLATES: Dict[str, Dict[str, NotificationTemplate]] = {
    BookingEvent.PAYMENT_INSTRUCTION_CREATED: {
        DRIVER: NotificationTemplate(
            T.PAYMENT_INSTRUCTION_CREATED.value,
            "Weekly payment set up",
            "{driver_message}",
        ),
        PARTNER: NotificationTemplate(
            T.PAYMENT_INSTRUCTION_CREATED.value,
            "New weekly payment from driver",
            "A weekly {method_label} payment of {amount} was set up for {vehicle_reg}.",
        ),
    },
    BookingEvent.FIRST_PAYMENT_SENT: {
        PARTNER: NotificationTemplate(
            T.NEW_BOOKING.value,
            "New booking awaiting your approval",
            "Weekly payment received. Please approve or reject booking for {vehicle_reg}.",
            HIGH,
        ),
    },
    BookingEvent.PAYMENT_SENT: {
        PARTNER: NotificationTemplate(
            T.PAYMENT_SENT.value,
            "Payment marked as sent",
            "The driver marked {amount} as sent for {vehicle_reg}. Please confirm once it arrives.",
        ),
    },
    BookingEvent.BANK_TRANSFER_CONFIRMED: {
        DRIVER: NotificationTemplate(
            T.PAYMENT_CONFIRMED.value,
            "Payment confirmed",
            "Your payment of {amount} for {vehicle_reg} has been confirmed by the partner.",
        ),
    },
    BookingEvent.DEPOSIT_REFUNDED: {
        DRIVER: NotificationTemplate(
            T.DEPOSIT_REFUNDED.value,
            "Deposit refunded",
            "Your deposit refund of {amount} for booking {booking_id} has been issued.",
        ),
    },
    BookingEvent.REFUND_REJECTED: {
        DRIVER: NotificationTemplate(
            T.REFUND_REJECTED.value,
            "Refund rejected",
            "Your refund request for booking {booking_id} was rejected. Reason: {reason}",
        ),
    },
    BookingEvent.PARTNER_ACCEPTED: {
        DRIVER: NotificationTemplate(
            T.BOOKING_ACCEPTED.value,
            "Booking accepted",
            "{partner_name} accepted your booking for {vehicle_reg}. {next_step}",
            HIGH,
        ),
        OPERATOR: NotificationTemplate(
            T.BOOKING_ACCEPTED_ADMIN.value,
            "Booking accepted by partner",
            "Booking {booking_id} was accepted by {partner_name} ({new_status}).",
            LOW,
        ),
    },
    BookingEvent.PARTNER_REJECTED: {
        DRIVER: NotificationTemplate(
            T.BOOKING_REJECTED.value,
            "Booking rejected",
            "Your booking for {vehicle_reg} has been rejected by the partner. "
            "Reason: {reason}. Refund(s) will be processed.",
            HIGH,
        ),
        OPERATOR: NotificationTemplate(
            T.BOOKING_REJECTED_ADMIN.value,
            "Booking rejected by partner",
            "Booking {booking_id} was rejected by {partner_name}: {reason}",
            LOW,
        ),
    },
    BookingEvent.BOOKING_AUTO_REJECTED: {
        DRIVER: NotificationTemplate(
            T.BOOKING_AUTO_REJECTED.value,
            "Booking expired",
            "The partner did not respond in time to your booking for {vehicle_reg}. "
            "Any payment made will be refunded.",
            HIGH,
        ),
        OPERATOR: NotificationTemplate(
            T.BOOKING_AUTO_REJECTED_ADMIN.value,
            "Booking auto-rejected",
            "Booking {booking_id} passed its partner acceptance deadline and was auto-rejected.",
        ),
    },
    BookingEvent.BOOKING_ACTIVATED: {
        DRIVER: NotificationTemplate(
            T.BOOKING_ACTIVATED.value,
            "Booking Now Active - Ready for Collection!",
            "Your booking for {vehicle_reg} is now active. The vehicle is ready for collection.",
            HIGH,
        ),
        OPERATOR: NotificationTemplate(
            T.BOOKING_ACTIVATED_ADMIN.value,
            "Booking activated",
            "Booking {booking_id} was activated by {partner_name}.{bypass_note}",
            LOW,
        ),
    },
    BookingEvent.BOOKING_COMPLETED: {
        DRIVER: NotificationTemplate(
            T.BOOKING_COMPLETED.value,
            "Booking completed",
            "Your booking for {vehicle_reg} has been completed. Thank you!",
        ),
        PARTNER: NotificationTemplate(
            T.BOOKING_COMPLETED.value,
            "Booking completed",
            "Booking {booking_id} for {vehicle_reg} has been completed.",
        ),
        OPERATOR: NotificationTemplate(
            T.BOOKING_COMPLETED_ADMIN.value,
            "Booking completed",
            "Booking {booking_id} was completed by {performer_name}.",
            LOW,
        ),
    },
    BookingEvent.BOOKING_CANCELLED: {
        DRIVER: NotificationTemplate(
            T.BOOKING_CANCELLED.value,
            "Booking cancelled",
            "The booking for {vehicle_reg} was cancelled by {performer_name}. Reason: {reason}",
            HIGH,
        ),
        PARTNER: NotificationTemplate(
            T.BOOKING_CANCELLED.value,
            "Booking cancelled",
            "Booking {booking_id} for {vehicle_reg} was cancelled by {performer_name}. Reason: {reason}",
            HIGH,
        ),
        OPERATOR: NotificationTemplate(
            T.BOOKING_CANCELLED_ADMIN.value,
            "Booking cancelled",
            "Booking {booking_id} was cancelled by {performer_name} ({performer_type}).",
            LOW,
        ),
    },
    BookingEvent.VEHICLE_RELEASED: {
        DRIVER: NotificationTemplate(
            T.VEHICLE_RELEASED.value,
            "Vehicle released",
            "{vehicle_reg} was released from your booking by {performer_name}. Reason: {reason}",
        ),
        PARTNER: NotificationTemplate(
            T.VEHICLE_RELEASED.value,
            "Vehicle released",
            "{vehicle_reg} was released from booking {booking_id} by {performer_name} "
            "and is available again. Reason: {reason}",
        ),
        OPERATOR: NotificationTemplate(
            T.VEHICLE_RELEASED_ADMIN.value,
            "Vehicle released",
            "{vehicle_reg} released from booking {booking_id} by {performer_name} ({performer_type}).",
            LOW,
        ),
    },
    BookingEvent.ISSUE_REPORTED: {
        PARTNER: NotificationTemplate(
            T.ISSUE_REPORTED.value,
            "Issue reported: {issue_type}",
            "{reporter_name} reported a {severity} {issue_type} issue on {vehicle_reg}: {description}",
        ),
        DRIVER: NotificationTemplate(
            T.ISSUE_REPORTED_DRIVER.value,
            "Issue reported on your booking",
            "{reporter_name} reported a {severity} {issue_type} issue on {vehicle_reg}: {description}",
        ),
        OPERATOR: NotificationTemplate(
            T.ISSUE_REPORTED_ADMIN.value,
            "New issue reported",
            "{severity} {issue_type} issue on booking {booking_id} reported by "
            "{reporter_name} ({reporter_type}): {description}",
        ),
    },
    BookingEvent.CRITICAL_ISSUE: {
        OPERATOR: NotificationTemplate(
            T.CRITICAL_ISSUE_ALERT.value,
            "CRITICAL: {vehicle_reg} requires maintenance",
            "A critical {issue_type} issue was reported on booking {booking_id}. "
            "The vehicle has been set to maintenance required. {description}",
            CRITICAL,
        ),
    },
    BookingEvent.VEHICLE_CHANGED: {
        DRIVER: NotificationTemplate(
            T.VEHICLE_CHANGED.value,
            "Vehicle changed",
            "Your booking now uses {vehicle_reg} ({new_vehicle}) instead of {old_vehicle}. "
            "Reason: {reason}{adjustment_note}",
            HIGH,
        ),
        OPERATOR: NotificationTemplate(
            T.VEHICLE_CHANGED_ADMIN.value,
            "Vehicle assignment changed",
            "Booking {booking_id} moved from {old_vehicle} to {new_vehicle} by {performer_name}. "
            "Reason: {reason}",
        ),
    },
    BookingEvent.RETURN_REQUESTED: {
        DRIVER: NotificationTemplate(
            T.RETURN_REQUESTED.value,
            "Return requested",
            "{performer_name} requested the return of {vehicle_reg}. Reason: {reason}",
            HIGH,
        ),
        PARTNER: NotificationTemplate(
            T.RETURN_REQUESTED.value,
            "Return requested",
            "{performer_name} requested to return {vehicle_reg}. Reason: {reason}",
            HIGH,
        ),
        OPERATOR: NotificationTemplate(
            T.RETURN_REQUESTED_ADMIN.value,
            "Return requested",
            "Return of booking {booking_id} requested by {performer_name} ({performer_type}).",
            LOW,
        ),
    },
    BookingEvent.RETURN_APPROVED: {
        DRIVER: NotificationTemplate(
            T.RETURN_APPROVED.value,
            "Return approved",
            "The return of {vehicle_reg} was approved by {performer_name}. Your booking is complete.",
            HIGH,
        ),
        PARTNER: NotificationTemplate(
            T.RETURN_APPROVED.value,
            "Return approved",
            "The return of {vehicle_reg} on booking {booking_id} was approved by {performer_name}.",
        ),
        OPERATOR: NotificationTemplate(
            T.RETURN_APPROVED_ADMIN.value,
            "Return approved",
            "Booking {booking_id} completed after a return approved by {performer_name} ({performer_type}).",
            LOW,
        ),
    },
    BookingEvent.RETURN_REJECTED: {
        DRIVER: NotificationTemplate(
            T.RETURN_REJECTED.value,
            "Return request rejected",
            "{performer_name} rejected the return of {vehicle_reg}. Reason: {reason}",
        ),
        PARTNER: NotificationTemplate(
            T.RETURN_REJECTED.value,
            "Return request rejected",
            "{performer_name} rejected the return of {vehicle_reg}. Reason: {reason}",
        ),
        OPERATOR: NotificationTemplate(
            T.RETURN_REJECTED_ADMIN.value,
            "Return rejected",
            "Return of booking {booking_id} rejected by {performer_name} ({performer_type}).",
            LOW,
        ),
    },
}


class _MessageContext(dict):
    """Missing placeholders render as empty strings"""

    def __missing__(self, key):
        return ""


def format_amount(amount) -> str:
    value = Decimal(str(amount or 0)).quantize(Decimal("0.01"))
    return f"{settings.currency_symbol}{value}"


def _template_for(event_type: str, recipient_type: str) -> Optional[NotificationTemplate]:
    templates = TEMPLATES.get(event_type, {})
    if recipient_type == RecipientType.PARTNER_STAFF.value:
        recipient_type = PARTNER
    return templates.get(recipient_type)


def fan_out(
    db: Session,
    event_type: str,
    booking,
    context: Optional[Dict] = None,
    data: Optional[Dict] = None,
    reporter_type: Optional[str] = None,
    priority: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> List[SideEffectOutbox]:
    """
    Queue one notification per recipient of ``event_type``.

    Args:
        context: values for the message templates
        data: structured payload stored on each notification
        reporter_type: used by events that skip the reporting party
        priority: overrides the template priority for every recipient
        idempotency_key: per-event key, suffixed per recipient
    """
    staff_ids = get_financial_staff_ids(db, booking.partner_id) if needs_financial_staff(event_type) else ()
    recipients = resolve_recipients(
        event_type,
        booking,
        reporter_type=reporter_type,
        financial_staff_ids=staff_ids,
    )

    values = _MessageContext(
        booking_id=booking.id,
        vehicle_reg=getattr(booking, "vehicle_reg", None) or "your vehicle",
    )
    values.update({k: v for k, v in (context or {}).items() if v is not None})

    payload = {"booking_id": booking.id}
    payload.update(data or {})

    events = []
    for recipient in recipients:
        template = _template_for(event_type, recipient.recipient_type)
        if template is None:
            logger.warning(f"No template for {event_type} -> {recipient.recipient_type}")
            continue

        key = None
        if idempotency_key:
            key = f"{idempotency_key}:{recipient.recipient_id or recipient.recipient_type}"

        events.append(enqueue_notification(
            db,
            recipient_id=recipient.recipient_id,
            recipient_type=recipient.recipient_type,
            notification_type=template.type,
            title=template.title.format_map(values),
            message=" ".join(template.message.format_map(values).split()),
            data=payload,
            priority=priority or template.priority,
            booking_id=booking.id,
            idempotency_key=key,
        ))

    return events
