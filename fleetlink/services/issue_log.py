"""
Issue Log

Problems reported against a booking by its driver, its partner or the
platform operator. Issues are not gated on booking status. A critical issue
takes the vehicle off the road (maintenance_required) unless it is now bound
to another booking, and raises an extra alert on the operator channel.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ..exceptions import NotFoundError, UnauthorizedError, ValidationError
from ..models.booking import Booking
from ..models.booking_history import HistoryAction
from ..models.issue import BookingIssue, IssueSeverity, IssueStatus, IssueType, generate_issue_id
from ..models.notification import NotificationPriority
from ..utils.db_helpers import acquire_row_lock
from . import history_recorder
from .actors import ACTOR_TYPES, get_display_name, owns_booking
from .notification_fanout import fan_out
from .outbox_worker import drain_inline
from .recipients import BookingEvent
from .transitions import BookingAction, assert_transition_allowed
from .vehicle_assignment import force_maintenance

logger = logging.getLogger(__name__)

ISSUE_TYPES = [t.value for t in IssueType]
SEVERITIES = [s.value for s in IssueSeverity]

ESCALATED_SEVERITIES = (IssueSeverity.HIGH.value, IssueSeverity.CRITICAL.value)


def report_issue(
    db: Session,
    booking_id: str,
    issue_type: str,
    description: str,
    reported_by: str,
    reported_by_type: str,
    severity: str = IssueSeverity.MEDIUM.value,
    images: Optional[List[str]] = None,
) -> Dict:
    """
    Record an issue on a booking and notify the other parties.

    Raises:
        ValidationError: bad type, severity, reporter type or empty description
        NotFoundError: booking missing
        UnauthorizedError: reporter does not own the booking
    """
    if reported_by_type not in ACTOR_TYPES:
        raise ValidationError(
            f"Invalid reportedByType. Must be one of: {', '.join(ACTOR_TYPES)}",
            reported_by_type=reported_by_type,
        )
    if issue_type not in ISSUE_TYPES:
        raise ValidationError(
            f"Invalid issue type. Must be one of: {', '.join(ISSUE_TYPES)}",
            issue_type=issue_type,
        )
    severity = severity or IssueSeverity.MEDIUM.value
    if severity not in SEVERITIES:
        raise ValidationError(
            f"Invalid severity. Must be one of: {', '.join(SEVERITIES)}",
            severity=severity,
        )
    if not description or not description.strip():
        raise ValidationError("Issue description is required")

    booking = acquire_row_lock(db, Booking, Booking.id == booking_id)
    if booking is None:
        raise NotFoundError("Booking not found", booking_id=booking_id)

    if not owns_booking(db, booking, reported_by, reported_by_type):
        raise UnauthorizedError(
            "You are not authorized to report issues on this booking",
            booking_id=booking_id,
            driver_id=booking.driver_id,
            partner_id=booking.partner_id,
        )

    assert_transition_allowed(BookingAction.REPORT_ISSUE, booking)

    reporter_name = get_display_name(db, reported_by)
    issue = BookingIssue(
        id=generate_issue_id(),
        booking_id=booking.id,
        type=issue_type,
        description=description.strip(),
        severity=severity,
        status=IssueStatus.OPEN.value,
        reported_by=reported_by,
        reported_by_type=reported_by_type,
        reported_by_name=reporter_name,
        images=list(images or []),
    )
    db.add(issue)

    vehicle_status_before = None
    if severity == IssueSeverity.CRITICAL.value and booking.vehicle_id:
        vehicle_status_before = force_maintenance(db, booking.vehicle_id, booking_id=booking.id)

    side_effects = [history_recorder.record(
        db,
        booking_id=booking.id,
        action=HistoryAction.ISSUE_REPORTED,
        performed_by=reported_by,
        performed_by_type=reported_by_type,
        description=f"{severity.capitalize()} {issue_type} issue reported by {reporter_name}",
        details={
            "issue_id": issue.id,
            "issue_type": issue_type,
            "severity": severity,
            "description": issue.description,
            "images": issue.images,
            "vehicle_id": booking.vehicle_id,
        },
    )]

    priority = (
        NotificationPriority.HIGH.value
        if severity in ESCALATED_SEVERITIES
        else NotificationPriority.MEDIUM.value
    )
    context = {
        "reporter_name": reporter_name,
        "reporter_type": reported_by_type,
        "severity": severity,
        "issue_type": issue_type,
        "description": issue.description,
    }
    data = {"issue_id": issue.id, "issue_type": issue_type, "severity": severity}
    side_effects += fan_out(
        db,
        BookingEvent.ISSUE_REPORTED,
        booking,
        context=context,
        data=data,
        reporter_type=reported_by_type,
        priority=priority,
    )
    if severity == IssueSeverity.CRITICAL.value:
        side_effects += fan_out(
            db,
            BookingEvent.CRITICAL_ISSUE,
            booking,
            context=context,
            data=dict(data, vehicle_id=booking.vehicle_id, vehicle_status_before=vehicle_status_before),
        )
    db.commit()
    logger.info(f"Issue {issue.id} ({severity} {issue_type}) reported on booking {booking_id}")

    drain_inline(db, side_effects)
    return {
        "success": True,
        "issue": issue,
        "booking_id": booking_id,
        "vehicle_maintenance_forced": vehicle_status_before is not None,
    }


def list_issues(db: Session, booking_id: str) -> List[BookingIssue]:
    if db.query(Booking.id).filter(Booking.id == booking_id).first() is None:
        raise NotFoundError("Booking not found", booking_id=booking_id)
    return db.query(BookingIssue).filter(
        BookingIssue.booking_id == booking_id
    ).order_by(BookingIssue.reported_at, BookingIssue.id).all()
