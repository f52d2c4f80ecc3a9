"""
Booking transition table.

Every lifecycle action a booking can go through is listed once here with the
statuses it may start from and the status it leads to. Entry points look up
their action instead of carrying their own precondition lists.
"""

import enum
from typing import FrozenSet, NamedTuple, Optional

from ..exceptions import InvalidStateError
from ..models.booking import BookingStatus

S = BookingStatus


class BookingAction(str, enum.Enum):
    PROMOTE_AFTER_PAYMENT = "promote_after_payment"
    PARTNER_ACCEPT = "partner_accept"
    PARTNER_REJECT = "partner_reject"
    AUTO_REJECT = "auto_reject"
    ACTIVATE = "activate"
    COMPLETE = "complete"
    CANCEL = "cancel"
    RELEASE_VEHICLE = "release_vehicle"
    REPORT_ISSUE = "report_issue"
    CHANGE_VEHICLE = "change_vehicle"
    REQUEST_RETURN = "request_return"
    APPROVE_RETURN = "approve_return"
    REJECT_RETURN = "reject_return"


class Transition(NamedTuple):
    allowed_from: Optional[FrozenSet[str]]  # None: any status
    to_status: Optional[str]                # None: status unchanged


def _statuses(*statuses: BookingStatus) -> FrozenSet[str]:
    return frozenset(s.value for s in statuses)


PRE_ACTIVE_STATUSES = _statuses(S.PARTNER_ACCEPTED, S.PENDING_INSURANCE_UPLOAD, S.CONFIRMED)
RETURNABLE_STATUSES = _statuses(S.PARTNER_ACCEPTED, S.ACTIVE, S.IN_PROGRESS)

TRANSITIONS = {
    BookingAction.PROMOTE_AFTER_PAYMENT: Transition(
        _statuses(S.PENDING_PAYMENT), S.PENDING_PARTNER_APPROVAL.value
    ),
    # pending_insurance_upload instead when insurance is still outstanding
    BookingAction.PARTNER_ACCEPT: Transition(
        _statuses(S.PENDING_PARTNER_APPROVAL), S.PARTNER_ACCEPTED.value
    ),
    BookingAction.PARTNER_REJECT: Transition(
        _statuses(S.PENDING_PARTNER_APPROVAL), S.PARTNER_REJECTED.value
    ),
    BookingAction.AUTO_REJECT: Transition(
        _statuses(S.PENDING_PARTNER_APPROVAL), S.AUTO_REJECTED.value
    ),
    BookingAction.ACTIVATE: Transition(PRE_ACTIVE_STATUSES, S.ACTIVE.value),
    BookingAction.COMPLETE: Transition(_statuses(S.ACTIVE, S.IN_PROGRESS), S.COMPLETED.value),
    BookingAction.CANCEL: Transition(
        _statuses(S.PENDING_PAYMENT, S.PENDING_PARTNER_APPROVAL) | PRE_ACTIVE_STATUSES,
        S.CANCELLED.value,
    ),
    BookingAction.RELEASE_VEHICLE: Transition(
        _statuses(S.ACTIVE, S.IN_PROGRESS, S.PARTNER_ACCEPTED, S.PENDING_INSURANCE_UPLOAD), None
    ),
    BookingAction.REPORT_ISSUE: Transition(None, None),
    BookingAction.CHANGE_VEHICLE: Transition(PRE_ACTIVE_STATUSES | _statuses(S.ACTIVE), None),
    BookingAction.REQUEST_RETURN: Transition(RETURNABLE_STATUSES, None),
    BookingAction.APPROVE_RETURN: Transition(RETURNABLE_STATUSES, S.COMPLETED.value),
    BookingAction.REJECT_RETURN: Transition(RETURNABLE_STATUSES, None),
}

_ACTION_LABELS = {
    BookingAction.PROMOTE_AFTER_PAYMENT: "promote",
    BookingAction.PARTNER_ACCEPT: "accept",
    BookingAction.PARTNER_REJECT: "reject",
    BookingAction.AUTO_REJECT: "auto-reject",
    BookingAction.ACTIVATE: "activate",
    BookingAction.COMPLETE: "complete",
    BookingAction.CANCEL: "cancel",
    BookingAction.RELEASE_VEHICLE: "release vehicle for",
    BookingAction.REPORT_ISSUE: "report issue on",
    BookingAction.CHANGE_VEHICLE: "change vehicle for",
    BookingAction.REQUEST_RETURN: "request return for",
    BookingAction.APPROVE_RETURN: "approve return for",
    BookingAction.REJECT_RETURN: "reject return for",
}


def is_allowed(action: BookingAction, status: str) -> bool:
    transition = TRANSITIONS[action]
    return transition.allowed_from is None or status in transition.allowed_from


def target_status(action: BookingAction, current_status: str) -> str:
    return TRANSITIONS[action].to_status or current_status


def assert_transition_allowed(action: BookingAction, booking) -> Transition:
    """
    Raises:
        InvalidStateError: booking.status is not a source status of ``action``
    """
    transition = TRANSITIONS[action]
    if not is_allowed(action, booking.status):
        raise InvalidStateError(
            f"Cannot {_ACTION_LABELS[action]} booking with status: {booking.status}",
            booking_id=booking.id,
            current_status=booking.status,
            allowed_statuses=sorted(transition.allowed_from),
        )
    return transition
