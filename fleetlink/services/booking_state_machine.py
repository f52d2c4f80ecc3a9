"""
Booking State Machine

Central authority for a booking's lifecycle status. Every operation:
1. re-reads the booking (row lock on PostgreSQL)
2. checks the caller and the transition table
3. applies the status change as a conditional update on the status it read
4. queues history and notifications in the same transaction

The transition table itself lives in ``transitions.py``.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import (
    BookingEngineError,
    InvalidStateError,
    NotFoundError,
    RequirementsNotMetError,
    UnauthorizedError,
    ValidationError,
)
from ..models.booking import Booking, BookingStatus, PaymentStatus
from ..models.booking_history import HistoryAction
from ..models.user import UserRole
from ..utils.db_helpers import acquire_row_lock, conditional_update
from ..utils.logging_config import get_logger
from . import history_recorder
from .actors import ACTOR_TYPES, SYSTEM_ACTOR, get_display_name, owns_booking
from .notification_fanout import fan_out
from .outbox_worker import drain_inline
from .payment_ledger import create_refund_instructions_for_rejection
from .recipients import BookingEvent
from .transitions import (
    PRE_ACTIVE_STATUSES,
    TRANSITIONS,
    BookingAction,
    Transition,
    assert_transition_allowed,
    target_status,
)
from .vehicle_assignment import bind_vehicle, check_vehicle_bindable, free_vehicle

logger = logging.getLogger(__name__)
audit_logger = get_logger(__name__)

__all__ = [
    "BookingAction",
    "Transition",
    "TRANSITIONS",
    "check_activation_readiness",
    "evaluate_readiness",
    "activate",
    "promote_after_first_payment",
    "respond_to_booking",
    "complete_booking",
    "cancel_booking",
    "handle_return",
    "auto_reject_expired",
]

PAYMENT_CONFIRMED_STATUSES = (
    PaymentStatus.CONFIRMED.value,
    PaymentStatus.PAID.value,
    PaymentStatus.COMPLETED.value,
)

DEFAULT_REASON = "No reason provided"
AUTO_REJECTION_REASON = "Partner acceptance deadline exceeded"


def _get_booking(db: Session, booking_id: str) -> Booking:
    booking = acquire_row_lock(db, Booking, Booking.id == booking_id)
    if booking is None:
        raise NotFoundError("Booking not found", booking_id=booking_id)
    return booking


def apply_transition(
    db: Session,
    booking: Booking,
    action: BookingAction,
    values: Optional[Dict] = None,
    to_status: Optional[str] = None,
) -> bool:
    """
    Move ``booking`` along ``action`` with a conditional update on the status
    that was read. Returns False when another request changed it first.
    Does not commit.
    """
    assert_transition_allowed(action, booking)
    new_status = to_status or target_status(action, booking.status)
    changes = dict(values or {})
    changes.update({"status": new_status, "updated_at": datetime.utcnow()})

    hit = conditional_update(
        db,
        Booking,
        and_(Booking.id == booking.id, Booking.status == booking.status),
        changes
    )
    return hit > 0


def _raise_stale(db: Session, booking_id: str, action: BookingAction):
    db.rollback()
    current = db.query(Booking).filter(Booking.id == booking_id).populate_existing().first()
    raise InvalidStateError(
        f"Booking was changed by another request before it could {action.value.replace('_', ' ')}",
        booking_id=booking_id,
        current_status=current.status if current else None,
    )


# ========== Activation ==========

def evaluate_readiness(booking: Booking) -> Dict:
    """The four activation checks and the unmet messages, in check order"""
    insurance_valid = (
        not booking.insurance_required
        or bool(booking.driver_insurance_valid)
        or bool(booking.partner_provides_insurance)
    )
    documents_approved = (
        not booking.requires_document_verification
        or bool(booking.all_documents_approved)
    )
    checks = {
        "valid_status": booking.status in PRE_ACTIVE_STATUSES,
        "payment_confirmed": booking.payment_status in PAYMENT_CONFIRMED_STATUSES,
        "insurance_valid": insurance_valid,
        "documents_approved": documents_approved,
    }

    unmet = []
    if not checks["valid_status"]:
        unmet.append(
            "Status must be partner_accepted, pending_insurance_upload, or confirmed "
            f"(current: {booking.status})"
        )
    if not checks["payment_confirmed"]:
        unmet.append(f"Payment must be confirmed (current: {booking.payment_status})")
    if not checks["insurance_valid"]:
        unmet.append("Valid insurance certificate required")
    if not checks["documents_approved"]:
        unmet.append("Document verification must be completed")

    return {"checks": checks, "unmet": unmet}


def check_activation_readiness(db: Session, booking_id: str) -> Dict:
    """
    Read-only; ``ready`` is true exactly when activate() without bypass would
    succeed.

    Besides the four requirement checks it reports ``vehicle_available``: the
    booking's vehicle must not be bound to another booking. An active booking
    is ready with nothing unmet, since activating it again is a no-op success.
    """
    booking = db.query(Booking).filter(Booking.id == booking_id).first()
    if booking is None:
        raise NotFoundError("Booking not found", booking_id=booking_id)

    already_active = booking.status == BookingStatus.ACTIVE.value
    readiness = evaluate_readiness(booking)
    checks = readiness["checks"]
    unmet = readiness["unmet"]

    if already_active:
        checks["valid_status"] = True
        checks["vehicle_available"] = True
        unmet = []
    else:
        try:
            check_vehicle_bindable(db, booking)
            checks["vehicle_available"] = True
        except BookingEngineError as e:
            checks["vehicle_available"] = False
            unmet.append(e.message)

    return {
        "booking_id": booking.id,
        "status": booking.status,
        "payment_status": booking.payment_status,
        "ready": not unmet,
        "already_active": already_active,
        "checks": checks,
        "unmet": unmet,
    }


def _already_active(booking: Booking) -> Dict:
    return {
        "success": True,
        "already_active": True,
        "booking_id": booking.id,
        "status": booking.status,
        "activated_at": booking.activated_at,
        "vehicle_id": booking.vehicle_id,
        "bypassed": bool(booking.activation_bypassed),
        "unmet": [],
    }


def activate(
    db: Session,
    booking_id: str,
    partner_id: str,
    triggered_by: str = "manual",
    bypass_requirements: bool = False,
) -> Dict:
    """
    Activate a booking and bind its vehicle.

    Calling it on an already active booking is a success, not an error.

    Raises:
        NotFoundError, UnauthorizedError,
        InvalidStateError: status not eligible, or vehicle bound elsewhere
        RequirementsNotMetError: readiness checks failed without bypass
    """
    booking = _get_booking(db, booking_id)

    if booking.partner_id != partner_id:
        raise UnauthorizedError(
            "Only the booking's partner can activate it",
            booking_id=booking_id,
            partner_id=booking.partner_id,
        )

    if booking.status == BookingStatus.ACTIVE.value:
        logger.info(f"Booking {booking_id} already active, nothing to do")
        return _already_active(booking)

    assert_transition_allowed(BookingAction.ACTIVATE, booking)

    readiness = evaluate_readiness(booking)
    if readiness["unmet"] and not bypass_requirements:
        raise RequirementsNotMetError(
            "Booking is not ready for activation",
            unmet=readiness["unmet"],
            booking_id=booking_id,
            current_status=booking.status,
            checks=readiness["checks"],
        )

    check_vehicle_bindable(db, booking)

    old_status = booking.status
    now = datetime.utcnow()
    hit = apply_transition(db, booking, BookingAction.ACTIVATE, {
        "activated_at": now,
        "activated_by": partner_id,
        "activated_by_type": UserRole.PARTNER.value,
        "activation_trigger": triggered_by,
        "activation_bypassed": bool(bypass_requirements),
    })
    if not hit:
        db.rollback()
        current = _get_booking(db, booking_id)
        if current.status == BookingStatus.ACTIVE.value:
            return _already_active(current)
        _raise_stale(db, booking_id, BookingAction.ACTIVATE)

    try:
        vehicle = bind_vehicle(db, booking, now)
    except BookingEngineError:
        db.rollback()
        raise

    partner_name = get_display_name(db, partner_id)
    bypassed = bool(bypass_requirements and readiness["unmet"])
    if bypass_requirements:
        description = "Booking force activated by partner (requirements bypassed)."
    else:
        description = "Booking activated by partner. Vehicle ready for collection."

    side_effects = [history_recorder.record(
        db,
        booking_id=booking.id,
        action=HistoryAction.BOOKING_ACTIVATED,
        performed_by=partner_id,
        performed_by_type=UserRole.PARTNER.value,
        description=description,
        details={
            "triggered_by": triggered_by,
            "bypass_requirements": bool(bypass_requirements),
            "bypassed_requirements": readiness["unmet"] if bypass_requirements else [],
            "ready_for_collection": True,
            "previous_status": old_status,
            "vehicle_id": vehicle.id if vehicle else None,
        },
        idempotency_key=f"activate:{booking.id}",
    )]
    side_effects += fan_out(
        db,
        BookingEvent.BOOKING_ACTIVATED,
        booking,
        context={
            "partner_name": partner_name,
            "vehicle_reg": (vehicle.registration_number if vehicle else None) or booking.vehicle_reg,
            "bypass_note": " Requirements were bypassed." if bypass_requirements else "",
        },
        data={"bypass_requirements": bool(bypass_requirements), "triggered_by": triggered_by},
        idempotency_key=f"activate:{booking.id}",
    )
    db.commit()
    audit_logger.booking_status_changed(booking_id, old_status, BookingStatus.ACTIVE.value, "activate")

    drain_inline(db, side_effects)
    return {
        "success": True,
        "already_active": False,
        "booking_id": booking_id,
        "status": BookingStatus.ACTIVE.value,
        "activated_at": now,
        "vehicle_id": vehicle.id if vehicle else None,
        "bypassed": bypassed,
        "unmet": readiness["unmet"] if bypass_requirements else [],
    }


# ========== Payment-driven promotion ==========

def promote_after_first_payment(
    db: Session,
    booking_id: str,
    instruction_id: Optional[str],
    driver_id: Optional[str],
    commit: bool = True,
) -> bool:
    """
    pending_payment -> pending_partner_approval, starting the partner's
    acceptance window.

    Idempotent: returns False without writing when the booking has already
    left pending_payment. With ``commit=False`` the caller owns the
    transaction (outbox worker).
    """
    booking = acquire_row_lock(db, Booking, Booking.id == booking_id)
    if booking is None:
        logger.warning(f"Cannot promote booking {booking_id}: not found")
        return False
    if booking.status != BookingStatus.PENDING_PAYMENT.value:
        return False

    deadline = datetime.utcnow() + timedelta(hours=settings.partner_acceptance_window_hours)
    if not apply_transition(db, booking, BookingAction.PROMOTE_AFTER_PAYMENT, {
        "partner_acceptance_deadline": deadline,
    }):
        return False

    side_effects = [history_recorder.record(
        db,
        booking_id=booking_id,
        action=HistoryAction.FIRST_PAYMENT_SENT,
        performed_by=driver_id,
        performed_by_type=UserRole.DRIVER.value,
        description="First payment sent by driver. Awaiting partner approval.",
        details={"instruction_id": instruction_id, "partner_acceptance_deadline": deadline},
        idempotency_key=f"first_payment:{booking_id}",
    )]
    side_effects += fan_out(
        db,
        BookingEvent.FIRST_PAYMENT_SENT,
        booking,
        data={"instruction_id": instruction_id, "partner_acceptance_deadline": deadline},
        idempotency_key=f"new_booking:{booking_id}",
    )

    if commit:
        db.commit()
        drain_inline(db, side_effects)
    audit_logger.booking_status_changed(
        booking_id,
        BookingStatus.PENDING_PAYMENT.value,
        BookingStatus.PENDING_PARTNER_APPROVAL.value,
        "promote_after_payment",
    )
    return True


# ========== Partner response ==========

def respond_to_booking(
    db: Session,
    booking_id: str,
    partner_id: str,
    accept: bool,
    rejection_reason: Optional[str] = None,
    override_insurance: bool = False,
) -> Dict:
    """
    Partner accepts or rejects a booking awaiting approval.

    Accepting lands in pending_insurance_upload while insurance is still
    outstanding. Rejecting frees the vehicle and queues refunds.
    """
    booking = _get_booking(db, booking_id)

    if booking.partner_id != partner_id:
        raise UnauthorizedError(
            "You are not authorized to respond to this booking",
            booking_id=booking_id,
            partner_id=booking.partner_id,
        )

    action = BookingAction.PARTNER_ACCEPT if accept else BookingAction.PARTNER_REJECT
    assert_transition_allowed(action, booking)

    old_status = booking.status
    partner_name = get_display_name(db, partner_id)
    now = datetime.utcnow()
    refunds = []

    if accept:
        insurance_ok = (
            not booking.insurance_required
            or override_insurance
            or bool(booking.driver_insurance_valid)
            or bool(booking.partner_provides_insurance)
        )
        new_status = (
            BookingStatus.PARTNER_ACCEPTED.value
            if insurance_ok
            else BookingStatus.PENDING_INSURANCE_UPLOAD.value
        )
        values = {"partner_accepted_at": now}
        if override_insurance:
            values["driver_insurance_valid"] = True
        if not apply_transition(db, booking, action, values, to_status=new_status):
            _raise_stale(db, booking_id, action)

        if new_status == BookingStatus.PARTNER_ACCEPTED.value:
            next_step = "The vehicle will be handed over once the partner activates the booking."
        else:
            next_step = "Please upload a valid insurance certificate to continue."

        side_effects = [history_recorder.record(
            db,
            booking_id=booking_id,
            action=HistoryAction.PARTNER_ACCEPTED,
            performed_by=partner_id,
            performed_by_type=UserRole.PARTNER.value,
            description=f"Booking accepted by {partner_name}",
            details={"new_status": new_status, "insurance_override": bool(override_insurance)},
        )]
        side_effects += fan_out(
            db,
            BookingEvent.PARTNER_ACCEPTED,
            booking,
            context={"partner_name": partner_name, "next_step": next_step, "new_status": new_status},
            data={"new_status": new_status},
        )
    else:
        reason = (rejection_reason or "").strip() or DEFAULT_REASON
        new_status = BookingStatus.PARTNER_REJECTED.value
        if not apply_transition(db, booking, action, {
            "partner_rejected_at": now,
            "rejection_reason": reason,
        }):
            _raise_stale(db, booking_id, action)

        free_vehicle(db, booking, partner_id, UserRole.PARTNER.value, reason, now)
        refunds = create_refund_instructions_for_rejection(db, booking)

        side_effects = [history_recorder.record(
            db,
            booking_id=booking_id,
            action=HistoryAction.PARTNER_REJECTED,
            performed_by=partner_id,
            performed_by_type=UserRole.PARTNER.value,
            description=f"Booking rejected by {partner_name}: {reason}",
            details={
                "reason": reason,
                "refund_instruction_ids": [r.id for r in refunds],
                "refund_total": sum(r.amount for r in refunds),
            },
        )]
        side_effects += fan_out(
            db,
            BookingEvent.PARTNER_REJECTED,
            booking,
            context={"partner_name": partner_name, "reason": reason},
            data={"reason": reason, "refund_instruction_ids": [r.id for r in refunds]},
        )

    db.commit()
    audit_logger.booking_status_changed(booking_id, old_status, new_status, action.value)

    drain_inline(db, side_effects)
    return {
        "success": True,
        "booking_id": booking_id,
        "status": new_status,
        "accepted": bool(accept),
        "refund_instruction_ids": [r.id for r in refunds],
    }


# ========== Termination ==========

def _terminate(
    db: Session,
    booking_id: str,
    actor_id: str,
    actor_type: str,
    action: BookingAction,
    event: str,
    history_action: HistoryAction,
    values: Dict,
    reason: Optional[str] = None,
) -> Dict:
    if actor_type not in ACTOR_TYPES:
        raise ValidationError(
            f"Invalid actor type. Must be one of: {', '.join(ACTOR_TYPES)}",
            actor_type=actor_type,
        )

    booking = _get_booking(db, booking_id)

    # Drivers may only cancel; the partner and the operator can also complete
    allowed = owns_booking(db, booking, actor_id, actor_type)
    if actor_type == UserRole.DRIVER.value and action != BookingAction.CANCEL:
        allowed = False
    if not allowed:
        raise UnauthorizedError(
            f"You are not authorized to {action.value} this booking",
            booking_id=booking_id,
            partner_id=booking.partner_id,
        )

    assert_transition_allowed(action, booking)

    old_status = booking.status
    now = datetime.utcnow()
    if not apply_transition(db, booking, action, values):
        _raise_stale(db, booking_id, action)

    vehicle_freed = free_vehicle(db, booking, actor_id, actor_type, reason, now)

    performer_name = get_display_name(db, actor_id)
    verb = "completed" if action == BookingAction.COMPLETE else "cancelled"
    description = f"Booking {verb} by {performer_name}"
    if reason:
        description += f": {reason}"

    side_effects = [history_recorder.record(
        db,
        booking_id=booking_id,
        action=history_action,
        performed_by=actor_id,
        performed_by_type=actor_type,
        description=description,
        details={"previous_status": old_status, "reason": reason, "vehicle_freed": vehicle_freed},
    )]
    side_effects += fan_out(
        db,
        event,
        booking,
        context={
            "performer_name": performer_name,
            "performer_type": actor_type,
            "reason": reason or DEFAULT_REASON,
        },
        data={"previous_status": old_status, "performed_by_type": actor_type},
    )
    db.commit()
    new_status = target_status(action, old_status)
    audit_logger.booking_status_changed(booking_id, old_status, new_status, action.value)

    drain_inline(db, side_effects)
    return {
        "success": True,
        "booking_id": booking_id,
        "status": new_status,
        "previous_status": old_status,
        "vehicle_freed": vehicle_freed,
    }


def complete_booking(db: Session, booking_id: str, actor_id: str, actor_type: str) -> Dict:
    return _terminate(
        db, booking_id, actor_id, actor_type,
        BookingAction.COMPLETE,
        BookingEvent.BOOKING_COMPLETED,
        HistoryAction.BOOKING_COMPLETED,
        {"completed_at": datetime.utcnow()},
    )


def cancel_booking(
    db: Session,
    booking_id: str,
    actor_id: str,
    actor_type: str,
    reason: Optional[str] = None,
) -> Dict:
    reason = (reason or "").strip() or DEFAULT_REASON
    return _terminate(
        db, booking_id, actor_id, actor_type,
        BookingAction.CANCEL,
        BookingEvent.BOOKING_CANCELLED,
        HistoryAction.BOOKING_CANCELLED,
        {"cancelled_at": datetime.utcnow(), "cancellation_reason": reason},
        reason=reason,
    )


# ========== Returns ==========

# action -> (transition, history action, event)
RETURN_STEPS = {
    "request": (BookingAction.REQUEST_RETURN, HistoryAction.RETURN_REQUESTED, BookingEvent.RETURN_REQUESTED),
    "approve": (BookingAction.APPROVE_RETURN, HistoryAction.RETURN_APPROVED, BookingEvent.RETURN_APPROVED),
    "reject": (BookingAction.REJECT_RETURN, HistoryAction.RETURN_REJECTED, BookingEvent.RETURN_REJECTED),
}


def handle_return(
    db: Session,
    booking_id: str,
    actor_id: str,
    actor_type: str,
    action: str = "request",
    reason: Optional[str] = None,
) -> Dict:
    """
    Early return of a vehicle: one party requests it, the other party (or an
    operator) approves or rejects it.

    Approving completes the booking and frees its vehicle. Rejecting clears
    the request so a new one can be made.

    Raises:
        ValidationError: unknown action or actor type
        NotFoundError, UnauthorizedError,
        InvalidStateError: booking status, no open request, or one already open
    """
    if action not in RETURN_STEPS:
        raise ValidationError(
            f"Invalid action. Must be one of: {', '.join(RETURN_STEPS)}",
            action=action,
        )
    if actor_type not in ACTOR_TYPES:
        raise ValidationError(
            f"Invalid actor type. Must be one of: {', '.join(ACTOR_TYPES)}",
            actor_type=actor_type,
        )

    booking = _get_booking(db, booking_id)
    if not owns_booking(db, booking, actor_id, actor_type):
        raise UnauthorizedError(
            "You are not authorized to manage the return of this booking",
            booking_id=booking_id,
        )

    transition_action, history_action, event = RETURN_STEPS[action]
    assert_transition_allowed(transition_action, booking)

    if action == "request" and booking.return_requested:
        raise InvalidStateError("A return has already been requested", booking_id=booking_id)
    if action != "request":
        if not booking.return_requested:
            raise InvalidStateError("No return request to respond to", booking_id=booking_id)
        # Only an operator may answer its own side's request
        if actor_type == booking.return_requested_by_type and actor_type != UserRole.PLATFORM_OPERATOR.value:
            raise UnauthorizedError(
                "The other party must respond to this return request",
                booking_id=booking_id,
                requested_by_type=booking.return_requested_by_type,
            )

    old_status = booking.status
    now = datetime.utcnow()
    performer_name = get_display_name(db, actor_id)
    reason = (reason or "").strip() or None

    if action == "request":
        values = {
            "return_requested": True,
            "return_requested_at": now,
            "return_requested_by": actor_id,
            "return_requested_by_type": actor_type,
            "return_reason": reason or DEFAULT_REASON,
        }
        description = f"Return requested by {performer_name}"
        if reason:
            description += f": {reason}"
    elif action == "approve":
        values = {
            "return_approved_at": now,
            "return_approved_by": actor_id,
            "return_approved_by_type": actor_type,
            "completed_at": now,
        }
        description = f"Return approved by {performer_name}. Booking completed."
    else:
        values = {
            "return_requested": False,
            "return_rejected_at": now,
            "return_rejected_by": actor_id,
            "return_rejected_by_type": actor_type,
            "return_rejection_reason": reason or DEFAULT_REASON,
        }
        description = f"Return rejected by {performer_name}"
        if reason:
            description += f": {reason}"

    # The request flag is part of the guard so two answers cannot both win
    if action == "request":
        request_guard = Booking.return_requested.isnot(True)
    else:
        request_guard = Booking.return_requested.is_(True)
    hit = conditional_update(
        db,
        Booking,
        and_(
            Booking.id == booking_id,
            Booking.status == old_status,
            request_guard,
        ),
        dict(values, status=target_status(transition_action, old_status), updated_at=now),
    )
    if not hit:
        _raise_stale(db, booking_id, transition_action)

    vehicle_freed = False
    if action == "approve":
        vehicle_freed = free_vehicle(db, booking, actor_id, actor_type, booking.return_reason, now)

    new_status = target_status(transition_action, old_status)
    side_effects = [history_recorder.record(
        db,
        booking_id=booking_id,
        action=history_action,
        performed_by=actor_id,
        performed_by_type=actor_type,
        description=description,
        details={"reason": reason, "previous_status": old_status, "vehicle_freed": vehicle_freed},
    )]
    side_effects += fan_out(
        db,
        event,
        booking,
        context={
            "performer_name": performer_name,
            "performer_type": actor_type,
            "reason": reason or DEFAULT_REASON,
        },
        data={"action": action, "performed_by_type": actor_type},
        reporter_type=actor_type,
    )
    db.commit()
    if new_status != old_status:
        audit_logger.booking_status_changed(booking_id, old_status, new_status, transition_action.value)
    else:
        logger.info(f"Booking {booking_id}: return {action} by {actor_type} {actor_id}")

    drain_inline(db, side_effects)
    return {
        "success": True,
        "booking_id": booking_id,
        "action": action,
        "status": new_status,
        "return_requested": action == "request",
        "vehicle_freed": vehicle_freed,
    }


# ========== Deadline sweep ==========

def auto_reject_expired(db: Session, now: Optional[datetime] = None) -> List[str]:
    """
    Auto-reject bookings whose partner acceptance deadline has passed.

    Each booking is handled in its own transaction; one that moved on in the
    meantime is skipped. Returns the ids that were rejected.
    """
    now = now or datetime.utcnow()
    expired_ids = [row[0] for row in db.query(Booking.id).filter(
        Booking.status == BookingStatus.PENDING_PARTNER_APPROVAL.value,
        Booking.partner_acceptance_deadline.isnot(None),
        Booking.partner_acceptance_deadline < now,
    ).order_by(Booking.partner_acceptance_deadline).all()]

    rejected = []
    for booking_id in expired_ids:
        booking = acquire_row_lock(db, Booking, Booking.id == booking_id)
        if booking is None or booking.status != BookingStatus.PENDING_PARTNER_APPROVAL.value:
            db.rollback()
            continue

        if not apply_transition(db, booking, BookingAction.AUTO_REJECT, {
            "auto_rejected_at": now,
            "auto_rejection_reason": AUTO_REJECTION_REASON,
        }):
            db.rollback()
            continue

        free_vehicle(db, booking, SYSTEM_ACTOR, SYSTEM_ACTOR, AUTO_REJECTION_REASON, now)
        refunds = create_refund_instructions_for_rejection(db, booking)

        side_effects = [history_recorder.record(
            db,
            booking_id=booking_id,
            action=HistoryAction.BOOKING_AUTO_REJECTED,
            performed_by=SYSTEM_ACTOR,
            performed_by_type=SYSTEM_ACTOR,
            description=f"Booking auto-rejected: {AUTO_REJECTION_REASON}",
            details={
                "deadline": booking.partner_acceptance_deadline,
                "rejected_at": now,
                "refund_instruction_ids": [r.id for r in refunds],
            },
            idempotency_key=f"auto_reject:{booking_id}",
        )]
        side_effects += fan_out(
            db,
            BookingEvent.BOOKING_AUTO_REJECTED,
            booking,
            context={"reason": AUTO_REJECTION_REASON},
            data={"reason": AUTO_REJECTION_REASON},
            idempotency_key=f"auto_reject:{booking_id}",
        )
        db.commit()
        audit_logger.booking_status_changed(
            booking_id,
            BookingStatus.PENDING_PARTNER_APPROVAL.value,
            BookingStatus.AUTO_REJECTED.value,
            "auto_reject",
        )
        drain_inline(db, side_effects)
        rejected.append(booking_id)

    if rejected:
        logger.info(f"Auto-rejected {len(rejected)} bookings past their acceptance deadline")
    return rejected