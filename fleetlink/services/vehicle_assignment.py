"""
Vehicle Assignment Service

Owns the exclusive binding between a booking and a vehicle:
- bind on activation (vehicle booked, current_booking_id set)
- release by driver / partner / operator
- free on rejection, completion or cancellation
- forced maintenance on critical issues
- vehicle change by the partner, settling the rate difference

A vehicle is only ever touched through a conditional update that checks it
is free or bound to the same booking, so a vehicle bound to another booking
is never overwritten.
"""

import logging
import math
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import (
    InvalidStateError,
    NoVehicleBoundError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from ..models.booking import Booking, BookingStatus
from ..models.booking_history import HistoryAction
from ..models.user import UserRole
from ..models.vehicle import Vehicle, VehicleStatus
from ..utils.db_helpers import acquire_row_lock, conditional_update
from ..utils.logging_config import get_logger
from . import history_recorder
from .actors import ACTOR_TYPES, get_display_name, owns_booking
from .notification_fanout import fan_out, format_amount
from .outbox_worker import drain_inline
from .payment_ledger import create_adjustment_instruction, paid_rent_total, reprice_weekly_instructions
from .recipients import BookingEvent
from .transitions import BookingAction, assert_transition_allowed

logger = logging.getLogger(__name__)
audit_logger = get_logger(__name__)

DEFAULT_RELEASE_REASON = "No reason provided"


def _bound_to(booking_id: str):
    return or_(Vehicle.current_booking_id.is_(None), Vehicle.current_booking_id == booking_id)


def bind_vehicle(db: Session, booking: Booking, now: Optional[datetime] = None) -> Optional[Vehicle]:
    """
    Bind the booking's vehicle to it. Part of the caller's transaction.

    Returns None when the booking has no vehicle assigned.

    Raises:
        NotFoundError: vehicle row missing
        InvalidStateError: vehicle bound to another booking
    """
    if not booking.vehicle_id:
        logger.warning(f"Booking {booking.id} has no vehicle to bind")
        return None

    now = now or datetime.utcnow()
    hit = conditional_update(
        db,
        Vehicle,
        and_(Vehicle.id == booking.vehicle_id, _bound_to(booking.id)),
        {
            "status": VehicleStatus.BOOKED.value,
            "current_booking_id": booking.id,
            "active_booking_started": now,
            "updated_at": now,
        }
    )
    vehicle = acquire_row_lock(db, Vehicle, Vehicle.id == booking.vehicle_id)
    if vehicle is None:
        raise NotFoundError("Vehicle not found", vehicle_id=booking.vehicle_id, booking_id=booking.id)
    if not hit:
        raise InvalidStateError(
            "Vehicle is bound to another booking",
            vehicle_id=vehicle.id,
            booking_id=booking.id,
            bound_booking_id=vehicle.current_booking_id,
        )
    return vehicle


def check_vehicle_bindable(db: Session, booking: Booking) -> None:
    """Read-only pre-check used before any activation write"""
    if not booking.vehicle_id:
        return
    vehicle = db.query(Vehicle).filter(Vehicle.id == booking.vehicle_id).first()
    if vehicle is None:
        raise NotFoundError("Vehicle not found", vehicle_id=booking.vehicle_id, booking_id=booking.id)
    if vehicle.current_booking_id and vehicle.current_booking_id != booking.id:
        raise InvalidStateError(
            "Vehicle is bound to another booking",
            vehicle_id=vehicle.id,
            booking_id=booking.id,
            bound_booking_id=vehicle.current_booking_id,
        )


def free_vehicle(
    db: Session,
    booking: Booking,
    released_by: Optional[str] = None,
    released_by_type: Optional[str] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    vehicle_id: Optional[str] = None,
    bound_only: bool = True,
) -> bool:
    """
    Put the booking's vehicle back to available. Part of the caller's
    transaction.

    With ``bound_only`` the vehicle must be bound to this booking; otherwise
    an unbound vehicle is also made available (explicit release).

    ``vehicle_id`` overrides booking.vehicle_id for callers that already
    cleared the booking side.

    Returns False when there is nothing to free or the vehicle belongs to
    another booking.
    """
    vehicle_id = vehicle_id or booking.vehicle_id
    if not vehicle_id:
        return False

    now = now or datetime.utcnow()
    hit = conditional_update(
        db,
        Vehicle,
        and_(
            Vehicle.id == vehicle_id,
            Vehicle.current_booking_id == booking.id if bound_only else _bound_to(booking.id),
        ),
        {
            "status": VehicleStatus.AVAILABLE.value,
            "current_booking_id": None,
            "active_booking_started": None,
            "released_at": now,
            "released_by": released_by,
            "released_by_type": released_by_type,
            "release_reason": reason,
            "updated_at": now,
        }
    )
    if not hit:
        logger.info(f"Vehicle {vehicle_id} left as is, not bound to booking {booking.id}")
    return bool(hit)


def force_maintenance(db: Session, vehicle_id: str, booking_id: Optional[str] = None) -> Optional[str]:
    """
    Set a vehicle to maintenance_required whatever its current status.
    Part of the caller's transaction. Returns the previous status.

    With ``booking_id`` the vehicle is only touched while it is unbound or
    bound to that booking; None is returned when it is left alone.
    """
    vehicle = acquire_row_lock(db, Vehicle, Vehicle.id == vehicle_id)
    if vehicle is None:
        logger.warning(f"Cannot force maintenance, vehicle {vehicle_id} not found")
        return None
    if booking_id and vehicle.current_booking_id and vehicle.current_booking_id != booking_id:
        logger.info(
            f"Vehicle {vehicle_id} left as is, bound to booking {vehicle.current_booking_id} not {booking_id}"
        )
        return None
    previous = vehicle.status
    vehicle.status = VehicleStatus.MAINTENANCE_REQUIRED.value
    vehicle.updated_at = datetime.utcnow()
    logger.info(f"Vehicle {vehicle_id} forced to maintenance_required (was {previous})")
    return previous


def release_vehicle(
    db: Session,
    booking_id: str,
    released_by: str,
    released_by_type: str,
    reason: Optional[str] = None,
) -> Dict:
    """
    Release the vehicle bound to a booking.

    Order of writes: booking (with queued history and notifications), then
    vehicle. A failed vehicle write is logged and reported back in the result
    but does not fail the release; the booking row is authoritative.
    """
    if released_by_type not in ACTOR_TYPES:
        raise ValidationError(
            f"Invalid releasedByType. Must be one of: {', '.join(ACTOR_TYPES)}",
            released_by_type=released_by_type,
        )

    booking = acquire_row_lock(db, Booking, Booking.id == booking_id)
    if booking is None:
        raise NotFoundError("Booking not found", booking_id=booking_id)

    if not owns_booking(db, booking, released_by, released_by_type):
        raise UnauthorizedError(
            "You are not authorized to release this vehicle",
            booking_id=booking_id,
            driver_id=booking.driver_id,
            partner_id=booking.partner_id,
        )

    assert_transition_allowed(BookingAction.RELEASE_VEHICLE, booking)

    vehicle_id = booking.vehicle_id
    if not vehicle_id:
        raise NoVehicleBoundError("No vehicle is currently bound to this booking", booking_id=booking_id)

    vehicle = db.query(Vehicle).filter(Vehicle.id == vehicle_id).first()
    if vehicle is None:
        raise NotFoundError("Vehicle not found", vehicle_id=vehicle_id, booking_id=booking_id)

    reason = (reason or "").strip() or DEFAULT_RELEASE_REASON
    performer_name = get_display_name(db, released_by)
    vehicle_reg = vehicle.registration_number or booking.vehicle_reg or "UNKNOWN"
    now = datetime.utcnow()

    # ========== Booking ==========
    booking.vehicle_id = None
    booking.vehicle_released_at = now
    booking.vehicle_released_by = released_by
    booking.vehicle_released_by_type = released_by_type
    booking.vehicle_release_reason = reason

    description = f"Vehicle released by {performer_name}"
    if reason != DEFAULT_RELEASE_REASON:
        description += f": {reason}"

    side_effects = [history_recorder.record(
        db,
        booking_id=booking.id,
        action=HistoryAction.VEHICLE_RELEASED,
        performed_by=released_by,
        performed_by_type=released_by_type,
        description=description,
        details={
            "vehicle_id": vehicle_id,
            "vehicle_reg": vehicle_reg,
            "reason": reason,
            "released_at": now,
            "performer_name": performer_name,
        },
    )]
    side_effects += fan_out(
        db,
        BookingEvent.VEHICLE_RELEASED,
        booking,
        context={
            "vehicle_reg": vehicle_reg,
            "performer_name": performer_name,
            "performer_type": released_by_type,
            "reason": reason,
        },
        data={"vehicle_id": vehicle_id, "reason": reason, "released_by_type": released_by_type},
    )
    db.commit()
    logger.info(f"Booking {booking_id}: vehicle {vehicle_id} released by {released_by_type} {released_by}")

    # ========== Vehicle ==========
    vehicle_updated = False
    try:
        vehicle_updated = free_vehicle(
            db, booking, released_by, released_by_type, reason, now,
            vehicle_id=vehicle_id, bound_only=False,
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        vehicle_updated = False
        audit_logger.inconsistency(
            f"booking {booking_id} released but vehicle {vehicle_id} update failed: {e}",
            entity_type="vehicle",
            entity_id=vehicle_id,
            booking_id=booking_id,
        )
    else:
        if not vehicle_updated:
            audit_logger.inconsistency(
                f"booking {booking_id} released but vehicle {vehicle_id} was bound elsewhere",
                entity_type="vehicle",
                entity_id=vehicle_id,
                booking_id=booking_id,
            )

    drain_inline(db, side_effects)

    return {
        "success": True,
        "booking_id": booking_id,
        "vehicle_id": vehicle_id,
        "booking_status": booking.status,
        "released_at": now,
        "released_by": released_by,
        "released_by_type": released_by_type,
        "reason": reason,
        "vehicle_status": VehicleStatus.AVAILABLE.value if vehicle_updated else None,
        "vehicle_updated": vehicle_updated,
    }


# ========== Vehicle change ==========

ADJUSTMENT_TYPES = ("prorated", "immediate", "next_cycle")

DAYS_PER_WEEK = 7


def _vehicle_label(vehicle: Optional[Vehicle]) -> str:
    if vehicle is None:
        return "no vehicle"
    return " ".join(part for part in (vehicle.make, vehicle.model) if part) or vehicle.registration_number or "vehicle"


def rate_adjustment(
    old_rate: Decimal,
    new_rate: Decimal,
    paid: Decimal,
    days_used: int,
    adjustment_type: str,
) -> Tuple[Decimal, int]:
    """
    Amount owed for switching rates mid-booking and the paid days it covers.

    Paid days are the days the confirmed payments bought at the old rate;
    prorated charges the weekly difference for the unused ones, immediate a
    full week, next_cycle nothing.
    """
    remaining_days = 0
    if old_rate > 0:
        paid_days = math.ceil(paid * DAYS_PER_WEEK / old_rate)
        remaining_days = max(0, paid_days - days_used)

    difference = new_rate - old_rate
    if adjustment_type == "immediate":
        amount = difference
    elif adjustment_type == "prorated":
        amount = difference * remaining_days / DAYS_PER_WEEK
    else:
        amount = Decimal("0")
    return amount.quantize(Decimal("0.01")), remaining_days


def change_vehicle(
    db: Session,
    booking_id: str,
    partner_id: str,
    new_vehicle_id: str,
    reason: str,
    adjustment_type: str = "prorated",
) -> Dict:
    """
    Partner swaps the vehicle of a booking for another of its fleet.

    An active booking hands its binding over to the new vehicle; before
    activation only the booking's vehicle changes. The weekly rate follows the
    new vehicle and the difference for already paid days is settled with a
    one-off adjustment (driver owes) or refund (partner owes) instruction.

    Raises:
        ValidationError: missing reason, unknown adjustment type, same vehicle
        NotFoundError: booking or vehicle missing
        UnauthorizedError: not the booking's partner, or not their vehicle
        InvalidStateError: booking status, or the vehicle is not available
    """
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required to change the vehicle", booking_id=booking_id)
    if adjustment_type not in ADJUSTMENT_TYPES:
        raise ValidationError(
            f"Invalid adjustment type. Must be one of: {', '.join(ADJUSTMENT_TYPES)}",
            adjustment_type=adjustment_type,
        )

    booking = acquire_row_lock(db, Booking, Booking.id == booking_id)
    if booking is None:
        raise NotFoundError("Booking not found", booking_id=booking_id)
    if booking.partner_id != partner_id:
        raise UnauthorizedError(
            "You are not authorized to change the vehicle of this booking",
            booking_id=booking_id,
            partner_id=booking.partner_id,
        )

    assert_transition_allowed(BookingAction.CHANGE_VEHICLE, booking)

    old_vehicle_id = booking.vehicle_id
    if new_vehicle_id == old_vehicle_id:
        raise ValidationError("The booking already uses this vehicle", vehicle_id=new_vehicle_id)

    new_vehicle = db.query(Vehicle).filter(Vehicle.id == new_vehicle_id).first()
    if new_vehicle is None:
        raise NotFoundError("Vehicle not found", vehicle_id=new_vehicle_id)
    if new_vehicle.partner_id != partner_id:
        raise UnauthorizedError("Vehicle does not belong to this partner", vehicle_id=new_vehicle_id)
    if new_vehicle.status != VehicleStatus.AVAILABLE.value or new_vehicle.current_booking_id:
        raise InvalidStateError(
            "Selected vehicle is not available",
            vehicle_id=new_vehicle_id,
            vehicle_status=new_vehicle.status,
        )

    old_vehicle = None
    if old_vehicle_id:
        old_vehicle = db.query(Vehicle).filter(Vehicle.id == old_vehicle_id).first()

    now = datetime.utcnow()
    old_rate = Decimal(str(booking.weekly_rate or (old_vehicle.weekly_rate if old_vehicle else 0) or 0))
    new_rate = Decimal(str(new_vehicle.weekly_rate or 0))
    is_active = booking.status == BookingStatus.ACTIVE.value

    days_used = 0
    if is_active and booking.activated_at:
        days_used = math.ceil((now - booking.activated_at).total_seconds() / 86400)
    adjustment, remaining_days = rate_adjustment(
        old_rate, new_rate, paid_rent_total(db, booking_id), days_used, adjustment_type
    )

    # ========== Vehicles ==========
    if is_active:
        if old_vehicle_id:
            free_vehicle(db, booking, partner_id, UserRole.PARTNER.value, reason, now)
        hit = conditional_update(
            db,
            Vehicle,
            and_(
                Vehicle.id == new_vehicle_id,
                Vehicle.status == VehicleStatus.AVAILABLE.value,
                Vehicle.current_booking_id.is_(None),
            ),
            {
                "status": VehicleStatus.BOOKED.value,
                "current_booking_id": booking_id,
                "active_booking_started": now,
                "updated_at": now,
            }
        )
        if not hit:
            db.rollback()
            raise InvalidStateError("Selected vehicle is not available", vehicle_id=new_vehicle_id)

    # ========== Booking and instructions ==========
    new_reg = new_vehicle.registration_number or booking.vehicle_reg
    booking.vehicle_id = new_vehicle_id
    booking.weekly_rate = new_rate
    booking.vehicle_reg = new_reg
    booking.updated_at = now
    repriced = reprice_weekly_instructions(db, booking_id, new_rate, new_reg)
    instruction = create_adjustment_instruction(db, booking, adjustment, new_reg)

    performer_name = get_display_name(db, partner_id)
    old_label = _vehicle_label(old_vehicle)
    new_label = _vehicle_label(new_vehicle)
    description = f"Vehicle changed from {old_label} to {new_label} by {performer_name}. Reason: {reason}"
    adjustment_note = ""
    if adjustment:
        amount_label = ("+" if adjustment > 0 else "-") + format_amount(abs(adjustment))
        description += f" ({amount_label})"
        adjustment_note = f". Rate adjustment: {amount_label}"

    details = {
        "old_vehicle_id": old_vehicle_id,
        "new_vehicle_id": new_vehicle_id,
        "old_weekly_rate": old_rate,
        "new_weekly_rate": new_rate,
        "adjustment_type": adjustment_type,
        "adjustment_amount": adjustment,
        "remaining_days": remaining_days,
        "adjustment_instruction_id": instruction.id if instruction else None,
        "reason": reason,
    }
    side_effects = [history_recorder.record(
        db,
        booking_id=booking_id,
        action=HistoryAction.VEHICLE_CHANGED,
        performed_by=partner_id,
        performed_by_type=UserRole.PARTNER.value,
        description=description,
        details=details,
    )]
    side_effects += fan_out(
        db,
        BookingEvent.VEHICLE_CHANGED,
        booking,
        context={
            "old_vehicle": old_label,
            "new_vehicle": new_label,
            "performer_name": performer_name,
            "reason": reason,
            "adjustment_note": adjustment_note,
        },
        data={
            "old_vehicle_id": old_vehicle_id,
            "new_vehicle_id": new_vehicle_id,
            "adjustment_amount": adjustment,
        },
    )
    db.commit()
    logger.info(
        f"Booking {booking_id}: vehicle {old_vehicle_id} -> {new_vehicle_id}, "
        f"{repriced} weekly instructions repriced"
    )

    drain_inline(db, side_effects)
    return {"success": True, "booking_id": booking_id, **details}
