"""
Payment Instruction Ledger

Creation, status transitions and refund bookkeeping for the payment
obligations attached to a booking.

Instruction paths:
- bank_transfer: pending -> sent -> received (one-off)
                 pending -> sent -> pending, due a week later (weekly)
- direct_debit:  auto (collected by the platform)
- deposit:       sent (held) -> deposit_refunded | refund_rejected

Every status change is a single-row conditional update on the status that
was read, so a concurrent request that already moved the instruction makes
this one fail with the matching typed error instead of overwriting it.
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

from sqlalchemy import and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import (
    AlreadyInTerminalStateError,
    AlreadySentError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from ..models.booking import Booking, BookingStatus, PaymentStatus
from ..models.booking_history import HistoryAction
from ..models.payment_instruction import (
    DEPOSIT_CATEGORY,
    DEPOSIT_REFUND_CATEGORY,
    SETTLED_INSTRUCTION_STATUSES,
    TERMINAL_INSTRUCTION_STATUSES,
    InstructionFrequency,
    InstructionMethod,
    InstructionStatus,
    InstructionType,
    PaymentInstruction,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from ..models.user import UserRole
from ..models.vehicle import Vehicle
from ..utils.db_helpers import AtomicCounter, acquire_row_lock, conditional_update
from ..utils.logging_config import get_logger
from . import history_recorder
from .actors import (
    get_partner_bank_details,
    is_financial_staff,
    is_platform_operator,
)
from .notification_fanout import fan_out, format_amount
from .outbox_worker import drain_inline, enqueue_booking_promotion
from .recipients import BookingEvent

logger = logging.getLogger(__name__)
audit_logger = get_logger(__name__)

METHOD_LABELS = {
    InstructionMethod.BANK_TRANSFER.value: "bank transfer",
    InstructionMethod.DIRECT_DEBIT.value: "direct debit",
}

TRANSACTION_CATEGORIES = {
    InstructionType.WEEKLY_RENT.value: "Weekly Rent",
    InstructionType.DEPOSIT.value: DEPOSIT_CATEGORY,
    InstructionType.ADJUSTMENT.value: "Adjustment",
    InstructionType.TOP_UP.value: "Top Up",
    InstructionType.REFUND.value: "Refund",
}

CONFIRMABLE_STATUSES = (InstructionStatus.PENDING.value, InstructionStatus.SENT.value)

REJECTABLE_REFUND_STATUSES = (
    InstructionStatus.PENDING.value,
    InstructionStatus.DEPOSIT_REFUND_PENDING.value,
    InstructionStatus.SENT.value,
)

FINAL_STATUSES = TERMINAL_INSTRUCTION_STATUSES + SETTLED_INSTRUCTION_STATUSES

WEEKLY_CYCLE = timedelta(days=7)

UNKNOWN_REG = "UNKNOWN"


def resolve_vehicle_reg(booking: Booking, vehicle: Optional[Vehicle] = None) -> str:
    """
    Registration used as the transfer reference.

    vehicle plate -> car_info plate -> booking snapshot -> "UNKNOWN"
    """
    car_info = booking.car_info if isinstance(booking.car_info, dict) else {}
    candidates = [
        vehicle.registration_number if vehicle else None,
        car_info.get("license_plate"),
        car_info.get("registration_plate"),
        car_info.get("registration"),
        booking.vehicle_reg,
    ]
    for candidate in candidates:
        if candidate and str(candidate).strip():
            return str(candidate).strip()
    return UNKNOWN_REG


def _parse_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("Amount must be a number", amount=str(value))
    if not amount.is_finite():
        raise ValidationError("Amount must be a number", amount=str(value))
    return amount.quantize(Decimal("0.01"))


def _get_instruction(db: Session, instruction_id: str) -> PaymentInstruction:
    instruction = acquire_row_lock(db, PaymentInstruction, PaymentInstruction.id == instruction_id)
    if instruction is None:
        raise NotFoundError("Payment instruction not found", instruction_id=instruction_id)
    return instruction


def _raise_for_current_status(db: Session, instruction_id: str):
    """Re-read after losing a conditional update and report what won"""
    db.rollback()
    current = db.query(PaymentInstruction).filter(
        PaymentInstruction.id == instruction_id
    ).populate_existing().first()
    if current is None:
        raise NotFoundError("Payment instruction not found", instruction_id=instruction_id)
    if current.status == InstructionStatus.SENT.value:
        raise AlreadySentError(
            "Payment has already been marked as sent",
            instruction_id=instruction_id,
            current_status=current.status,
        )
    if current.status in FINAL_STATUSES:
        raise AlreadyInTerminalStateError(
            f"Payment instruction is already {current.status}",
            instruction_id=instruction_id,
            current_status=current.status,
        )
    raise InvalidStateError(
        "Payment instruction was changed by another request",
        instruction_id=instruction_id,
        current_status=current.status,
    )


def _is_due(instruction: PaymentInstruction, now: datetime) -> bool:
    return instruction.next_due_date is None or instruction.next_due_date <= now


def _same_due_date(instruction: PaymentInstruction):
    if instruction.next_due_date is None:
        return PaymentInstruction.next_due_date.is_(None)
    return PaymentInstruction.next_due_date == instruction.next_due_date


def _set_status(db: Session, instruction: PaymentInstruction, values: Dict, from_statuses=None, guard=None):
    """Conditional update of one instruction, guarded by its observed status"""
    from_statuses = from_statuses or (instruction.status,)
    values.setdefault("updated_at", datetime.utcnow())
    condition = and_(
        PaymentInstruction.id == instruction.id,
        PaymentInstruction.status.in_(from_statuses),
    )
    if guard is not None:
        condition = and_(condition, guard)
    hit = conditional_update(db, PaymentInstruction, condition, values)
    if not hit:
        _raise_for_current_status(db, instruction.id)


# ========== Weekly instruction ==========

def create_weekly_instruction(db: Session, booking_id: str, method: str, requested_by: str) -> Dict:
    """
    Set up the weekly rent instruction for a booking.

    The amount comes from the booking's rate, falling back to the vehicle's.
    Direct debit instructions start as ``auto``; bank transfers as ``pending``.
    """
    if method not in METHOD_LABELS:
        raise ValidationError(
            f"Invalid method. Must be one of: {', '.join(METHOD_LABELS)}",
            method=method,
        )

    booking = acquire_row_lock(db, Booking, Booking.id == booking_id)
    if booking is None:
        raise NotFoundError("Booking not found", booking_id=booking_id)

    if requested_by == booking.driver_id:
        requested_by_type = UserRole.DRIVER.value
    elif is_platform_operator(db, requested_by):
        requested_by_type = UserRole.PLATFORM_OPERATOR.value
    else:
        raise UnauthorizedError(
            "You are not authorized to set up payments for this booking",
            booking_id=booking_id,
            driver_id=booking.driver_id,
        )

    existing = db.query(PaymentInstruction).filter(
        PaymentInstruction.booking_id == booking_id,
        PaymentInstruction.type == InstructionType.WEEKLY_RENT.value,
        PaymentInstruction.status.notin_(TERMINAL_INSTRUCTION_STATUSES),
    ).first()
    if existing:
        raise InvalidStateError(
            "A weekly payment instruction already exists for this booking",
            booking_id=booking_id,
            instruction_id=existing.id,
            current_status=existing.status,
        )

    vehicle = None
    if booking.vehicle_id:
        vehicle = db.query(Vehicle).filter(Vehicle.id == booking.vehicle_id).first()

    rate = booking.weekly_rate or (vehicle.weekly_rate if vehicle else None) or 0
    amount = _parse_amount(rate)
    if amount <= 0:
        raise ValidationError("No weekly rate available for this booking", booking_id=booking_id)

    vehicle_reg = resolve_vehicle_reg(booking, vehicle)
    bank = get_partner_bank_details(db, booking.partner_id)
    now = datetime.utcnow()

    status = (
        InstructionStatus.AUTO.value
        if method == InstructionMethod.DIRECT_DEBIT.value
        else InstructionStatus.PENDING.value
    )
    instruction = PaymentInstruction(
        id=str(uuid.uuid4()),
        booking_id=booking.id,
        driver_id=booking.driver_id,
        partner_id=booking.partner_id,
        method=method,
        frequency=InstructionFrequency.WEEKLY.value,
        type=InstructionType.WEEKLY_RENT.value,
        amount=amount,
        status=status,
        vehicle_reg=vehicle_reg,
        bank_account_name=bank["account_name"],
        bank_account_number=bank["account_number"],
        bank_sort_code=bank["sort_code"],
        next_due_date=now,
    )
    db.add(instruction)

    booking.payment_method = method
    booking.payment_instruction_id = instruction.id
    booking.payment_status = PaymentStatus.ACTIVE.value

    amount_label = format_amount(amount)
    if method == InstructionMethod.BANK_TRANSFER.value:
        driver_message = (
            f"Please transfer {amount_label} each week using reference {vehicle_reg} "
            f"to account {bank['account_number'] or 'on file'} (sort {bank['sort_code'] or 'on file'})."
        )
    else:
        driver_message = f"Your weekly payment of {amount_label} will be collected automatically each week."

    side_effects = [history_recorder.record(
        db,
        booking_id=booking.id,
        action=HistoryAction.WEEKLY_PAYMENT_INSTRUCTION_CREATED,
        performed_by=requested_by,
        performed_by_type=requested_by_type,
        description=f"Weekly {METHOD_LABELS[method]} payment of {amount_label} set up",
        details={
            "instruction_id": instruction.id,
            "method": method,
            "amount": amount,
            "vehicle_reg": vehicle_reg,
            "status": status,
        },
    )]
    side_effects += fan_out(
        db,
        BookingEvent.PAYMENT_INSTRUCTION_CREATED,
        booking,
        context={
            "driver_message": driver_message,
            "method_label": METHOD_LABELS[method],
            "amount": amount_label,
            "vehicle_reg": vehicle_reg,
        },
        data={"instruction_id": instruction.id, "amount": amount, "method": method},
    )
    db.commit()
    logger.info(f"Weekly instruction {instruction.id} ({method}, {amount}) created for booking {booking_id}")

    drain_inline(db, side_effects)
    return {"success": True, "instruction": instruction, "booking_id": booking_id}


# ========== Mark sent ==========

def _promote_with_retry(db: Session, booking_id: str, instruction_id: str, driver_id: str) -> bool:
    """
    Second step of mark-sent: promote the booking out of pending_payment.

    Retried in place; when every attempt fails the promotion is left in the
    outbox for the worker. The instruction update is never undone.
    """
    from .booking_state_machine import promote_after_first_payment

    attempts = settings.promotion_retry_attempts
    for attempt in range(1, attempts + 1):
        try:
            return promote_after_first_payment(
                db, booking_id=booking_id, instruction_id=instruction_id, driver_id=driver_id
            )
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"Promotion attempt {attempt}/{attempts} failed for booking {booking_id}: {e}")

    try:
        enqueue_booking_promotion(db, booking_id, instruction_id, driver_id)
        db.commit()
        logger.warning(f"Booking {booking_id} promotion deferred to the outbox worker")
    except SQLAlchemyError as e:
        db.rollback()
        audit_logger.inconsistency(
            f"instruction {instruction_id} sent but booking {booking_id} could not be promoted: {e}",
            entity_type="booking",
            entity_id=booking_id,
            instruction_id=instruction_id,
        )
    return False


def mark_sent(db: Session, instruction_id: str, driver_id: str) -> Dict:
    """
    Driver marks a bank transfer as sent.

    The first payment of a booking still in pending_payment also promotes the
    booking to pending_partner_approval.

    Raises:
        NotFoundError, UnauthorizedError,
        InvalidStateError: not a bank transfer, or this week's payment is not due yet
        AlreadySentError: already marked as sent
        AlreadyInTerminalStateError: received, auto or refund-final
    """
    instruction = _get_instruction(db, instruction_id)

    if instruction.driver_id != driver_id:
        raise UnauthorizedError(
            "You are not authorized to update this payment instruction",
            instruction_id=instruction_id,
        )
    if instruction.method != InstructionMethod.BANK_TRANSFER.value:
        raise InvalidStateError(
            "Only bank transfer payments can be marked as sent",
            instruction_id=instruction_id,
            method=instruction.method,
        )
    if instruction.status == InstructionStatus.SENT.value:
        raise AlreadySentError(
            "Payment has already been marked as sent",
            instruction_id=instruction_id,
            current_status=instruction.status,
        )
    if instruction.status in FINAL_STATUSES:
        raise AlreadyInTerminalStateError(
            f"Payment instruction is already {instruction.status}",
            instruction_id=instruction_id,
            current_status=instruction.status,
        )

    now = datetime.utcnow()
    if instruction.status == InstructionStatus.PENDING.value and not _is_due(instruction, now):
        raise InvalidStateError(
            "Payment is not due yet",
            instruction_id=instruction_id,
            next_due_date=instruction.next_due_date,
        )

    old_status = instruction.status
    _set_status(db, instruction, {"status": InstructionStatus.SENT.value, "last_sent_at": now})

    booking = db.query(Booking).filter(Booking.id == instruction.booking_id).first()
    amount_label = format_amount(instruction.amount)

    db.add(Transaction(
        user_id=driver_id,
        booking_id=instruction.booking_id,
        payment_instruction_id=instruction.id,
        type=TransactionType.EXPENSE.value,
        category=TRANSACTION_CATEGORIES.get(instruction.type, "Payment"),
        amount=instruction.amount,
        status=TransactionStatus.PENDING_CONFIRMATION.value,
        description=f"Payment of {amount_label} marked as sent",
        details={"method": instruction.method, "vehicle_reg": instruction.vehicle_reg},
    ))

    side_effects = []
    if booking is not None:
        side_effects += fan_out(
            db,
            BookingEvent.PAYMENT_SENT,
            booking,
            context={"amount": amount_label, "vehicle_reg": instruction.vehicle_reg or booking.vehicle_reg},
            data={"instruction_id": instruction.id, "amount": instruction.amount},
        )
    db.commit()
    audit_logger.instruction_status_changed(instruction.id, old_status, InstructionStatus.SENT.value)

    promoted = False
    if booking is not None and booking.status == BookingStatus.PENDING_PAYMENT.value:
        promoted = _promote_with_retry(db, booking.id, instruction.id, driver_id)

    drain_inline(db, side_effects)

    if booking is not None:
        db.refresh(booking)
    return {
        "success": True,
        "instruction": instruction,
        "booking_id": instruction.booking_id,
        "booking_status": booking.status if booking is not None else None,
        "booking_promoted": promoted,
        "partner_acceptance_deadline": booking.partner_acceptance_deadline if booking is not None else None,
    }


# ========== Confirm bank transfer ==========

def _confirmer_type(db: Session, booking: Booking, confirmed_by: str) -> str:
    if confirmed_by == booking.partner_id:
        return UserRole.PARTNER.value
    if is_financial_staff(db, booking.partner_id, confirmed_by):
        return "partner_staff"
    if is_platform_operator(db, confirmed_by):
        return UserRole.PLATFORM_OPERATOR.value
    raise UnauthorizedError(
        "You are not authorized to confirm payments for this booking",
        booking_id=booking.id,
        partner_id=booking.partner_id,
    )


def confirm_bank_transfer(db: Session, booking_id: str, instruction_id: str, confirmed_by: str) -> Dict:
    """
    Partner (or financial staff / operator) confirms a bank transfer arrived.

    A one-off instruction ends as received. A weekly instruction goes back to
    pending with its due date moved on a week, so the next week's payment can
    be marked sent once it is due; confirming a week that is not due yet is
    refused. Other still-pending one-off instructions of the booking are swept
    to received in the same transaction; finding none is fine.
    """
    booking = acquire_row_lock(db, Booking, Booking.id == booking_id)
    if booking is None:
        raise NotFoundError("Booking not found", booking_id=booking_id)

    instruction = acquire_row_lock(
        db,
        PaymentInstruction,
        and_(PaymentInstruction.id == instruction_id, PaymentInstruction.booking_id == booking_id),
    )
    if instruction is None:
        raise NotFoundError(
            "Payment instruction not found for this booking",
            booking_id=booking_id,
            instruction_id=instruction_id,
        )

    confirmed_by_type = _confirmer_type(db, booking, confirmed_by)

    if instruction.method != InstructionMethod.BANK_TRANSFER.value:
        raise InvalidStateError(
            "Only bank transfer payments can be confirmed",
            instruction_id=instruction_id,
            method=instruction.method,
        )
    if instruction.type == InstructionType.DEPOSIT.value:
        raise InvalidStateError(
            "Deposits are settled through the refund flow",
            instruction_id=instruction_id,
            type=instruction.type,
        )
    if instruction.status in FINAL_STATUSES:
        raise AlreadyInTerminalStateError(
            f"Payment instruction is already {instruction.status}",
            instruction_id=instruction_id,
            current_status=instruction.status,
        )
    if instruction.status not in CONFIRMABLE_STATUSES:
        raise InvalidStateError(
            f"Cannot confirm payment with status: {instruction.status}",
            instruction_id=instruction_id,
            current_status=instruction.status,
        )

    now = datetime.utcnow()
    weekly = instruction.frequency == InstructionFrequency.WEEKLY.value
    if weekly and instruction.status == InstructionStatus.PENDING.value and not _is_due(instruction, now):
        raise InvalidStateError(
            "This week's payment has already been confirmed",
            instruction_id=instruction_id,
            next_due_date=instruction.next_due_date,
        )

    old_status = instruction.status
    received = {
        "status": InstructionStatus.RECEIVED.value,
        "received_at": now,
        "confirmed_by": confirmed_by,
    }
    if weekly:
        next_due_date = (instruction.next_due_date or now) + WEEKLY_CYCLE
        new_status = InstructionStatus.PENDING.value
        values = dict(received, status=new_status, next_due_date=next_due_date)
    else:
        next_due_date = instruction.next_due_date
        new_status = InstructionStatus.RECEIVED.value
        values = dict(received)
    # The due date guard stops two confirmations from advancing two weeks
    _set_status(db, instruction, values, from_statuses=CONFIRMABLE_STATUSES, guard=_same_due_date(instruction))

    booking.payment_status = PaymentStatus.CONFIRMED.value

    # Bulk sweep of the booking's other pending payments, zero rows is fine
    also_confirmed = conditional_update(
        db,
        PaymentInstruction,
        and_(
            PaymentInstruction.booking_id == booking_id,
            PaymentInstruction.id != instruction_id,
            PaymentInstruction.status == InstructionStatus.PENDING.value,
            PaymentInstruction.frequency == InstructionFrequency.ONE_OFF.value,
            PaymentInstruction.type.notin_([InstructionType.REFUND.value, InstructionType.DEPOSIT.value]),
        ),
        dict(received, updated_at=now)
    )
    conditional_update(
        db,
        Transaction,
        and_(
            Transaction.payment_instruction_id == instruction_id,
            Transaction.status == TransactionStatus.PENDING_CONFIRMATION.value,
        ),
        {"status": TransactionStatus.COMPLETED.value}
    )

    amount_label = format_amount(instruction.amount)
    side_effects = [history_recorder.record(
        db,
        booking_id=booking_id,
        action=HistoryAction.BANK_TRANSFER_CONFIRMED,
        performed_by=confirmed_by,
        performed_by_type=confirmed_by_type,
        description=f"Bank transfer of {amount_label} confirmed",
        details={
            "instruction_id": instruction_id,
            "amount": instruction.amount,
            "previous_status": old_status,
            "next_due_date": next_due_date if weekly else None,
            "additional_confirmed": also_confirmed,
        },
    )]
    side_effects += fan_out(
        db,
        BookingEvent.BANK_TRANSFER_CONFIRMED,
        booking,
        context={"amount": amount_label, "vehicle_reg": instruction.vehicle_reg or booking.vehicle_reg},
        data={"instruction_id": instruction_id, "amount": instruction.amount},
    )
    db.commit()
    audit_logger.instruction_status_changed(instruction_id, old_status, new_status)
    if also_confirmed:
        logger.info(f"Booking {booking_id}: {also_confirmed} other pending instructions marked received")

    drain_inline(db, side_effects)
    return {
        "success": True,
        "instruction": instruction,
        "booking_id": booking_id,
        "payment_status": PaymentStatus.CONFIRMED.value,
        "next_due_date": next_due_date if weekly else None,
        "additional_confirmed": also_confirmed,
    }


# ========== Deposit refunds ==========

def refund_deposit(db: Session, instruction_id: str, refund_amount, partner_id: str) -> Dict:
    """
    Partner refunds a held deposit.

    Ledger transactions are created once per instruction: if a refund expense
    already exists it is reused and only the instruction is updated.
    The amount is not checked against the deposit (partial refunds).
    """
    amount = _parse_amount(refund_amount)
    if amount <= 0:
        raise ValidationError("Refund amount must be greater than zero", refund_amount=str(refund_amount))

    instruction = _get_instruction(db, instruction_id)

    if instruction.partner_id != partner_id:
        raise UnauthorizedError(
            "You are not authorized to refund this deposit",
            instruction_id=instruction_id,
        )
    if instruction.type != InstructionType.DEPOSIT.value:
        raise InvalidStateError(
            "Only deposit instructions can be refunded",
            instruction_id=instruction_id,
            type=instruction.type,
        )
    if instruction.status in TERMINAL_INSTRUCTION_STATUSES:
        raise AlreadyInTerminalStateError(
            f"Deposit is already {instruction.status}",
            instruction_id=instruction_id,
            current_status=instruction.status,
        )

    if amount > Decimal(str(instruction.amount)):
        logger.warning(
            f"Refund of {amount} exceeds deposit {instruction.amount} on instruction {instruction_id}"
        )

    existing = db.query(Transaction).filter(
        Transaction.payment_instruction_id == instruction_id,
        Transaction.category == DEPOSIT_REFUND_CATEGORY,
        Transaction.type == TransactionType.EXPENSE.value,
    ).first()

    amount_label = format_amount(amount)
    details = {"instruction_id": instruction_id, "original_amount": float(instruction.amount)}
    if existing is None:
        db.add(Transaction(
            user_id=instruction.partner_id,
            booking_id=instruction.booking_id,
            payment_instruction_id=instruction_id,
            type=TransactionType.EXPENSE.value,
            category=DEPOSIT_REFUND_CATEGORY,
            amount=amount,
            status=TransactionStatus.COMPLETED.value,
            description=f"Deposit refund of {amount_label} to driver",
            details=details,
        ))
        db.add(Transaction(
            user_id=instruction.driver_id,
            booking_id=instruction.booking_id,
            payment_instruction_id=instruction_id,
            type=TransactionType.INCOME.value,
            category=DEPOSIT_REFUND_CATEGORY,
            amount=amount,
            status=TransactionStatus.COMPLETED.value,
            description=f"Deposit refund of {amount_label} from partner",
            details=details,
        ))
    else:
        logger.info(f"Refund transactions already exist for instruction {instruction_id}, not recreating")

    conditional_update(
        db,
        Transaction,
        and_(
            Transaction.payment_instruction_id == instruction_id,
            Transaction.category == DEPOSIT_CATEGORY,
            Transaction.type == TransactionType.INCOME.value,
        ),
        {"status": TransactionStatus.REFUNDED.value}
    )

    old_status = instruction.status
    now = datetime.utcnow()
    _set_status(db, instruction, {
        "status": InstructionStatus.DEPOSIT_REFUNDED.value,
        "refunded_amount": amount,
        "refunded_at": now,
    })

    AtomicCounter.increment(db, Booking, Booking.id == instruction.booking_id, "deposit_refunded", amount)
    booking = db.query(Booking).filter(Booking.id == instruction.booking_id).first()

    side_effects = [history_recorder.record(
        db,
        booking_id=instruction.booking_id,
        action=HistoryAction.DEPOSIT_REFUNDED,
        performed_by=partner_id,
        performed_by_type=UserRole.PARTNER.value,
        description=f"Deposit refund of {amount_label} issued",
        details={
            "instruction_id": instruction_id,
            "refund_amount": amount,
            "original_amount": instruction.amount,
            "transactions_created": existing is None,
        },
        idempotency_key=f"deposit_refund:{instruction_id}",
    )]
    if booking is not None:
        side_effects += fan_out(
            db,
            BookingEvent.DEPOSIT_REFUNDED,
            booking,
            context={"amount": amount_label},
            data={"instruction_id": instruction_id, "refund_amount": amount},
            idempotency_key=f"deposit_refund:{instruction_id}",
        )
    db.commit()
    audit_logger.instruction_status_changed(instruction_id, old_status, InstructionStatus.DEPOSIT_REFUNDED.value)

    drain_inline(db, side_effects)
    return {
        "success": True,
        "instruction": instruction,
        "booking_id": instruction.booking_id,
        "refund_amount": amount,
        "transactions_created": existing is None,
    }


def reject_refund(db: Session, instruction_id: str, partner_id: str, reason: str) -> Dict:
    """Partner rejects a refund; the reason is stored verbatim and shown to the driver"""
    if not reason or not reason.strip():
        raise ValidationError("A rejection reason is required", instruction_id=instruction_id)

    instruction = _get_instruction(db, instruction_id)

    if instruction.partner_id != partner_id:
        raise UnauthorizedError(
            "You are not authorized to reject this refund",
            instruction_id=instruction_id,
        )
    if instruction.status in TERMINAL_INSTRUCTION_STATUSES:
        raise AlreadyInTerminalStateError(
            f"Refund is already {instruction.status}",
            instruction_id=instruction_id,
            current_status=instruction.status,
        )
    if instruction.status not in REJECTABLE_REFUND_STATUSES:
        raise InvalidStateError(
            f"Cannot reject refund with status: {instruction.status}",
            instruction_id=instruction_id,
            current_status=instruction.status,
        )

    old_status = instruction.status
    now = datetime.utcnow()
    _set_status(db, instruction, {
        "status": InstructionStatus.REFUND_REJECTED.value,
        "refund_rejection_reason": reason,
        "refund_rejected_at": now,
    })

    booking = db.query(Booking).filter(Booking.id == instruction.booking_id).first()
    side_effects = [history_recorder.record(
        db,
        booking_id=instruction.booking_id,
        action=HistoryAction.REFUND_REJECTED,
        performed_by=partner_id,
        performed_by_type=UserRole.PARTNER.value,
        description=f"Refund rejected: {reason}",
        details={"instruction_id": instruction_id, "reason": reason, "previous_status": old_status},
    )]
    if booking is not None:
        side_effects += fan_out(
            db,
            BookingEvent.REFUND_REJECTED,
            booking,
            context={"reason": reason},
            data={"instruction_id": instruction_id, "reason": reason},
        )
    db.commit()
    audit_logger.instruction_status_changed(instruction_id, old_status, InstructionStatus.REFUND_REJECTED.value)

    drain_inline(db, side_effects)
    return {
        "success": True,
        "instruction": instruction,
        "booking_id": instruction.booking_id,
        "reason": reason,
    }


def create_refund_instructions_for_rejection(db: Session, booking: Booking) -> List[PaymentInstruction]:
    """
    Queue refunds for a booking that will not go ahead.

    One refund per sent deposit, plus one covering every sent or received
    non-deposit payment. Part of the caller's transaction.
    """
    instructions = db.query(PaymentInstruction).filter(
        PaymentInstruction.booking_id == booking.id,
        PaymentInstruction.type != InstructionType.REFUND.value,
    ).order_by(PaymentInstruction.created_at).all()

    already_refunded = {
        row[0] for row in db.query(PaymentInstruction.source_instruction_id).filter(
            PaymentInstruction.booking_id == booking.id,
            PaymentInstruction.type == InstructionType.REFUND.value,
        ).all()
    }

    deposits = [
        i for i in instructions
        if i.type == InstructionType.DEPOSIT.value and i.status == InstructionStatus.SENT.value
    ]
    payments = [
        i for i in instructions
        if i.type != InstructionType.DEPOSIT.value
        and i.status in (InstructionStatus.SENT.value, InstructionStatus.RECEIVED.value)
    ]

    refunds = []

    def _refund(source: PaymentInstruction, amount: Decimal) -> PaymentInstruction:
        refund = PaymentInstruction(
            id=str(uuid.uuid4()),
            booking_id=booking.id,
            driver_id=booking.driver_id,
            partner_id=booking.partner_id,
            method=InstructionMethod.BANK_TRANSFER.value,
            frequency=InstructionFrequency.ONE_OFF.value,
            type=InstructionType.REFUND.value,
            amount=amount,
            status=InstructionStatus.PENDING.value,
            vehicle_reg=source.vehicle_reg,
            source_instruction_id=source.id,
        )
        db.add(refund)
        refunds.append(refund)
        return refund

    for deposit in deposits:
        if deposit.id not in already_refunded:
            _refund(deposit, deposit.amount)

    if payments and payments[0].id not in already_refunded:
        total = sum((Decimal(str(p.amount)) for p in payments), Decimal("0"))
        if total > 0:
            _refund(payments[0], total)

    if refunds:
        logger.info(f"Queued {len(refunds)} refund instructions for booking {booking.id}")
    return refunds


# ========== Vehicle change repricing ==========

RENT_EXCLUDED_CATEGORIES = (DEPOSIT_CATEGORY, DEPOSIT_REFUND_CATEGORY)

OPEN_WEEKLY_STATUSES = (InstructionStatus.PENDING.value, InstructionStatus.AUTO.value)


def paid_rent_total(db: Session, booking_id: str) -> Decimal:
    """Confirmed driver payments on a booking, deposits and their refunds excluded"""
    rows = db.query(Transaction.amount).filter(
        Transaction.booking_id == booking_id,
        Transaction.type == TransactionType.EXPENSE.value,
        Transaction.status == TransactionStatus.COMPLETED.value,
        Transaction.category.notin_(RENT_EXCLUDED_CATEGORIES),
    ).all()
    return sum((Decimal(str(row[0])) for row in rows), Decimal("0"))


def create_adjustment_instruction(
    db: Session,
    booking: Booking,
    amount: Decimal,
    vehicle_reg: Optional[str],
) -> Optional[PaymentInstruction]:
    """
    One-off bank transfer settling a rate change. A positive amount is owed
    by the driver (adjustment), a negative one is owed back (refund).
    Part of the caller's transaction; None for a zero amount.
    """
    if not amount:
        return None

    instruction_type = InstructionType.ADJUSTMENT if amount > 0 else InstructionType.REFUND
    bank = get_partner_bank_details(db, booking.partner_id)
    instruction = PaymentInstruction(
        id=str(uuid.uuid4()),
        booking_id=booking.id,
        driver_id=booking.driver_id,
        partner_id=booking.partner_id,
        method=InstructionMethod.BANK_TRANSFER.value,
        frequency=InstructionFrequency.ONE_OFF.value,
        type=instruction_type.value,
        amount=abs(amount),
        status=InstructionStatus.PENDING.value,
        vehicle_reg=vehicle_reg,
        bank_account_name=bank["account_name"],
        bank_account_number=bank["account_number"],
        bank_sort_code=bank["sort_code"],
    )
    db.add(instruction)
    logger.info(f"Queued {instruction_type.value} of {abs(amount)} for booking {booking.id}")
    return instruction


def reprice_weekly_instructions(db: Session, booking_id: str, weekly_rate: Decimal, vehicle_reg: str) -> int:
    """
    Carry a new weekly rate and plate onto the booking's open weekly
    instructions. Instructions already sent keep their amount. Returns the
    number of rows updated.
    """
    return conditional_update(
        db,
        PaymentInstruction,
        and_(
            PaymentInstruction.booking_id == booking_id,
            PaymentInstruction.frequency == InstructionFrequency.WEEKLY.value,
            PaymentInstruction.status.in_(OPEN_WEEKLY_STATUSES),
        ),
        {"amount": weekly_rate, "vehicle_reg": vehicle_reg, "updated_at": datetime.utcnow()}
    )
