"""
Tests for the payment instruction ledger

Tests cover:
- Mark sent and the booking promotion that follows the first payment
- Weekly instruction creation
- Bank transfer confirmation and the pending sweep
- Deposit refunds and refund rejection
"""

from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from conftest import history_for, notifications_for, update_elsewhere
from fleetlink.exceptions import (
    AlreadyInTerminalStateError,
    AlreadySentError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from fleetlink.models import PaymentInstruction, SideEffectOutbox, Transaction
from fleetlink.services import payment_ledger
from fleetlink.services.outbox_worker import OutboxProcessor


@pytest.fixture
def parties(seed):
    driver = seed.driver()
    partner = seed.partner()
    vehicle = seed.vehicle(partner)
    return driver, partner, vehicle


def _amount(value):
    return Decimal(str(value))


class TestMarkSent:

    def test_first_payment_promotes_booking(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)
        instruction = seed.instruction(booking)

        result = payment_ledger.mark_sent(db, instruction.id, driver.id)

        assert result["booking_promoted"] is True
        assert result["booking_status"] == "pending_partner_approval"
        assert result["partner_acceptance_deadline"] is not None

        db.refresh(instruction)
        assert instruction.status == "sent"
        assert instruction.last_sent_at is not None

        assert len(notifications_for(db, recipient_id=partner.id, type="new_booking")) == 1
        assert len(notifications_for(db, recipient_id=partner.id, type="payment_sent")) == 1
        assert len(history_for(db, booking.id, "first_payment_sent")) == 1

    def test_expense_recorded_pending_confirmation(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.active_booking(driver, partner, vehicle)
        instruction = seed.instruction(booking)

        payment_ledger.mark_sent(db, instruction.id, driver.id)

        txn = db.query(Transaction).filter(Transaction.payment_instruction_id == instruction.id).one()
        assert txn.type == "expense"
        assert txn.category == "Weekly Rent"
        assert txn.status == "pending_confirmation"
        assert _amount(txn.amount) == Decimal("150")

    def test_later_payment_does_not_promote(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.active_booking(driver, partner, vehicle)
        instruction = seed.instruction(booking)

        result = payment_ledger.mark_sent(db, instruction.id, driver.id)

        assert result["booking_promoted"] is False
        assert result["booking_status"] == "active"
        assert notifications_for(db, recipient_id=partner.id, type="new_booking") == []

    def test_financial_staff_are_told_about_payment(self, db, seed, parties):
        driver, partner, vehicle = parties
        staff = seed.staff(partner)
        seed.staff(partner, can_view_financials=False)
        booking = seed.active_booking(driver, partner, vehicle)
        instruction = seed.instruction(booking)

        payment_ledger.mark_sent(db, instruction.id, driver.id)

        staff_notes = notifications_for(db, recipient_type="partner_staff", type="payment_sent")
        assert [n.recipient_id for n in staff_notes] == [staff.id]

    def test_direct_debit_cannot_be_marked_sent(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)
        instruction = seed.instruction(booking, method="direct_debit", status="auto")

        with pytest.raises(InvalidStateError) as exc_info:
            payment_ledger.mark_sent(db, instruction.id, driver.id)
        assert exc_info.value.code == "invalid_state"

    def test_second_mark_sent_reports_already_sent(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)
        instruction = seed.instruction(booking)

        payment_ledger.mark_sent(db, instruction.id, driver.id)
        with pytest.raises(AlreadySentError):
            payment_ledger.mark_sent(db, instruction.id, driver.id)

        assert db.query(Transaction).filter(Transaction.payment_instruction_id == instruction.id).count() == 1

    @pytest.mark.parametrize("status", ["received", "deposit_refunded", "refund_rejected"])
    def test_final_statuses_are_refused(self, db, seed, parties, status):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)
        instruction = seed.instruction(booking, status=status)

        with pytest.raises(AlreadyInTerminalStateError):
            payment_ledger.mark_sent(db, instruction.id, driver.id)

    @pytest.mark.parametrize("winner,error", [
        ("sent", AlreadySentError),
        ("received", AlreadyInTerminalStateError),
        ("refund_rejected", AlreadyInTerminalStateError),
        ("deposit_pending", InvalidStateError),
    ])
    def test_lost_race_reports_what_won(self, db, seed, parties, session_factory, winner, error):
        driver, partner, vehicle = parties
        booking = seed.active_booking(driver, partner, vehicle)
        instruction = seed.instruction(booking)

        update_elsewhere(session_factory, PaymentInstruction, instruction.id, status=winner)

        # This session still holds the pending row it read before the other commit
        with patch.object(payment_ledger, "acquire_row_lock", return_value=instruction):
            with pytest.raises(error) as exc_info:
                payment_ledger.mark_sent(db, instruction.id, driver.id)

        assert exc_info.value.details["current_status"] == winner
        assert db.query(Transaction).count() == 0

    def test_only_the_driver_can_mark_sent(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)
        instruction = seed.instruction(booking)

        with pytest.raises(UnauthorizedError):
            payment_ledger.mark_sent(db, instruction.id, partner.id)

    def test_missing_instruction(self, db, seed):
        with pytest.raises(NotFoundError):
            payment_ledger.mark_sent(db, "missing", "driver")

    def test_failed_promotion_is_handed_to_the_worker(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)
        instruction = seed.instruction(booking)

        with patch(
            "fleetlink.services.booking_state_machine.promote_after_first_payment",
            side_effect=SQLAlchemyError("database unavailable"),
        ) as promote:
            result = payment_ledger.mark_sent(db, instruction.id, driver.id)

        assert promote.call_count == 3
        assert result["booking_promoted"] is False
        assert result["booking_status"] == "pending_payment"

        # The instruction update is never rolled back
        db.refresh(instruction)
        assert instruction.status == "sent"

        deferred = db.query(SideEffectOutbox).filter(SideEffectOutbox.kind == "booking_promotion").one()
        assert deferred.idempotency_key == f"promotion:{instruction.id}"
        assert deferred.status == "pending"

        OutboxProcessor(db).process_batch()
        db.refresh(booking)
        assert booking.status == "pending_partner_approval"

        # Side effects of the deferred promotion go out on the next batch
        OutboxProcessor(db).process_batch()
        assert len(notifications_for(db, recipient_id=partner.id, type="new_booking")) == 1


class TestWeeklyCycle:

    def test_second_week_is_paid_once_due(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)
        instruction = seed.instruction(booking, next_due_date=datetime.utcnow() - timedelta(minutes=1))
        first_due = instruction.next_due_date

        payment_ledger.mark_sent(db, instruction.id, driver.id)
        confirmed = payment_ledger.confirm_bank_transfer(db, booking.id, instruction.id, partner.id)

        assert confirmed["instruction"].status == "pending"
        assert confirmed["next_due_date"] == first_due + timedelta(days=7)

        with pytest.raises(InvalidStateError) as exc_info:
            payment_ledger.mark_sent(db, instruction.id, driver.id)
        assert exc_info.value.message == "Payment is not due yet"

        # A week later
        instruction.next_due_date = datetime.utcnow() - timedelta(minutes=1)
        db.commit()

        result = payment_ledger.mark_sent(db, instruction.id, driver.id)

        assert result["instruction"].status == "sent"
        assert result["booking_promoted"] is False
        assert len(history_for(db, booking.id, "first_payment_sent")) == 1
        assert db.query(Transaction).filter(Transaction.payment_instruction_id == instruction.id).count() == 2

    def test_fresh_instruction_is_due_immediately(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)
        created = payment_ledger.create_weekly_instruction(db, booking.id, "bank_transfer", driver.id)

        result = payment_ledger.mark_sent(db, created["instruction"].id, driver.id)

        assert result["instruction"].status == "sent"

    def test_other_weekly_instructions_are_not_swept(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.active_booking(driver, partner, vehicle)
        instruction = seed.instruction(booking, status="sent")
        other_week = seed.instruction(booking)

        result = payment_ledger.confirm_bank_transfer(db, booking.id, instruction.id, partner.id)

        assert result["additional_confirmed"] == 0
        db.refresh(other_week)
        assert other_week.status == "pending"


class TestCreateWeeklyInstruction:

    def test_bank_transfer_uses_vehicle_rate(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)

        result = payment_ledger.create_weekly_instruction(db, booking.id, "bank_transfer", driver.id)

        instruction = result["instruction"]
        assert instruction.status == "pending"
        assert instruction.frequency == "weekly"
        assert instruction.type == "weekly_rent"
        assert _amount(instruction.amount) == Decimal("250")
        assert instruction.vehicle_reg == "AB12 CDE"
        assert instruction.bank_account_number == "12345678"
        assert instruction.bank_sort_code == "12-34-56"

        db.refresh(booking)
        assert booking.payment_status == "active"
        assert booking.payment_instruction_id == instruction.id

        driver_note = notifications_for(db, recipient_id=driver.id, type="payment_instruction_created")[0]
        assert "reference AB12 CDE" in driver_note.message
        assert "£250.00" in driver_note.message
        assert len(history_for(db, booking.id, "weekly_payment_instruction_created")) == 1

    def test_direct_debit_starts_auto(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)

        result = payment_ledger.create_weekly_instruction(db, booking.id, "direct_debit", driver.id)

        assert result["instruction"].status == "auto"
        driver_note = notifications_for(db, recipient_id=driver.id, type="payment_instruction_created")[0]
        assert "collected automatically" in driver_note.message

    def test_booking_rate_takes_precedence(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle, weekly_rate=Decimal("180.00"))

        result = payment_ledger.create_weekly_instruction(db, booking.id, "bank_transfer", driver.id)

        assert _amount(result["instruction"].amount) == Decimal("180")

    def test_plate_falls_back_to_car_info(self, db, seed, parties):
        driver, partner, _ = parties
        booking = seed.booking(
            driver, partner,
            weekly_rate=Decimal("200.00"),
            car_info={"license_plate": "CAR 001"},
            vehicle_reg="SNAP 01",
        )

        result = payment_ledger.create_weekly_instruction(db, booking.id, "bank_transfer", driver.id)

        assert result["instruction"].vehicle_reg == "CAR 001"

    def test_no_rate_available(self, db, seed, parties):
        driver, partner, _ = parties
        booking = seed.booking(driver, partner)

        with pytest.raises(ValidationError):
            payment_ledger.create_weekly_instruction(db, booking.id, "bank_transfer", driver.id)

    def test_invalid_method(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)

        with pytest.raises(ValidationError):
            payment_ledger.create_weekly_instruction(db, booking.id, "cash", driver.id)

    def test_duplicate_weekly_instruction(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)

        payment_ledger.create_weekly_instruction(db, booking.id, "bank_transfer", driver.id)
        with pytest.raises(InvalidStateError):
            payment_ledger.create_weekly_instruction(db, booking.id, "direct_debit", driver.id)

    def test_operator_can_set_up_payment(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)
        operator = seed.operator()

        result = payment_ledger.create_weekly_instruction(db, booking.id, "bank_transfer", operator.id)

        entry = history_for(db, booking.id, "weekly_payment_instruction_created")[0]
        assert result["success"] is True
        assert entry.performed_by_type == "platform_operator"

    def test_stranger_cannot_set_up_payment(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)

        with pytest.raises(UnauthorizedError):
            payment_ledger.create_weekly_instruction(db, booking.id, "bank_transfer", partner.id)


class TestResolveVehicleReg:

    def _booking(self, **fields):
        values = {"car_info": None, "vehicle_reg": None}
        values.update(fields)
        return SimpleNamespace(**values)

    def test_vehicle_plate_first(self):
        booking = self._booking(car_info={"license_plate": "CAR 1"}, vehicle_reg="SNAP")
        vehicle = SimpleNamespace(registration_number="VEH 1")

        assert payment_ledger.resolve_vehicle_reg(booking, vehicle) == "VEH 1"

    def test_blank_values_are_skipped(self):
        booking = self._booking(car_info={"license_plate": "  ", "registration": "REG 9"})

        assert payment_ledger.resolve_vehicle_reg(booking) == "REG 9"

    def test_unknown_when_nothing_available(self):
        assert payment_ledger.resolve_vehicle_reg(self._booking()) == "UNKNOWN"


class TestConfirmBankTransfer:

    def test_confirm_sweeps_other_pending_payments(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.active_booking(driver, partner, vehicle)
        instruction = seed.instruction(booking)
        payment_ledger.mark_sent(db, instruction.id, driver.id)
        adjustment = seed.instruction(booking, type="adjustment", frequency="one_off", amount=Decimal("20.00"))
        refund = seed.instruction(booking, type="refund", frequency="one_off")
        deposit = seed.deposit(booking)

        result = payment_ledger.confirm_bank_transfer(db, booking.id, instruction.id, partner.id)

        assert result["payment_status"] == "confirmed"
        assert result["additional_confirmed"] == 1

        statuses = {
            i.id: i.status
            for i in db.query(PaymentInstruction).populate_existing().all()
        }
        assert statuses[instruction.id] == "pending"
        assert statuses[adjustment.id] == "received"
        assert statuses[refund.id] == "pending"
        assert statuses[deposit.id] == "sent"

        db.refresh(booking)
        assert booking.payment_status == "confirmed"

        txn = db.query(Transaction).filter(Transaction.payment_instruction_id == instruction.id).one()
        assert txn.status == "completed"
        assert len(notifications_for(db, recipient_id=driver.id, type="payment_confirmed")) == 1

    def test_confirm_without_other_pending(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.active_booking(driver, partner, vehicle)
        instruction = seed.instruction(booking)

        result = payment_ledger.confirm_bank_transfer(db, booking.id, instruction.id, partner.id)

        assert result["additional_confirmed"] == 0

    def test_financial_staff_can_confirm(self, db, seed, parties):
        driver, partner, vehicle = parties
        staff = seed.staff(partner)
        booking = seed.active_booking(driver, partner, vehicle)
        instruction = seed.instruction(booking, status="sent")

        payment_ledger.confirm_bank_transfer(db, booking.id, instruction.id, staff.id)

        entry = history_for(db, booking.id, "bank_transfer_confirmed")[0]
        assert entry.performed_by_type == "partner_staff"

    def test_staff_without_financial_access_cannot_confirm(self, db, seed, parties):
        driver, partner, vehicle = parties
        staff = seed.staff(partner, can_view_financials=False)
        booking = seed.active_booking(driver, partner, vehicle)
        instruction = seed.instruction(booking, status="sent")

        with pytest.raises(UnauthorizedError):
            payment_ledger.confirm_bank_transfer(db, booking.id, instruction.id, staff.id)

    def test_operator_can_confirm(self, db, seed, parties):
        driver, partner, vehicle = parties
        operator = seed.operator()
        booking = seed.active_booking(driver, partner, vehicle)
        instruction = seed.instruction(booking, status="sent")

        result = payment_ledger.confirm_bank_transfer(db, booking.id, instruction.id, operator.id)

        assert result["instruction"].status == "pending"
        assert result["instruction"].confirmed_by == operator.id

    def test_deposit_cannot_be_confirmed(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.active_booking(driver, partner, vehicle)
        deposit = seed.deposit(booking)

        with pytest.raises(InvalidStateError):
            payment_ledger.confirm_bank_transfer(db, booking.id, deposit.id, partner.id)

    def test_confirm_twice_in_one_week(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.active_booking(driver, partner, vehicle)
        instruction = seed.instruction(booking, status="sent")

        first = payment_ledger.confirm_bank_transfer(db, booking.id, instruction.id, partner.id)
        with pytest.raises(InvalidStateError):
            payment_ledger.confirm_bank_transfer(db, booking.id, instruction.id, partner.id)

        db.refresh(instruction)
        assert instruction.next_due_date == first["next_due_date"]
        assert len(history_for(db, booking.id, "bank_transfer_confirmed")) == 1

    def test_one_off_confirm_twice(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.active_booking(driver, partner, vehicle)
        top_up = seed.instruction(booking, type="top_up", frequency="one_off", status="sent")

        result = payment_ledger.confirm_bank_transfer(db, booking.id, top_up.id, partner.id)
        assert result["instruction"].status == "received"
        assert result["next_due_date"] is None

        with pytest.raises(AlreadyInTerminalStateError):
            payment_ledger.confirm_bank_transfer(db, booking.id, top_up.id, partner.id)

    def test_concurrent_confirm_of_the_same_week(self, db, seed, parties, session_factory):
        driver, partner, vehicle = parties
        booking = seed.active_booking(driver, partner, vehicle)
        instruction = seed.instruction(booking, status="sent")

        other = session_factory()
        try:
            payment_ledger.confirm_bank_transfer(other, booking.id, instruction.id, partner.id)
        finally:
            other.close()

        # This session still holds the pre-confirmation row
        with patch.object(payment_ledger, "acquire_row_lock", side_effect=[booking, instruction]):
            with pytest.raises(InvalidStateError) as exc_info:
                payment_ledger.confirm_bank_transfer(db, booking.id, instruction.id, partner.id)
        assert exc_info.value.details["current_status"] == "pending"

        db.refresh(instruction)
        assert instruction.next_due_date is not None
        assert len(history_for(db, booking.id, "bank_transfer_confirmed")) == 1

    def test_instruction_of_another_booking(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.active_booking(driver, partner, vehicle)
        other = seed.booking(driver, partner)
        instruction = seed.instruction(other, status="sent")

        with pytest.raises(NotFoundError):
            payment_ledger.confirm_bank_transfer(db, booking.id, instruction.id, partner.id)


class TestRefundDeposit:

    def test_refund_creates_transaction_pair_once(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle, status="completed")
        deposit = seed.deposit(booking)
        db.add(Transaction(
            user_id=partner.id,
            booking_id=booking.id,
            payment_instruction_id=deposit.id,
            type="income",
            category="Deposit",
            amount=Decimal("500.00"),
        ))
        db.commit()

        result = payment_ledger.refund_deposit(db, deposit.id, "500", partner.id)

        assert result["transactions_created"] is True
        assert result["refund_amount"] == Decimal("500.00")

        with pytest.raises(AlreadyInTerminalStateError):
            payment_ledger.refund_deposit(db, deposit.id, "500", partner.id)

        refunds = db.query(Transaction).filter(Transaction.category == "Deposit Refund").all()
        assert sorted((t.type, t.user_id) for t in refunds) == sorted([
            ("expense", partner.id),
            ("income", driver.id),
        ])

        original = db.query(Transaction).filter(Transaction.category == "Deposit").populate_existing().one()
        assert original.status == "refunded"

        db.refresh(deposit)
        db.refresh(booking)
        assert deposit.status == "deposit_refunded"
        assert _amount(deposit.refunded_amount) == Decimal("500")
        assert _amount(booking.deposit_refunded) == Decimal("500")
        assert len(history_for(db, booking.id, "deposit_refunded")) == 1
        assert len(notifications_for(db, recipient_id=driver.id, type="deposit_refunded")) == 1

    def test_partial_refund(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle, status="completed")
        deposit = seed.deposit(booking)

        payment_ledger.refund_deposit(db, deposit.id, Decimal("125.50"), partner.id)

        driver_note = notifications_for(db, recipient_id=driver.id, type="deposit_refunded")[0]
        assert "£125.50" in driver_note.message

    @pytest.mark.parametrize("amount", [0, "-10", "abc", None])
    def test_invalid_amounts(self, db, seed, parties, amount):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)
        deposit = seed.deposit(booking)

        with pytest.raises(ValidationError):
            payment_ledger.refund_deposit(db, deposit.id, amount, partner.id)

    def test_only_deposits_can_be_refunded(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)
        instruction = seed.instruction(booking, status="sent")

        with pytest.raises(InvalidStateError):
            payment_ledger.refund_deposit(db, instruction.id, "100", partner.id)

    def test_other_partner_cannot_refund(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)
        deposit = seed.deposit(booking)

        with pytest.raises(UnauthorizedError):
            payment_ledger.refund_deposit(db, deposit.id, "100", seed.partner().id)


class TestRejectRefund:

    def test_reason_is_kept_verbatim(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle, status="completed")
        deposit = seed.deposit(booking)

        result = payment_ledger.reject_refund(db, deposit.id, partner.id, "damage found")

        assert result["reason"] == "damage found"
        db.refresh(deposit)
        assert deposit.status == "refund_rejected"
        assert deposit.refund_rejection_reason == "damage found"
        assert deposit.refund_rejected_at is not None

        entry = history_for(db, booking.id, "refund_rejected")[0]
        assert entry.description == "Refund rejected: damage found"

        notes = notifications_for(db, recipient_id=driver.id, type="refund_rejected")
        assert len(notes) == 1
        assert "Reason: damage found" in notes[0].message

    def test_pending_refund_instruction_can_be_rejected(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle, status="partner_rejected")
        refund = seed.instruction(booking, type="refund", frequency="one_off")

        payment_ledger.reject_refund(db, refund.id, partner.id, "Already paid in cash")

        db.refresh(refund)
        assert refund.status == "refund_rejected"

    @pytest.mark.parametrize("reason", ["", "   ", None])
    def test_reason_is_required(self, db, seed, parties, reason):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)
        deposit = seed.deposit(booking)

        with pytest.raises(ValidationError):
            payment_ledger.reject_refund(db, deposit.id, partner.id, reason)

    def test_any_instruction_type_in_a_rejectable_status(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle, status="partner_rejected")
        rent = seed.instruction(booking, status="pending")

        payment_ledger.reject_refund(db, rent.id, partner.id, "Paid on site")

        db.refresh(rent)
        assert rent.status == "refund_rejected"
        assert rent.refund_rejection_reason == "Paid on site"

    def test_received_payment_cannot_be_rejected(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)
        top_up = seed.instruction(booking, type="top_up", frequency="one_off", status="received")

        with pytest.raises(InvalidStateError):
            payment_ledger.reject_refund(db, top_up.id, partner.id, "No")

    def test_refunded_deposit_cannot_be_rejected(self, db, seed, parties):
        driver, partner, vehicle = parties
        booking = seed.booking(driver, partner, vehicle)
        deposit = seed.deposit(booking)
        payment_ledger.refund_deposit(db, deposit.id, "500", partner.id)

        with pytest.raises(AlreadyInTerminalStateError):
            payment_ledger.reject_refund(db, deposit.id, partner.id, "Changed my mind")
