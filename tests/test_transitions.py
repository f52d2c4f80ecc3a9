"""
Tests for the booking transition table
"""

from types import SimpleNamespace

import pytest

from fleetlink.exceptions import InvalidStateError
from fleetlink.models import BookingStatus
from fleetlink.services.transitions import (
    TRANSITIONS,
    BookingAction,
    assert_transition_allowed,
    is_allowed,
    target_status,
)


def _booking(status):
    return SimpleNamespace(id="b-1", status=status)


class TestTransitionTable:

    def test_every_action_has_an_entry(self):
        assert set(TRANSITIONS) == set(BookingAction)

    def test_statuses_in_table_are_known(self):
        known = {s.value for s in BookingStatus}
        for transition in TRANSITIONS.values():
            assert transition.allowed_from is None or transition.allowed_from <= known
            assert transition.to_status is None or transition.to_status in known

    @pytest.mark.parametrize("status", ["partner_accepted", "pending_insurance_upload", "confirmed"])
    def test_activate_from_pre_active_statuses(self, status):
        assert is_allowed(BookingAction.ACTIVATE, status)
        assert target_status(BookingAction.ACTIVATE, status) == "active"

    @pytest.mark.parametrize("status", ["pending_payment", "pending_partner_approval", "completed", "cancelled"])
    def test_activate_refused_elsewhere(self, status):
        assert not is_allowed(BookingAction.ACTIVATE, status)

    def test_promotion_only_from_pending_payment(self):
        assert is_allowed(BookingAction.PROMOTE_AFTER_PAYMENT, "pending_payment")
        assert not is_allowed(BookingAction.PROMOTE_AFTER_PAYMENT, "pending_partner_approval")

    def test_release_keeps_status(self):
        assert target_status(BookingAction.RELEASE_VEHICLE, "active") == "active"

    def test_report_issue_allowed_from_any_status(self):
        for status in BookingStatus:
            assert is_allowed(BookingAction.REPORT_ISSUE, status.value)

    def test_completed_booking_cannot_be_cancelled(self):
        assert not is_allowed(BookingAction.CANCEL, "completed")

    def test_active_booking_cannot_be_cancelled(self):
        assert not is_allowed(BookingAction.CANCEL, "active")

    def test_approved_return_completes(self):
        assert target_status(BookingAction.APPROVE_RETURN, "active") == "completed"
        assert target_status(BookingAction.REJECT_RETURN, "active") == "active"

    def test_vehicle_change_before_or_during_rental(self):
        assert is_allowed(BookingAction.CHANGE_VEHICLE, "partner_accepted")
        assert is_allowed(BookingAction.CHANGE_VEHICLE, "active")
        assert not is_allowed(BookingAction.CHANGE_VEHICLE, "pending_partner_approval")
        assert target_status(BookingAction.CHANGE_VEHICLE, "active") == "active"


class TestAssertTransitionAllowed:

    def test_returns_transition_when_allowed(self):
        transition = assert_transition_allowed(BookingAction.COMPLETE, _booking("active"))

        assert transition.to_status == "completed"

    def test_raises_with_current_and_allowed_statuses(self):
        with pytest.raises(InvalidStateError) as exc_info:
            assert_transition_allowed(BookingAction.RELEASE_VEHICLE, _booking("completed"))

        error = exc_info.value
        assert error.message == "Cannot release vehicle for booking with status: completed"
        assert error.details["current_status"] == "completed"
        assert "active" in error.details["allowed_statuses"]
        assert error.status_code == 409
