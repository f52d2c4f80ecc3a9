"""
Tests for recipient resolution and notification fan-out wording
"""

from types import SimpleNamespace

import pytest

from fleetlink.services.recipients import (
    OPERATOR,
    BookingEvent,
    Recipient,
    resolve_recipients,
)


@pytest.fixture
def booking():
    return SimpleNamespace(id="b-1", driver_id="driver-1", partner_id="partner-1")


class TestResolveRecipients:
    """resolve_recipients is a pure function of its arguments"""

    def test_issue_reported_by_driver_skips_driver(self, booking):
        recipients = resolve_recipients(BookingEvent.ISSUE_REPORTED, booking, reporter_type="driver")

        assert recipients == [Recipient("partner-1", "partner"), OPERATOR]

    def test_issue_reported_by_partner_skips_partner(self, booking):
        recipients = resolve_recipients(BookingEvent.ISSUE_REPORTED, booking, reporter_type="partner")

        assert recipients == [Recipient("driver-1", "driver"), OPERATOR]

    def test_issue_reported_by_operator_notifies_both_parties(self, booking):
        recipients = resolve_recipients(
            BookingEvent.ISSUE_REPORTED, booking, reporter_type="platform_operator"
        )

        assert recipients == [
            Recipient("partner-1", "partner"),
            Recipient("driver-1", "driver"),
            OPERATOR,
        ]

    def test_return_request_goes_to_the_other_party(self, booking):
        recipients = resolve_recipients(BookingEvent.RETURN_REQUESTED, booking, reporter_type="partner")

        assert recipients == [Recipient("driver-1", "driver"), OPERATOR]

    def test_vehicle_released_goes_to_everyone(self, booking):
        recipients = resolve_recipients(BookingEvent.VEHICLE_RELEASED, booking)

        assert {r.recipient_type for r in recipients} == {"driver", "partner", "platform_operator"}
        assert len(recipients) == 3

    def test_first_payment_includes_financial_staff(self, booking):
        recipients = resolve_recipients(
            BookingEvent.FIRST_PAYMENT_SENT,
            booking,
            financial_staff_ids=["staff-1", "staff-2"],
        )

        assert recipients == [
            Recipient("partner-1", "partner"),
            Recipient("staff-1", "partner_staff"),
            Recipient("staff-2", "partner_staff"),
        ]

    def test_partner_on_own_staff_roster_is_notified_once(self, booking):
        recipients = resolve_recipients(
            BookingEvent.PAYMENT_SENT,
            booking,
            financial_staff_ids=["partner-1", "staff-1"],
        )

        ids = [r.recipient_id for r in recipients]
        assert ids == ["partner-1", "staff-1"]

    def test_staff_ignored_for_events_without_staff(self, booking):
        recipients = resolve_recipients(
            BookingEvent.BANK_TRANSFER_CONFIRMED,
            booking,
            financial_staff_ids=["staff-1"],
        )

        assert recipients == [Recipient("driver-1", "driver")]

    def test_reporter_type_ignored_outside_issue_events(self, booking):
        recipients = resolve_recipients(
            BookingEvent.BOOKING_CANCELLED, booking, reporter_type="driver"
        )

        assert Recipient("driver-1", "driver") in recipients

    def test_operator_recipient_has_no_id(self, booking):
        recipients = resolve_recipients(BookingEvent.CRITICAL_ISSUE, booking)

        assert recipients == [Recipient(None, "platform_operator")]

    def test_same_input_same_output(self, booking):
        first = resolve_recipients(BookingEvent.BOOKING_COMPLETED, booking)
        second = resolve_recipients(BookingEvent.BOOKING_COMPLETED, booking)

        assert first == second

    def test_unknown_event_raises(self, booking):
        with pytest.raises(KeyError):
            resolve_recipients("no_such_event", booking)


class TestFanOut:
    """Templates are rendered per recipient type and queued in the outbox"""

    def test_format_amount_uses_currency_symbol(self):
        from fleetlink.services.notification_fanout import format_amount

        assert format_amount("150") == "£150.00"
        assert format_amount(None) == "£0.00"

    def test_every_audience_member_has_a_template(self):
        from fleetlink.services.notification_fanout import TEMPLATES, _template_for
        from fleetlink.services.recipients import EVENT_AUDIENCES

        booking = SimpleNamespace(id="b-1", driver_id="d", partner_id="p")
        for event in EVENT_AUDIENCES:
            assert event in TEMPLATES
            for recipient in resolve_recipients(event, booking, financial_staff_ids=["s"]):
                assert _template_for(event, recipient.recipient_type) is not None, (event, recipient)

    def test_fan_out_queues_one_row_per_recipient(self, db, seed):
        from fleetlink.models import SideEffectOutbox
        from fleetlink.services.notification_fanout import fan_out

        driver = seed.driver()
        partner = seed.partner()
        booking = seed.booking(driver, partner, vehicle_reg="XY99 ZZZ")

        events = fan_out(
            db,
            BookingEvent.REFUND_REJECTED,
            booking,
            context={"reason": "damage found"},
        )
        db.commit()

        assert len(events) == 1
        row = db.query(SideEffectOutbox).one()
        assert row.payload["recipient_id"] == driver.id
        assert row.payload["type"] == "refund_rejected"
        assert "damage found" in row.payload["message"]

    def test_fan_out_idempotency_key_is_per_recipient(self, db, seed):
        from fleetlink.models import SideEffectOutbox
        from fleetlink.services.notification_fanout import fan_out

        booking = seed.booking(seed.driver(), seed.partner())

        fan_out(db, BookingEvent.BOOKING_ACTIVATED, booking, idempotency_key="activate:x")
        db.commit()
        fan_out(db, BookingEvent.BOOKING_ACTIVATED, booking, idempotency_key="activate:x")
        db.commit()

        assert db.query(SideEffectOutbox).count() == 2
