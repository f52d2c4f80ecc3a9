"""
Tests for the side-effect outbox

Tests cover:
- Materialization of history and notification rows
- Retry backoff and permanent failure
- Requeue of events stuck in processing
- Inline drain switch
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from fleetlink.models import BookingHistory, Notification, SideEffectOutbox
from fleetlink.services import outbox_worker
from fleetlink.services.outbox_worker import (
    OutboxProcessor,
    drain_inline,
    enqueue_history,
    enqueue_notification,
)


@pytest.fixture
def booking(seed):
    return seed.booking(seed.driver(), seed.partner())


def _history_event(db, booking, **kwargs):
    event = enqueue_history(
        db,
        booking_id=booking.id,
        action="booking_activated",
        performed_by=booking.partner_id,
        performed_by_type="partner",
        description="Booking activated by partner. Vehicle ready for collection.",
        details={"triggered_by": "manual"},
        **kwargs
    )
    db.commit()
    return event


class TestMaterialization:

    def test_history_row_reuses_outbox_id(self, db, booking):
        event = _history_event(db, booking)

        success, failed = OutboxProcessor(db).process_batch()

        assert (success, failed) == (1, 0)
        entry = db.get(BookingHistory, event.id)
        assert entry.action == "booking_activated"
        assert entry.details == {"triggered_by": "manual"}
        db.refresh(event)
        assert event.status == "completed"
        assert event.attempts == 1
        assert event.completed_at is not None

    def test_notification_row(self, db, booking):
        event = enqueue_notification(
            db,
            recipient_id=None,
            recipient_type="platform_operator",
            notification_type="critical_issue_alert",
            title="CRITICAL",
            message="Brakes",
            data={"booking_id": booking.id},
            priority="critical",
            booking_id=booking.id,
        )
        db.commit()

        OutboxProcessor(db).process_batch()

        note = db.get(Notification, event.id)
        assert note.recipient_id is None
        assert note.priority == "critical"
        assert note.is_read is False

    def test_materialization_is_idempotent(self, db, booking):
        event = _history_event(db, booking)
        processor = OutboxProcessor(db)
        processor.process_batch()

        # Row written, but the entry was left failed
        event.status = "failed"
        db.commit()

        assert processor.retry_failed_event(event.id) is True
        processor.process_batch()

        assert db.query(BookingHistory).filter(BookingHistory.booking_id == booking.id).count() == 1

    def test_idempotency_key_deduplicates_across_transactions(self, db, booking):
        first = _history_event(db, booking, idempotency_key="activate:1")
        second = _history_event(db, booking, idempotency_key="activate:1")

        assert first.id == second.id
        assert db.query(SideEffectOutbox).count() == 1

    def test_completed_event_is_not_processed_again(self, db, booking):
        event = _history_event(db, booking)
        processor = OutboxProcessor(db)
        processor.process_batch()

        assert processor.process_event(event.id) is False


class TestRetries:

    def test_failure_backs_off(self, db, booking):
        event = _history_event(db, booking)
        processor = OutboxProcessor(db)

        processor._handlers["history"] = MagicMock(side_effect=RuntimeError("boom"))
        assert processor.process_event(event.id) is False

        db.refresh(event)
        assert event.status == "retrying"
        assert event.attempts == 1
        assert event.last_error == "boom"
        delay = event.next_attempt_at - datetime.utcnow()
        assert timedelta(seconds=50) < delay <= timedelta(minutes=1)

        # Not due yet
        assert processor.get_pending_events() == []

    @pytest.mark.parametrize("attempts,expected_minutes", [(1, 1), (2, 2), (3, 4), (4, 8), (8, 60)])
    def test_backoff_schedule(self, db, booking, attempts, expected_minutes):
        event = _history_event(db, booking)
        event.attempts = attempts
        event.max_attempts = 10
        before = datetime.utcnow()

        OutboxProcessor(db)._handle_failure(event, "error")

        assert event.status == "retrying"
        expected = before + timedelta(minutes=expected_minutes)
        assert expected <= event.next_attempt_at <= expected + timedelta(seconds=5)

    def test_failed_after_max_attempts(self, db, booking):
        event = _history_event(db, booking)
        event.attempts = event.max_attempts

        OutboxProcessor(db)._handle_failure(event, "x" * 2000)
        db.commit()

        db.refresh(event)
        assert event.status == "failed"
        assert len(event.last_error) == 1000
        assert [e.id for e in OutboxProcessor(db).get_failed_events()] == [event.id]

    def test_unknown_kind_is_a_failure(self, db, booking):
        event = _history_event(db, booking)
        event.kind = "carrier_pigeon"
        db.commit()

        assert OutboxProcessor(db).process_event(event.id) is False

        db.refresh(event)
        assert event.status == "retrying"
        assert "Unknown outbox kind" in event.last_error

    def test_requeue_stale_processing_events(self, db, booking):
        stale = _history_event(db, booking)
        fresh = _history_event(db, booking)
        stale.status = "processing"
        fresh.status = "processing"
        db.commit()
        db.query(SideEffectOutbox).filter(SideEffectOutbox.id == stale.id).update(
            {"updated_at": datetime.utcnow() - timedelta(minutes=30)}
        )
        db.commit()

        assert OutboxProcessor(db).requeue_stale_events(older_than_minutes=10) == 1

        db.refresh(stale)
        db.refresh(fresh)
        assert stale.status == "retrying"
        assert fresh.status == "processing"

    def test_only_failed_entries_are_requeued(self, db, booking):
        event = _history_event(db, booking)
        processor = OutboxProcessor(db)

        assert processor.retry_failed_event(event.id) is False
        assert processor.retry_failed_event("missing") is False

        event.status = "failed"
        event.attempts = event.max_attempts
        event.last_error = "boom"
        db.commit()

        assert processor.retry_failed_event(event.id) is True
        db.refresh(event)
        assert event.status == "pending"
        assert event.attempts == 0
        assert event.last_error is None
        assert processor.get_failed_events() == []


class TestDrainInline:

    def test_drains_given_events(self, db, booking):
        event = _history_event(db, booking)

        assert drain_inline(db, [event]) == (1, 0)
        assert db.get(BookingHistory, event.id) is not None

    def test_disabled_leaves_events_for_worker(self, db, booking):
        event = _history_event(db, booking)

        with patch.object(outbox_worker.settings, "outbox_inline_drain", False):
            assert drain_inline(db, [event]) == (0, 0)

        db.refresh(event)
        assert event.status == "pending"
        assert db.get(BookingHistory, event.id) is None

    def test_nothing_to_drain(self, db):
        assert drain_inline(db, []) == (0, 0)
