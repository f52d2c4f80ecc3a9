"""
Side-effect Outbox Worker

Booking operations never write history rows or notifications directly.
They append SideEffectOutbox rows in the same transaction as their primary
mutation; this module turns those rows into BookingHistory / Notification
rows (and retries deferred booking promotions).

Features:
- Claiming via conditional update, skip_locked reads on PostgreSQL
- Idempotent materialization: the produced row reuses the outbox id
- Exponential backoff, FAILED after max_attempts
- Inline drain right after a request commits, background drain for the rest
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_
from sqlalchemy.orm import Session

from ..config import settings
from ..models.booking_history import BookingHistory, serialize_for_json
from ..models.notification import Notification
from ..models.outbox import SideEffectOutbox, OutboxStatus, OutboxKind
from ..utils.db_helpers import conditional_update, get_pending_with_skip_locked

logger = logging.getLogger(__name__)


class OutboxProcessor:
    """Turns outbox rows into history rows, notifications and promotions."""

    def __init__(self, db: Session):
        self.db = db
        self._handlers = {
            OutboxKind.HISTORY.value: self._materialize_history,
            OutboxKind.NOTIFICATION.value: self._materialize_notification,
            OutboxKind.BOOKING_PROMOTION.value: self._retry_booking_promotion,
        }

    def get_pending_events(self, limit: int = 50) -> List[SideEffectOutbox]:
        """Due entries with attempts left, oldest first."""
        now = datetime.utcnow()
        return get_pending_with_skip_locked(
            self.db,
            SideEffectOutbox,
            and_(
                SideEffectOutbox.status.in_([
                    OutboxStatus.PENDING.value,
                    OutboxStatus.RETRYING.value
                ]),
                SideEffectOutbox.next_attempt_at <= now,
                SideEffectOutbox.attempts < SideEffectOutbox.max_attempts
            ),
            order_by=SideEffectOutbox.created_at,
            limit=limit,
        )

    def get_failed_events(self, limit: int = 100) -> List[SideEffectOutbox]:
        return self.db.query(SideEffectOutbox).filter(
            SideEffectOutbox.status == OutboxStatus.FAILED.value
        ).order_by(SideEffectOutbox.created_at.desc()).limit(limit).all()

    def retry_failed_event(self, event_id: str) -> bool:
        """Reset a failed entry so the next batch runs it from attempt one."""
        event = self.db.query(SideEffectOutbox).filter(
            SideEffectOutbox.id == event_id,
            SideEffectOutbox.status == OutboxStatus.FAILED.value
        ).first()

        if not event:
            return False

        event.status = OutboxStatus.PENDING.value
        event.attempts = 0
        event.next_attempt_at = datetime.utcnow()
        event.last_error = None
        self.db.commit()
        logger.info(f"Outbox event {event_id} ({event.kind}) requeued")
        return True

    def requeue_stale_events(self, older_than_minutes: int = 10) -> int:
        """Put back events left in PROCESSING by a worker that died mid-event"""
        cutoff = datetime.utcnow() - timedelta(minutes=older_than_minutes)
        count = conditional_update(
            self.db,
            SideEffectOutbox,
            and_(
                SideEffectOutbox.status == OutboxStatus.PROCESSING.value,
                SideEffectOutbox.updated_at < cutoff
            ),
            {"status": OutboxStatus.RETRYING.value, "next_attempt_at": datetime.utcnow()}
        )
        self.db.commit()
        if count:
            logger.warning(f"Requeued {count} stale outbox events")
        return count

    def _claim(self, event_id: str) -> bool:
        claimed = conditional_update(
            self.db,
            SideEffectOutbox,
            and_(
                SideEffectOutbox.id == event_id,
                SideEffectOutbox.status.in_([
                    OutboxStatus.PENDING.value,
                    OutboxStatus.RETRYING.value
                ])
            ),
            {
                "status": OutboxStatus.PROCESSING.value,
                "attempts": SideEffectOutbox.attempts + 1,
                "updated_at": datetime.utcnow(),
            }
        )
        self.db.commit()
        return claimed > 0

    def process_event(self, event_id: str) -> bool:
        """False when the handler raised or another worker holds the entry."""
        if not self._claim(event_id):
            return False

        event = self.db.get(SideEffectOutbox, event_id)

        try:
            handler = self._handlers.get(event.kind)
            if handler is None:
                raise ValueError(f"Unknown outbox kind: {event.kind}")

            handler(event)

            event.status = OutboxStatus.COMPLETED.value
            event.completed_at = datetime.utcnow()
            event.last_error = None
            self.db.commit()
            return True

        except Exception as e:
            self.db.rollback()
            logger.error(f"Error processing outbox event {event_id} ({event.kind}): {e}")
            event = self.db.get(SideEffectOutbox, event_id)
            self._handle_failure(event, str(e))
            self.db.commit()
            return False

    def _handle_failure(self, event: SideEffectOutbox, error: str):
        event.last_error = error[:1000]

        if event.attempts >= event.max_attempts:
            event.status = OutboxStatus.FAILED.value
            logger.error(f"Outbox event {event.id} permanently failed after {event.attempts} attempts")
        else:
            event.status = OutboxStatus.RETRYING.value
            # 1, 2, 4, 8 ... minutes, capped at an hour
            delay_minutes = min(2 ** (event.attempts - 1), 60)
            event.next_attempt_at = datetime.utcnow() + timedelta(minutes=delay_minutes)
            logger.warning(f"Outbox event {event.id} will retry in {delay_minutes} minutes")

    def process_batch(self, limit: int = 50) -> Tuple[int, int]:
        """(succeeded, failed) for one batch of due entries."""
        event_ids = [event.id for event in self.get_pending_events(limit=limit)]
        # Release skip_locked row locks before claiming one by one
        self.db.commit()
        return self.process_events(event_ids)

    def process_events(self, event_ids: Iterable[str]) -> Tuple[int, int]:
        success = 0
        failed = 0
        for event_id in event_ids:
            if self.process_event(event_id):
                success += 1
            else:
                failed += 1
        return success, failed

    def _materialize_history(self, event: SideEffectOutbox):
        if self.db.get(BookingHistory, event.id) is not None:
            return
        payload = event.payload or {}
        entry = BookingHistory.build(
            booking_id=payload["booking_id"],
            action=payload["action"],
            performed_by=payload.get("performed_by"),
            performed_by_type=payload["performed_by_type"],
            description=payload.get("description"),
            details=payload.get("details"),
            created_at=_parse_timestamp(payload.get("occurred_at")),
        )
        entry.id = event.id
        self.db.add(entry)

    def _materialize_notification(self, event: SideEffectOutbox):
        if self.db.get(Notification, event.id) is not None:
            return
        payload = event.payload or {}
        self.db.add(Notification(
            id=event.id,
            recipient_id=payload.get("recipient_id"),
            recipient_type=payload["recipient_type"],
            type=payload["type"],
            title=payload["title"],
            message=payload.get("message"),
            data=payload.get("data"),
            priority=payload.get("priority", "medium"),
            created_at=_parse_timestamp(payload.get("occurred_at")),
        ))

    def _retry_booking_promotion(self, event: SideEffectOutbox):
        from .booking_state_machine import promote_after_first_payment

        payload = event.payload or {}
        promoted = promote_after_first_payment(
            self.db,
            booking_id=payload["booking_id"],
            instruction_id=payload.get("instruction_id"),
            driver_id=payload.get("driver_id"),
            commit=False,
        )
        logger.info(
            f"Deferred promotion for booking {payload['booking_id']}: "
            f"{'promoted' if promoted else 'no longer pending_payment'}"
        )


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return datetime.utcnow()
    return datetime.fromisoformat(value)


def _enqueue(
    db: Session,
    kind: OutboxKind,
    payload: Dict,
    booking_id: Optional[str] = None,
    idempotency_key: Optional[str] = None
) -> SideEffectOutbox:
    """
    Add an outbox row to the caller's transaction. Does not commit: the row
    must land together with the primary mutation.
    """
    if idempotency_key:
        existing = db.query(SideEffectOutbox).filter(
            SideEffectOutbox.idempotency_key == idempotency_key
        ).first()
        if existing:
            return existing

    event = SideEffectOutbox(
        id=str(uuid.uuid4()),
        kind=kind.value,
        booking_id=booking_id,
        payload=payload,
        status=OutboxStatus.PENDING.value,
        attempts=0,
        max_attempts=settings.outbox_max_attempts,
        next_attempt_at=datetime.utcnow(),
        idempotency_key=idempotency_key,
    )
    db.add(event)
    return event


def enqueue_history(
    db: Session,
    booking_id: str,
    action: str,
    performed_by: Optional[str],
    performed_by_type: str,
    description: str,
    details: Optional[Dict] = None,
    idempotency_key: Optional[str] = None
) -> SideEffectOutbox:
    return _enqueue(
        db,
        OutboxKind.HISTORY,
        {
            "booking_id": booking_id,
            "action": action,
            "performed_by": performed_by,
            "performed_by_type": performed_by_type,
            "description": description,
            "details": serialize_for_json(details or {}),
            "occurred_at": datetime.utcnow().isoformat(),
        },
        booking_id=booking_id,
        idempotency_key=idempotency_key,
    )


def enqueue_notification(
    db: Session,
    recipient_id: Optional[str],
    recipient_type: str,
    notification_type: str,
    title: str,
    message: str,
    data: Optional[Dict] = None,
    priority: str = "medium",
    booking_id: Optional[str] = None,
    idempotency_key: Optional[str] = None
) -> SideEffectOutbox:
    return _enqueue(
        db,
        OutboxKind.NOTIFICATION,
        {
            "recipient_id": recipient_id,
            "recipient_type": recipient_type,
            "type": notification_type,
            "title": title,
            "message": message,
            "data": serialize_for_json(data or {}),
            "priority": priority,
            "occurred_at": datetime.utcnow().isoformat(),
        },
        booking_id=booking_id,
        idempotency_key=idempotency_key,
    )


def enqueue_booking_promotion(
    db: Session,
    booking_id: str,
    instruction_id: str,
    driver_id: str
) -> SideEffectOutbox:
    return _enqueue(
        db,
        OutboxKind.BOOKING_PROMOTION,
        {"booking_id": booking_id, "instruction_id": instruction_id, "driver_id": driver_id},
        booking_id=booking_id,
        idempotency_key=f"promotion:{instruction_id}",
    )


def drain_inline(db: Session, events: Iterable[SideEffectOutbox]) -> Tuple[int, int]:
    """
    Materialize freshly committed outbox rows in the request that created them.

    Failures stay in the outbox for the background worker; the request has
    already succeeded and is not affected.
    """
    event_ids = [event.id for event in events if event is not None]
    if not event_ids or not settings.outbox_inline_drain:
        return 0, 0
    try:
        return OutboxProcessor(db).process_events(event_ids)
    except Exception as e:
        db.rollback()
        logger.error(f"Inline outbox drain failed, leaving {len(event_ids)} events to the worker: {e}")
        return 0, len(event_ids)
