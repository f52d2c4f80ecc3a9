"""
Booking audit trail.

Entries are queued through the side-effect outbox together with the
mutation they describe and materialized into ``booking_history``.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ..models.booking_history import BookingHistory, HistoryAction
from ..models.outbox import SideEffectOutbox
from .outbox_worker import enqueue_history

logger = logging.getLogger(__name__)


def record(
    db: Session,
    booking_id: str,
    action: HistoryAction,
    performed_by: Optional[str],
    performed_by_type: str,
    description: str,
    details: Optional[Dict] = None,
    idempotency_key: Optional[str] = None,
) -> SideEffectOutbox:
    """Queue one history entry. Does not commit."""
    return enqueue_history(
        db,
        booking_id=booking_id,
        action=action.value if isinstance(action, HistoryAction) else action,
        performed_by=performed_by,
        performed_by_type=performed_by_type,
        description=description,
        details=details,
        idempotency_key=idempotency_key,
    )


def get_history(db: Session, booking_id: str, action: Optional[str] = None) -> List[BookingHistory]:
    query = db.query(BookingHistory).filter(BookingHistory.booking_id == booking_id)
    if action:
        query = query.filter(BookingHistory.action == action)
    return query.order_by(BookingHistory.created_at, BookingHistory.id).all()
