"""
Concurrency primitives shared by the booking and payment services.

Row locks are only taken on PostgreSQL. On SQLite (tests, local runs) the
same calls fall through to a plain re-read, and the guarded UPDATEs in
conditional_update are what keeps two racing transitions apart.
"""

import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

from sqlalchemy import func, update
from sqlalchemy.orm import Query, Session

logger = logging.getLogger(__name__)

T = TypeVar('T')


def _dialect(db: Session) -> Optional[str]:
    try:
        return db.bind.dialect.name
    except AttributeError:
        return None


def is_postgres(db: Session) -> bool:
    return _dialect(db) == 'postgresql'


def is_sqlite(db: Session) -> bool:
    """True for SQLite, and for sessions with no bind to inspect."""
    name = _dialect(db)
    return name is None or name == 'sqlite'


def _lock(db: Session, query: Query, skip_locked: bool = False) -> Query:
    if not is_postgres(db):
        return query
    if skip_locked:
        return query.with_for_update(skip_locked=True)
    return query.with_for_update()


def acquire_row_lock(db: Session, model: Type[T], filter_condition) -> Optional[T]:
    """
    Re-read one row under SELECT ... FOR UPDATE.

    populate_existing makes an instance already loaded in this session pick
    up the committed column values, so callers always decide on fresh state.

        booking = acquire_row_lock(db, Booking, Booking.id == booking_id)
    """
    query = _lock(db, db.query(model).filter(filter_condition))
    return query.populate_existing().first()


def conditional_update(db: Session, model: Type[T], filter_condition, values: Dict[str, Any]) -> int:
    """
    Apply ``values`` where ``filter_condition`` still holds; return rows hit.

    The condition names the status the caller observed, e.g.
    ``and_(PaymentInstruction.id == iid, PaymentInstruction.status == "pending")``.
    A result of 0 means another request got there first. Never commits.
    """
    stmt = (
        update(model)
        .where(filter_condition)
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    return db.execute(stmt).rowcount or 0


def get_pending_with_skip_locked(
    db: Session,
    model: Type[T],
    filter_condition,
    order_by=None,
    limit: int = 50
) -> List[T]:
    """Claim a batch of rows; concurrent workers skip whatever this one locked."""
    query = db.query(model).filter(filter_condition)
    if order_by is not None:
        query = query.order_by(order_by)
    return _lock(db, query, skip_locked=True).limit(limit).all()


class AtomicCounter:
    """Server-side increments for money columns that several requests touch."""

    @staticmethod
    def increment(db: Session, model: Type[T], filter_condition, column_name: str, increment_by=1):
        """Add ``increment_by`` (NULL counts as 0) and return the stored total."""
        column = getattr(model, column_name)
        db.execute(
            update(model)
            .where(filter_condition)
            .values({column_name: func.coalesce(column, 0) + increment_by})
            .execution_options(synchronize_session=False)
        )
        row = db.query(model).filter(filter_condition).populate_existing().first()
        return getattr(row, column_name, 0) if row is not None else 0
