"""
Concurrency helper tests

Tests cover:
- Row locking only on PostgreSQL
- Conditional updates reporting the rows they hit
- Atomic counter increments
- Services re-reading rows through the lock helper
"""

from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock

import pytest

ROOT = Path(__file__).resolve().parent.parent


class TestDialectDetection:

    def test_postgres(self):
        from fleetlink.utils.db_helpers import is_postgres, is_sqlite

        db = MagicMock()
        db.bind.dialect.name = 'postgresql'

        assert is_postgres(db) is True
        assert is_sqlite(db) is False

    def test_sqlite(self):
        from fleetlink.utils.db_helpers import is_postgres, is_sqlite

        db = MagicMock()
        db.bind.dialect.name = 'sqlite'

        assert is_postgres(db) is False
        assert is_sqlite(db) is True

    def test_unbound_session_defaults_to_sqlite(self):
        from fleetlink.utils.db_helpers import is_postgres, is_sqlite

        db = MagicMock()
        db.bind = None

        assert is_postgres(db) is False
        assert is_sqlite(db) is True


class TestAcquireRowLock:

    def _db(self, dialect):
        db = MagicMock()
        db.bind.dialect.name = dialect
        query_mock = MagicMock()
        filter_mock = MagicMock()
        query_mock.filter.return_value = filter_mock
        db.query.return_value = query_mock
        return db, filter_mock

    def test_uses_for_update_on_postgres(self):
        """acquire_row_lock applies with_for_update on PostgreSQL"""
        from fleetlink.models import Booking
        from fleetlink.utils.db_helpers import acquire_row_lock

        db, filter_mock = self._db('postgresql')

        acquire_row_lock(db, Booking, Booking.id == 'b-1')

        filter_mock.with_for_update.assert_called_once_with()
        locked = filter_mock.with_for_update.return_value
        locked.populate_existing.return_value.first.assert_called_once()

    def test_batch_reads_skip_locked_rows_on_postgres(self):
        from fleetlink.models import SideEffectOutbox
        from fleetlink.utils.db_helpers import get_pending_with_skip_locked

        db, filter_mock = self._db('postgresql')
        get_pending_with_skip_locked(db, SideEffectOutbox, SideEffectOutbox.status == 'pending', limit=10)

        filter_mock.with_for_update.assert_called_once_with(skip_locked=True)
        filter_mock.with_for_update.return_value.limit.assert_called_once_with(10)

    def test_skips_locking_on_sqlite(self):
        """SQLite has no row locks; the row is still re-read"""
        from fleetlink.models import Booking
        from fleetlink.utils.db_helpers import acquire_row_lock

        db, filter_mock = self._db('sqlite')

        acquire_row_lock(db, Booking, Booking.id == 'b-1')

        filter_mock.with_for_update.assert_not_called()
        filter_mock.populate_existing.return_value.first.assert_called_once()


class TestConditionalUpdate:

    def test_returns_rowcount(self):
        from fleetlink.models import PaymentInstruction
        from fleetlink.utils.db_helpers import conditional_update

        db = MagicMock()
        db.execute.return_value.rowcount = 1

        hit = conditional_update(
            db, PaymentInstruction,
            PaymentInstruction.status == 'pending',
            {'status': 'sent'}
        )

        assert hit == 1
        db.execute.assert_called_once()
        db.commit.assert_not_called()

    def test_missing_rowcount_is_zero(self):
        from fleetlink.models import PaymentInstruction
        from fleetlink.utils.db_helpers import conditional_update

        db = MagicMock()
        db.execute.return_value.rowcount = None

        assert conditional_update(db, PaymentInstruction, PaymentInstruction.id == 'x', {'status': 'sent'}) == 0

    def test_loser_of_a_race_gets_zero(self, db, seed):
        """Two updates guarded by the same observed status: only the first applies"""
        from sqlalchemy import and_
        from fleetlink.models import PaymentInstruction
        from fleetlink.utils.db_helpers import conditional_update

        booking = seed.booking(seed.driver(), seed.partner())
        instruction = seed.instruction(booking)
        guard = and_(PaymentInstruction.id == instruction.id, PaymentInstruction.status == 'pending')

        assert conditional_update(db, PaymentInstruction, guard, {'status': 'sent'}) == 1
        assert conditional_update(db, PaymentInstruction, guard, {'status': 'received'}) == 0
        db.commit()

        db.refresh(instruction)
        assert instruction.status == 'sent'


class TestAtomicCounter:

    def test_increment_from_null(self, db, seed):
        from fleetlink.models import Booking
        from fleetlink.utils.db_helpers import AtomicCounter

        booking = seed.booking(seed.driver(), seed.partner(), deposit_refunded=None)

        value = AtomicCounter.increment(db, Booking, Booking.id == booking.id, 'deposit_refunded', Decimal('100'))
        value = AtomicCounter.increment(db, Booking, Booking.id == booking.id, 'deposit_refunded', Decimal('50'))
        db.commit()

        assert Decimal(str(value)) == Decimal('150')


class TestServicesUseRowLocks:
    """Every state-changing service re-reads its row through acquire_row_lock"""

    @pytest.mark.parametrize("path,needle", [
        ('fleetlink/services/booking_state_machine.py', 'acquire_row_lock(db, Booking, Booking.id == booking_id)'),
        ('fleetlink/services/payment_ledger.py', 'acquire_row_lock(db, PaymentInstruction, PaymentInstruction.id == instruction_id)'),
        ('fleetlink/services/vehicle_assignment.py', 'acquire_row_lock(db, Booking, Booking.id == booking_id)'),
        ('fleetlink/services/issue_log.py', 'acquire_row_lock(db, Booking, Booking.id == booking_id)'),
    ])
    def test_lock_helper_used(self, path, needle):
        with open(ROOT / path, 'r', encoding='utf-8') as f:
            content = f.read()

        assert 'from ..utils.db_helpers import' in content
        assert needle in content
