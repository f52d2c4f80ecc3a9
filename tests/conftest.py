"""
Shared fixtures: an in-memory SQLite database per test, a seeding helper and
a TestClient wired to the same database.
"""

import os

# Must be set before fleetlink.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("WORKER_ENABLED", "false")
os.environ.setdefault("DEADLINE_SWEEP_ENABLED", "false")
os.environ.setdefault("OUTBOX_INLINE_DRAIN", "true")
os.environ.setdefault("LOG_JSON", "false")

import uuid
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fleetlink import models  # noqa: F401
from fleetlink.database import Base, get_db
from fleetlink.main import app
from fleetlink.models import (
    Booking,
    BookingHistory,
    Notification,
    PartnerStaff,
    PaymentInstruction,
    User,
    Vehicle,
)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


class Seed:
    """Creates committed rows with sensible defaults"""

    def __init__(self, db):
        self.db = db

    def _add(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def user(self, role="driver", **fields):
        values = {"id": str(uuid.uuid4()), "role": role, "full_name": f"Test {role}"}
        values.update(fields)
        return self._add(User(**values))

    def driver(self, **fields):
        values = {"full_name": "Dan Driver"}
        values.update(fields)
        return self.user("driver", **values)

    def partner(self, **fields):
        values = {
            "full_name": "Pat Partner",
            "company_name": "Acme Cars",
            "bank_account_name": "Acme Cars Ltd",
            "bank_account_number": "12345678",
            "bank_sort_code": "12-34-56",
        }
        values.update(fields)
        return self.user("partner", **values)

    def operator(self, **fields):
        values = {"full_name": "Olive Operator"}
        values.update(fields)
        return self.user("platform_operator", **values)

    def staff(self, partner, can_view_financials=True, is_active=True):
        member = self.user("partner", full_name="Sam Staff")
        self._add(PartnerStaff(
            partner_id=partner.id,
            user_id=member.id,
            can_view_financials=can_view_financials,
            is_active=is_active,
        ))
        return member

    def vehicle(self, partner, **fields):
        values = {
            "id": str(uuid.uuid4()),
            "partner_id": partner.id,
            "make": "Toyota",
            "model": "Prius",
            "registration_number": "AB12 CDE",
            "weekly_rate": Decimal("250.00"),
            "status": "available",
        }
        values.update(fields)
        return self._add(Vehicle(**values))

    def booking(self, driver, partner, vehicle=None, **fields):
        values = {
            "id": str(uuid.uuid4()),
            "driver_id": driver.id,
            "partner_id": partner.id,
            "vehicle_id": vehicle.id if vehicle else None,
            "status": "pending_payment",
            "payment_status": "pending",
        }
        values.update(fields)
        return self._add(Booking(**values))

    def ready_booking(self, driver, partner, vehicle, **fields):
        """Accepted, paid, nothing outstanding"""
        values = {"status": "partner_accepted", "payment_status": "confirmed"}
        values.update(fields)
        return self.booking(driver, partner, vehicle, **values)

    def active_booking(self, driver, partner, vehicle, **fields):
        """Active with ``vehicle`` bound to it"""
        values = {"status": "active", "payment_status": "confirmed"}
        values.update(fields)
        booking = self.booking(driver, partner, vehicle, **values)
        vehicle.status = "booked"
        vehicle.current_booking_id = booking.id
        self.db.commit()
        return booking

    def instruction(self, booking, **fields):
        values = {
            "id": str(uuid.uuid4()),
            "booking_id": booking.id,
            "driver_id": booking.driver_id,
            "partner_id": booking.partner_id,
            "method": "bank_transfer",
            "frequency": "weekly",
            "type": "weekly_rent",
            "amount": Decimal("150.00"),
            "status": "pending",
            "vehicle_reg": "AB12 CDE",
        }
        values.update(fields)
        return self._add(PaymentInstruction(**values))

    def deposit(self, booking, **fields):
        values = {"type": "deposit", "frequency": "one_off", "status": "sent", "amount": Decimal("500.00")}
        values.update(fields)
        return self.instruction(booking, **values)


@pytest.fixture
def seed(db):
    return Seed(db)


def history_for(db, booking_id, action=None):
    query = db.query(BookingHistory).filter(BookingHistory.booking_id == booking_id)
    if action:
        query = query.filter(BookingHistory.action == action)
    return query.order_by(BookingHistory.created_at).all()


def notifications_for(db, recipient_id=None, recipient_type=None, type=None):
    query = db.query(Notification)
    if recipient_id is not None:
        query = query.filter(Notification.recipient_id == recipient_id)
    if recipient_type is not None:
        query = query.filter(Notification.recipient_type == recipient_type)
    if type is not None:
        query = query.filter(Notification.type == type)
    return query.all()


def actor_headers(user_id, actor_type):
    return {"X-Actor-Id": user_id, "X-Actor-Type": actor_type}


def update_elsewhere(session_factory, model, row_id, **values):
    """Commit a change from a second session, as a concurrent request would"""
    other = session_factory()
    try:
        other.query(model).filter(model.id == row_id).update(values, synchronize_session=False)
        other.commit()
    finally:
        other.close()
