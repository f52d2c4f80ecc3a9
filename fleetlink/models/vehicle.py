import uuid
from datetime import datetime
from sqlalchemy import Column, String, Numeric, Text, ForeignKey, DateTime, Index
from ..database import Base
import enum


class VehicleStatus(str, enum.Enum):
    AVAILABLE = "available"
    BOOKED = "booked"
    MAINTENANCE_REQUIRED = "maintenance_required"


class Vehicle(Base):
    __tablename__ = "vehicles"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    partner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    make = Column(String(50), nullable=True)
    model = Column(String(50), nullable=True)
    registration_number = Column(String(20), nullable=True)

    # Supplied by the pricing side of the fleet dashboard
    weekly_rate = Column(Numeric(10, 2), nullable=True)

    status = Column(String(30), default=VehicleStatus.AVAILABLE.value, nullable=False)

    # One booking at most; mirrored by bookings.vehicle_id
    current_booking_id = Column(String(36), nullable=True)
    active_booking_started = Column(DateTime, nullable=True)

    released_at = Column(DateTime, nullable=True)
    released_by = Column(String(36), nullable=True)
    released_by_type = Column(String(30), nullable=True)
    release_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_vehicle_partner", "partner_id"),
        Index("ix_vehicle_current_booking", "current_booking_id", unique=True),
    )

    def __repr__(self):
        return f"<Vehicle {self.registration_number or self.id} {self.status}>"
