"""
Actor directory read by the booking engine.

Accounts, sign-up and sessions are owned elsewhere; the engine only needs to
resolve an id to a role and display name, a partner's bank details, and the
partner's staff roster with the financial-visibility flag.
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Index
import enum

from ..database import Base


class UserRole(str, enum.Enum):
    DRIVER = "driver"
    PARTNER = "partner"
    PLATFORM_OPERATOR = "platform_operator"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    full_name = Column(String(100), nullable=True)
    email = Column(String(255), nullable=True)
    role = Column(String(30), nullable=False, default=UserRole.DRIVER.value)
    is_active = Column(Boolean, default=True)

    # Partners only
    company_name = Column(String(100), nullable=True)
    bank_account_name = Column(String(100), nullable=True)
    bank_account_number = Column(String(20), nullable=True)
    bank_sort_code = Column(String(10), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def display_name(self) -> str:
        return self.full_name or self.company_name or self.email or "Unknown"

    def __repr__(self):
        return f"<User {self.id} {self.role}>"


class PartnerStaff(Base):
    __tablename__ = "partner_staff"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    partner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    is_active = Column(Boolean, default=True)
    can_view_financials = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_partner_staff_partner", "partner_id", "is_active"),
    )

    def __repr__(self):
        return f"<PartnerStaff {self.user_id} of {self.partner_id}>"
