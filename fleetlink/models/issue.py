import secrets
import time
from datetime import datetime
from sqlalchemy import Column, String, Text, ForeignKey, DateTime, Index, JSON
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class IssueType(str, enum.Enum):
    MECHANICAL = "mechanical"
    DAMAGE = "damage"
    CLEANLINESS = "cleanliness"
    DOCUMENTATION = "documentation"
    OTHER = "other"


class IssueSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IssueStatus(str, enum.Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"


def generate_issue_id() -> str:
    """issue_<epoch ms>_<random suffix>"""
    return f"issue_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class BookingIssue(Base):
    __tablename__ = "booking_issues"

    id = Column(String(64), primary_key=True, default=generate_issue_id)
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    type = Column(String(30), nullable=False)
    description = Column(Text, nullable=False)
    severity = Column(String(20), nullable=False, default=IssueSeverity.MEDIUM.value)
    status = Column(String(20), nullable=False, default=IssueStatus.OPEN.value)

    reported_by = Column(String(36), nullable=False)
    reported_by_type = Column(String(30), nullable=False)
    reported_by_name = Column(String(100), nullable=True)
    reported_at = Column(DateTime, default=datetime.utcnow)
    images = Column(JSON, default=list)

    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(36), nullable=True)
    resolution_notes = Column(Text, nullable=True)

    booking = relationship("Booking", back_populates="issues")

    __table_args__ = (
        Index("ix_issue_booking", "booking_id", "reported_at"),
    )

    def __repr__(self):
        return f"<BookingIssue {self.id} {self.severity}>"
