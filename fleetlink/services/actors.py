"""
Identity lookups used by the booking services.

Resolves caller ids to roles and display names, answers ownership questions
and returns a partner's financial staff roster.
"""

import logging
from typing import List, Optional, Dict

from sqlalchemy.orm import Session

from ..models.user import User, PartnerStaff, UserRole

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

ACTOR_TYPES = (
    UserRole.DRIVER.value,
    UserRole.PARTNER.value,
    UserRole.PLATFORM_OPERATOR.value,
)


def get_display_name(db: Session, user_id: Optional[str]) -> str:
    if not user_id:
        return "Unknown"
    user = db.query(User).filter(User.id == user_id).first()
    return user.display_name if user else "Unknown"


def is_platform_operator(db: Session, user_id: str) -> bool:
    user = db.query(User).filter(User.id == user_id).first()
    return bool(user and user.is_active and user.role == UserRole.PLATFORM_OPERATOR.value)


def owns_booking(db: Session, booking, actor_id: str, actor_type: str) -> bool:
    """
    Driver and partner must match the booking's party ids; an operator claim
    is checked against the user directory.
    """
    if actor_type == UserRole.DRIVER.value:
        return booking.driver_id == actor_id
    if actor_type == UserRole.PARTNER.value:
        return booking.partner_id == actor_id
    if actor_type == UserRole.PLATFORM_OPERATOR.value:
        return is_platform_operator(db, actor_id)
    return False


def get_financial_staff_ids(db: Session, partner_id: str) -> List[str]:
    """Active staff of a partner flagged with financial visibility"""
    rows = db.query(PartnerStaff.user_id).filter(
        PartnerStaff.partner_id == partner_id,
        PartnerStaff.is_active == True,  # noqa: E712
        PartnerStaff.can_view_financials == True,  # noqa: E712
    ).order_by(PartnerStaff.created_at).all()
    return [row[0] for row in rows]


def is_financial_staff(db: Session, partner_id: str, user_id: str) -> bool:
    return user_id in get_financial_staff_ids(db, partner_id)


def get_partner_bank_details(db: Session, partner_id: str) -> Dict[str, Optional[str]]:
    partner = db.query(User).filter(User.id == partner_id).first()
    if not partner:
        logger.warning(f"Partner {partner_id} not found when reading bank details")
        return {"account_name": None, "account_number": None, "sort_code": None}
    return {
        "account_name": partner.bank_account_name or partner.company_name or partner.full_name,
        "account_number": partner.bank_account_number,
        "sort_code": partner.bank_sort_code,
    }
