"""
Notifications produced by the booking fan-out
"""
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from sqlalchemy import and_, desc, or_

from ..database import get_db
from ..exceptions import NotFoundError
from ..models import Notification, RecipientType
from ..schemas.notification import NotificationListResponse, NotificationResponse
from ..utils.dependencies import Actor, get_current_actor
from ..utils.rate_limiter import limiter, get_rate_limit


router = APIRouter(prefix="/api/notifications", tags=["Notifications"])


def _visible_to(actor: Actor):
    """Own notifications; operators also see the shared operator channel"""
    condition = Notification.recipient_id == actor.id
    if actor.type == RecipientType.PLATFORM_OPERATOR.value:
        condition = or_(
            condition,
            and_(
                Notification.recipient_id == None,  # noqa: E711
                Notification.recipient_type == RecipientType.PLATFORM_OPERATOR.value
            )
        )
    return condition


@router.get("", response_model=NotificationListResponse)
@router.get("/", response_model=NotificationListResponse)
@limiter.limit(get_rate_limit("notifications"))
async def get_notifications(
    request: Request,
    limit: int = Query(50, le=100, ge=1),
    offset: int = Query(0, ge=0),
    unread_only: bool = Query(False),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Notifications for the calling actor, newest first"""
    query = db.query(Notification).filter(_visible_to(actor))

    if unread_only:
        query = query.filter(Notification.is_read == False)  # noqa: E712

    total = query.count()
    unread_count = db.query(Notification).filter(
        _visible_to(actor),
        Notification.is_read == False  # noqa: E712
    ).count()

    notifications = query.order_by(desc(Notification.created_at)).offset(offset).limit(limit).all()

    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(n) for n in notifications],
        total=total,
        unread_count=unread_count
    )


@router.patch("/{notification_id}/read", response_model=NotificationResponse)
@router.patch("/{notification_id}/read/", response_model=NotificationResponse)
async def mark_notification_read(
    notification_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    notification = db.query(Notification).filter(
        Notification.id == notification_id,
        _visible_to(actor)
    ).first()

    if not notification:
        raise NotFoundError("Notification not found", notification_id=notification_id)

    if not notification.is_read:
        notification.mark_as_read()
        db.commit()
        db.refresh(notification)

    return notification
