from pydantic import BaseModel
from typing import Optional, List, Dict, Any
from datetime import datetime


class NotificationResponse(BaseModel):
    id: str
    recipient_id: Optional[str] = None
    recipient_type: str
    type: str
    title: str
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    priority: str
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class NotificationListResponse(BaseModel):
    notifications: List[NotificationResponse]
    total: int
    unread_count: int
