from pydantic import BaseModel
from typing import Optional, Dict, Any
from datetime import datetime


class OutboxEventResponse(BaseModel):
    id: str
    kind: str
    booking_id: Optional[str] = None
    payload: Dict[str, Any]
    status: str
    attempts: int
    max_attempts: int
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RetryOutboxEventResponse(BaseModel):
    success: bool
    event_id: str
    status: str
