"""
Side-effect outbox management for platform operators.

Entries that ran out of attempts stay in ``failed`` until an operator
requeues them; the next drain then runs them from attempt one.
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.outbox import OutboxStatus
from ..schemas.outbox import OutboxEventResponse, RetryOutboxEventResponse
from ..services.outbox_worker import OutboxProcessor
from ..utils.dependencies import Actor, get_current_actor
from ..utils.rate_limiter import limiter, get_rate_limit


router = APIRouter(prefix="/api/outbox", tags=["Outbox"])


def require_operator(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.type != "platform_operator":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Restricted to platform operators"
        )
    return actor


@router.get("/failures", response_model=List[OutboxEventResponse])
@router.get("/failures/", response_model=List[OutboxEventResponse])
@limiter.limit(get_rate_limit("outbox_admin"))
async def list_outbox_failures(
    request: Request,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_operator)
):
    """Failed entries, newest first"""
    return OutboxProcessor(db).get_failed_events(limit=limit)


@router.post("/{event_id}/retry", response_model=RetryOutboxEventResponse)
@router.post("/{event_id}/retry/", response_model=RetryOutboxEventResponse)
@limiter.limit(get_rate_limit("outbox_admin"))
async def retry_outbox_event(
    request: Request,
    event_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_operator)
):
    if not OutboxProcessor(db).retry_failed_event(event_id):
        raise HTTPException(status_code=404, detail="Outbox event not found")
    return RetryOutboxEventResponse(success=True, event_id=event_id, status=OutboxStatus.PENDING.value)
