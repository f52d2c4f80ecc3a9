"""
Health checks for load balancers and operators.

/health and /health/live answer without touching the database,
/health/ready fails with 503 while the database is unreachable, and
/health/detailed reports every component to platform operators.
"""

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, text
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db
from ..models.outbox import SideEffectOutbox
from ..services.deadline_scheduler import get_scheduler_status
from ..utils.dependencies import Actor, get_current_actor

router = APIRouter(prefix="/health", tags=["Health"])

VERSION = "1.0.0"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def check_database(db: Session) -> dict:
    started = time.perf_counter()
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        return {"status": "down", "error": str(e)[:100]}

    return {
        "status": "up",
        "latency_ms": round((time.perf_counter() - started) * 1000, 2),
        "type": db.bind.dialect.name,
    }


def check_outbox(db: Session) -> dict:
    """Entry counts per status. A single failed entry marks the outbox degraded."""
    try:
        counts = dict(
            db.query(SideEffectOutbox.status, func.count(SideEffectOutbox.id))
            .group_by(SideEffectOutbox.status)
            .all()
        )
    except Exception as e:
        return {"status": "down", "error": str(e)[:100]}

    return {"status": "degraded" if counts.get("failed") else "up", "counts": counts}


def check_scheduler() -> dict:
    scheduler = get_scheduler_status()
    return {"status": "up" if scheduler["running"] else "stopped", **scheduler}


def overall_status(checks: dict) -> str:
    if checks["database"]["status"] == "down":
        return "unhealthy"
    if any(check.get("status") == "degraded" for check in checks.values()):
        return "degraded"
    return "healthy"


@router.get("")
@router.get("/")
async def simple_health_check():
    return {"status": "healthy", "timestamp": _now(), "version": VERSION}


@router.get("/live")
@router.get("/live/")
async def liveness_check():
    return {"status": "alive", "timestamp": _now()}


@router.get("/ready")
@router.get("/ready/")
async def readiness_check(db: Session = Depends(get_db)):
    if check_database(db)["status"] != "up":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "not_ready", "reason": "database_unavailable", "timestamp": _now()},
        )
    return {"status": "ready", "timestamp": _now()}


@router.get("/detailed")
@router.get("/detailed/")
async def detailed_health_check(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    if actor.type != "platform_operator":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Restricted to platform operators"
        )

    checks = {
        "database": check_database(db),
        "outbox": check_outbox(db),
        "deadline_scheduler": check_scheduler(),
    }

    return {
        "status": overall_status(checks),
        "timestamp": _now(),
        "version": VERSION,
        "environment": settings.environment,
        "checks": checks,
        "config": {
            "worker_enabled": settings.worker_enabled,
            "worker_poll_interval": settings.worker_poll_interval,
            "outbox_max_attempts": settings.outbox_max_attempts,
            "deadline_sweep_enabled": settings.deadline_sweep_enabled,
            "partner_acceptance_window_hours": settings.partner_acceptance_window_hours,
        },
    }
