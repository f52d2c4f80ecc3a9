"""
Partner acceptance deadline enforcement.

A booking promoted to pending_partner_approval carries a deadline. An
APScheduler interval job in the API process (and worker.py, when the API runs
without it) auto-rejects every booking still waiting once that passes.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from ..config import settings
from ..database import SessionLocal
from .booking_state_machine import auto_reject_expired

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "approval_deadline_sweep"

_scheduler: Optional[AsyncIOScheduler] = None
_last_sweep: Optional[Dict] = None


def sweep_expired_approvals(db: Session, now: Optional[datetime] = None) -> Dict:
    """Run one sweep; returns rejected count, booking_ids, errors and sweep_time."""
    global _last_sweep

    result = {
        "rejected": 0,
        "booking_ids": [],
        "errors": [],
        "sweep_time": (now or datetime.utcnow()).isoformat()
    }

    try:
        result["booking_ids"] = auto_reject_expired(db, now=now)
        result["rejected"] = len(result["booking_ids"])
    except Exception as e:
        db.rollback()
        logger.error(f"Deadline sweep failed: {e}")
        result["errors"].append(f"Deadline sweep failed: {e}")

    _last_sweep = result
    return result


async def run_deadline_sweep_job():
    db = SessionLocal()
    try:
        result = sweep_expired_approvals(db)
        if result["rejected"]:
            logger.info(f"Auto-rejected {result['rejected']} bookings: {result['booking_ids']}")
    finally:
        db.close()


def start_deadline_scheduler() -> bool:
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        logger.warning("Deadline scheduler already running")
        return True

    interval = settings.deadline_sweep_interval_minutes
    try:
        _scheduler = AsyncIOScheduler(timezone="UTC")
        _scheduler.add_job(
            run_deadline_sweep_job,
            IntervalTrigger(minutes=interval),
            id=SWEEP_JOB_ID,
            name="Partner acceptance deadline sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        _scheduler.start()
    except Exception as e:
        logger.error(f"Could not start deadline scheduler: {e}")
        return False

    logger.info(f"Deadline scheduler started, sweeping every {interval} minutes")
    return True


def stop_deadline_scheduler() -> bool:
    global _scheduler

    if _scheduler is None:
        return True

    try:
        _scheduler.shutdown(wait=False)
    except Exception as e:
        logger.error(f"Could not stop deadline scheduler: {e}")
        return False

    _scheduler = None
    logger.info("Deadline scheduler stopped")
    return True


def get_scheduler_status() -> Dict:
    """Reported under checks.deadline_scheduler by /health/detailed."""
    running = _scheduler is not None and _scheduler.running
    next_run = None
    if running:
        job = _scheduler.get_job(SWEEP_JOB_ID)
        if job is not None and job.next_run_time:
            next_run = job.next_run_time.isoformat()

    return {
        "running": running,
        "interval_minutes": settings.deadline_sweep_interval_minutes,
        "next_run": next_run,
        "last_sweep": _last_sweep["sweep_time"] if _last_sweep else None,
        "last_sweep_result": _last_sweep,
    }
