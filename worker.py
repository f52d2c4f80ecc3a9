#!/usr/bin/env python
"""
Standalone side-effect worker.

Runs the same outbox drain the API process runs in the background, plus the
approval-deadline sweep. Deploy it when the API is started with
WORKER_ENABLED=false or DEADLINE_SWEEP_ENABLED=false on every replica but one.

    python worker.py
    WORKER_POLL_INTERVAL=5 python worker.py
"""

import logging
import signal
import sys
import time

from fleetlink.config import settings
from fleetlink.database import SessionLocal
from fleetlink.services.deadline_scheduler import sweep_expired_approvals
from fleetlink.services.outbox_worker import OutboxProcessor
from fleetlink.utils.logging_config import setup_logging

setup_logging(settings.log_level, json_format=settings.log_json, include_uvicorn=False)
logger = logging.getLogger("worker")

# Number of poll cycles between two deadline sweeps
SWEEP_EVERY = max(1, settings.deadline_sweep_interval_minutes * 60 // max(settings.worker_poll_interval, 1))

stopping = False


def request_stop(signum, frame):
    global stopping
    logger.info(f"Signal {signum} received, stopping after this cycle")
    stopping = True


def drain_outbox(db):
    processor = OutboxProcessor(db)
    processor.requeue_stale_events()
    return processor.process_batch(limit=settings.worker_batch_size)


def run_cycle(cycle: int) -> None:
    started = time.monotonic()
    db = SessionLocal()
    try:
        try:
            done, failed = drain_outbox(db)
        except Exception as e:
            logger.error(f"Outbox drain failed: {e}")
            db.rollback()
            done, failed = 0, 0

        rejected = 0
        if settings.deadline_sweep_enabled and cycle % SWEEP_EVERY == 0:
            rejected = sweep_expired_approvals(db)["rejected"]

        if done or failed or rejected:
            logger.info(
                f"Cycle {cycle}: outbox {done} ok / {failed} failed, "
                f"{rejected} auto-rejected ({time.monotonic() - started:.2f}s)"
            )
    finally:
        db.close()


def main() -> None:
    logger.info(
        f"Worker up: poll every {settings.worker_poll_interval}s, "
        f"batch {settings.worker_batch_size}, "
        f"sweep {'every %d cycles' % SWEEP_EVERY if settings.deadline_sweep_enabled else 'disabled'}"
    )

    cycle = 0
    while not stopping:
        cycle += 1
        try:
            run_cycle(cycle)
        except Exception as e:
            logger.error(f"Cycle {cycle} aborted: {e}")
        if not stopping:
            time.sleep(settings.worker_poll_interval)

    logger.info("Worker stopped")


if __name__ == "__main__":
    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    try:
        main()
    except Exception as e:
        logger.critical(f"Worker crashed: {e}")
        sys.exit(1)
