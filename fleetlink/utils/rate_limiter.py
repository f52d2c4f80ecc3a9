"""
slowapi limiter shared by every router.

In-memory storage by default; set RATE_LIMIT_STORAGE_URI (e.g. redis://...)
when running more than one instance. RATE_LIMIT_ENABLED=false turns limits off.
"""

import logging
import os

from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request

logger = logging.getLogger(__name__)


def get_real_client_ip(request: Request) -> str:
    """Client address as seen by the first proxy in front of us."""
    forwarded_for = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if forwarded_for:
        return forwarded_for
    real_ip = request.headers.get("X-Real-IP", "").strip()
    return real_ip or get_remote_address(request)


def create_limiter() -> Limiter:
    storage_uri = os.getenv("RATE_LIMIT_STORAGE_URI", "memory://")
    enabled = os.getenv("RATE_LIMIT_ENABLED", "true").lower() not in ("0", "false", "no")
    logger.info(f"Rate limiter storage: {storage_uri.split('@')[-1]} (enabled: {enabled})")
    return Limiter(
        key_func=get_real_client_ip,
        storage_uri=storage_uri,
        default_limits=["100/minute"],
        enabled=enabled
    )


limiter = create_limiter()


# Per-operation limits, keyed by the name routers pass to get_rate_limit
RATE_LIMITS = {
    # Driver actions
    "mark_sent": "10/minute",
    "report_issue": "20/minute",
    "create_instruction": "10/minute",

    # Partner actions
    "activate": "30/minute",
    "release_vehicle": "30/minute",
    "partner_response": "30/minute",
    "confirm_transfer": "30/minute",
    "refund": "20/minute",
    "change_vehicle": "10/minute",
    "return": "20/minute",

    # Reads
    "readiness": "120/minute",
    "history": "120/minute",
    "notifications": "200/minute",

    # Operators
    "outbox_admin": "60/minute",
}


def get_rate_limit(operation: str) -> str:
    return RATE_LIMITS.get(operation, "100/minute")
