"""
Log output for the booking engine.

Every record carries the request id and acting user of the HTTP request that
produced it. Service code logs lifecycle changes through StructuredLogger so
booking and instruction ids land in their own fields instead of being buried
in the message text.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

request_id_var: ContextVar[str] = ContextVar('request_id', default='')
actor_id_var: ContextVar[str] = ContextVar('actor_id', default='')

PLAIN_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'

# Attributes copied from the LogRecord when a call site supplied them
RECORD_FIELDS = ('entity_type', 'entity_id')

# Libraries that log too much at INFO
NOISY_LOGGERS = ('sqlalchemy.engine', 'apscheduler', 'httpx')


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key, var in (("request_id", request_id_var), ("actor_id", actor_id_var)):
            value = var.get()
            if value:
                payload[key] = value

        for field in RECORD_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        context = getattr(record, 'extra_data', None)
        if context:
            payload["data"] = context

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


class StructuredLogger(logging.LoggerAdapter):
    """LoggerAdapter with helpers for booking and instruction events."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**kwargs.get('extra', {}), **self.extra}
        return msg, kwargs

    def event(self, level: int, msg: str, entity_type: Optional[str] = None,
              entity_id: Optional[str] = None, **data):
        extra: Dict[str, Any] = {}
        if entity_type:
            extra['entity_type'] = entity_type
        if entity_id:
            extra['entity_id'] = entity_id
        if data:
            extra['extra_data'] = data
        self.log(level, msg, extra=extra)

    def booking_status_changed(self, booking_id: str, old_status: str, new_status: str, action: str):
        self.event(
            logging.INFO,
            f"Booking {booking_id} {action}: {old_status} -> {new_status}",
            entity_type="booking",
            entity_id=booking_id,
            old_status=old_status,
            new_status=new_status,
            action=action,
        )

    def instruction_status_changed(self, instruction_id: str, old_status: str, new_status: str):
        self.event(
            logging.INFO,
            f"Instruction {instruction_id}: {old_status} -> {new_status}",
            entity_type="payment_instruction",
            entity_id=instruction_id,
            old_status=old_status,
            new_status=new_status,
        )

    def inconsistency(self, msg: str, entity_type: str, entity_id: str, **data):
        """The primary change committed but a dependent row was left behind."""
        self.event(logging.ERROR, f"Inconsistent state: {msg}",
                   entity_type=entity_type, entity_id=entity_id, **data)


def _build_handler(level: int, json_format: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(PLAIN_FORMAT))
    return handler


def setup_logging(level: str = "INFO", json_format: bool = True, include_uvicorn: bool = True) -> None:
    """
    Route all logging to stdout.

    JSON output is meant for deployed instances; pass json_format=False for
    readable lines during local development. The worker process passes
    include_uvicorn=False since it never starts a server.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    handler = _build_handler(log_level, json_format)

    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers = [handler]
    logging.getLogger("fleetlink").setLevel(log_level)

    if include_uvicorn:
        for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
            logging.getLogger(name).handlers = [handler]

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(logging.getLogger(name), {})


def set_request_context(request_id: str, actor_id: Optional[str] = None):
    request_id_var.set(request_id)
    if actor_id:
        actor_id_var.set(actor_id)


def clear_request_context():
    request_id_var.set('')
    actor_id_var.set('')
