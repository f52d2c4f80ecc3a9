"""
Typed errors raised by the booking lifecycle and payment services.

Every error carries a machine-readable ``code``, a human message and a
``details`` dict (booking id, current status, unmet requirements...) so the
calling UI can render something actionable. ``main.py`` maps them onto HTTP
responses via ``status_code``.
"""

from typing import Any, Dict, List, Optional


class BookingEngineError(Exception):
    code = "booking_engine_error"
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.details}


class NotFoundError(BookingEngineError):
    code = "not_found"
    status_code = 404


class UnauthorizedError(BookingEngineError):
    code = "unauthorized"
    status_code = 403


class ValidationError(BookingEngineError):
    code = "validation_error"
    status_code = 400


class InvalidStateError(BookingEngineError):
    code = "invalid_state"
    status_code = 409


class NoVehicleBoundError(InvalidStateError):
    code = "no_vehicle_bound"


class AlreadySentError(InvalidStateError):
    code = "already_sent"


class AlreadyInTerminalStateError(BookingEngineError):
    code = "already_terminal"
    status_code = 409


class RequirementsNotMetError(BookingEngineError):
    code = "requirements_not_met"
    status_code = 422

    def __init__(self, message: str, unmet: Optional[List[str]] = None, **details: Any):
        super().__init__(message, **details)
        self.unmet = list(unmet or [])
        self.details["unmet"] = self.unmet
