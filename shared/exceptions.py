"""
shared/exceptions.py
Application error taxonomy.

    FachowcyError
    ├── StoreUnavailable      → 503  database / cache unreachable
    ├── NotFound              → 404  referenced record absent
    ├── InvalidTransition     → 409  booking state machine violation
    ├── ValidationError       → 422  business-rule input failure
    └── ExternalServiceError  → 502  AI / payment / maps failure

Handlers that turn these into JSON responses are registered in main.py.
"""

from typing import Any, Dict, Optional


class FachowcyError(Exception):
    """Base class. `message` is safe to return to clients; `context` is logged only."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "An unexpected error occurred", context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class StoreUnavailable(FachowcyError):
    status_code = 503
    code = "store_unavailable"


class NotFound(FachowcyError):
    status_code = 404
    code = "not_found"


class InvalidTransition(FachowcyError):
    """
    A booking transition that is not in the transition table, or whose
    expected status no longer matches the stored one.
    """

    status_code = 409
    code = "invalid_transition"

    def __init__(self, current_status: str, attempted: str, message: Optional[str] = None):
        self.current_status = current_status
        self.attempted = attempted
        super().__init__(
            message or f"Cannot '{attempted}' a booking in '{current_status}' state",
            {"current_status": current_status, "attempted": attempted},
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(current_status=self.current_status, attempted=self.attempted)
        return data


class ValidationError(FachowcyError):
    status_code = 422
    code = "validation_error"


class ExternalServiceError(FachowcyError):
    status_code = 502
    code = "external_service_error"

    def __init__(self, service: str, message: str, context: Optional[Dict[str, Any]] = None):
        self.service = service
        super().__init__(message, {"service": service, **(context or {})})

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["service"] = self.service
        return data
