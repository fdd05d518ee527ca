"""
Error taxonomy shared by the engine and the HTTP layer.

Every error carries the HTTP status the API answers with, so routers never
translate by hand; `main.py` registers one handler for `DispatchError`.
"""
from typing import Any, Optional


class DispatchError(Exception):
    status_code: int = 500
    code: str = "dispatch_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            body["errors"] = self.details
        return body


class ValidationError(DispatchError):
    """Malformed or missing input."""

    status_code = 400
    code = "validation_error"


class InvalidTransitionError(DispatchError):
    """Requested status change is not in the transition table."""

    status_code = 409
    code = "invalid_transition"

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot transition from {current} to {target}",
            {"current": current, "target": target},
        )
        self.current = current
        self.target = target


class StateConflictError(DispatchError):
    """
    Lost an optimistic-concurrency race.

    `current` is the committed state re-read after the failed write, so the
    caller can tell "already accepted" from "cancelled" without another read.
    """

    status_code = 409
    code = "state_conflict"

    def __init__(self, message: str, current: Any = None):
        details = {}
        status = getattr(current, "status", None)
        if status is not None:
            details["current_status"] = getattr(status, "value", status)
        super().__init__(message, details)
        self.current = current


class NotFoundError(DispatchError):
    status_code = 404
    code = "not_found"

    def __init__(self, resource: str = "Resource", resource_id: Optional[str] = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} {resource_id} not found"
        super().__init__(message)


class UpstreamUnavailableError(DispatchError):
    """Cache or fallback store unreachable on a non-critical path."""

    status_code = 503
    code = "upstream_unavailable"


class RateExceededError(DispatchError):
    """Usage caps (promo redemptions and similar throttles)."""

    status_code = 429
    code = "rate_exceeded"
