"""
Error taxonomy for the delivery subsystem.

Synchronous failures are raised as PortalError subclasses and rendered by the
API exception handler. Agent-side failures never leave the background job;
they are recorded as terminal message state.
"""
from typing import Any, Dict, Optional


class PortalError(Exception):
    """Base exception carrying an HTTP status and a human-readable detail."""

    status_code: int = 500
    error: str = "Internal error"

    def __init__(self, details: str = "", *, extra: Optional[Dict[str, Any]] = None):
        super().__init__(details or self.error)
        self.details = details or self.error
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.error, "details": self.details}
        if self.extra:
            payload.update(self.extra)
        return payload


class ValidationError(PortalError):
    """A required field is missing or malformed."""
    status_code = 400
    error = "Validation failed"


class Unauthenticated(PortalError):
    """No resolvable user identity."""
    status_code = 401
    error = "User must be authenticated"


class Forbidden(PortalError):
    """Caller may not act on this tenant, bot or session."""
    status_code = 403
    error = "Access denied"


class NotFound(PortalError):
    """Session, bot or message does not exist."""
    status_code = 404
    error = "Not found"


class Conflict(PortalError):
    """The target is already in a terminal state."""
    status_code = 409
    error = "Conflict"


class StoreError(PortalError):
    """Persistence write or read failed."""
    status_code = 500
    error = "Store operation failed"


class PlaceholderCreationFailed(PortalError):
    """The assistant placeholder could not be inserted; nothing was queued."""
    status_code = 503
    error = "Failed to queue message for processing"


# ===========================
# Agent-side failures (background only)
# ===========================

class AgentBridgeError(Exception):
    """Base for failures of the outbound agent call."""

    def machine_text(self) -> str:
        return str(self)


class AgentTimeout(AgentBridgeError):
    """The agent did not answer before its deadline."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Agent timeout after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class AgentError(AgentBridgeError):
    """The agent answered with a non-2xx status."""

    def __init__(self, status: int, reason: str = ""):
        message = f"Webhook failed: {status}"
        if reason:
            message += f" {reason}"
        super().__init__(message)
        self.status = status


__all__ = [
    "PortalError",
    "ValidationError",
    "Unauthenticated",
    "Forbidden",
    "NotFound",
    "Conflict",
    "StoreError",
    "PlaceholderCreationFailed",
    "AgentBridgeError",
    "AgentTimeout",
    "AgentError",
]
