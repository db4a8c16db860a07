"""Service error taxonomy.

Every user-visible failure carries a stable machine-readable ``code`` plus a
human ``message``. Routers translate these into JSON responses; services
raise them before any write when input is malformed.
"""

from __future__ import annotations


class ChatServiceError(Exception):
    """Base exception for chat service errors."""

    code = "CHAT_ERROR"
    status_code = 400
    retryable = False

    def __init__(self, message: str, *, code: str | None = None, details: dict | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        payload: dict = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        if self.retryable:
            payload["retryable"] = True
        return payload


class ValidationError(ChatServiceError):
    """Malformed input; rejected before any write."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotParticipantError(ChatServiceError):
    """Caller is not an active participant of the conversation."""

    code = "NOT_PARTICIPANT"
    status_code = 403


class NotFoundError(ChatServiceError):
    """Requested entity does not exist (or is no longer visible)."""

    code = "NOT_FOUND"
    status_code = 404


class InvalidTransitionError(ChatServiceError):
    """Out-of-order state change (backward transitions)."""

    code = "INVALID_TRANSITION"
    status_code = 409


class ConflictRaceError(ChatServiceError):
    """Concurrent creation lost a unique-constraint race."""

    code = "CONFLICT"
    status_code = 409


class TransportFailure(ChatServiceError):
    """Channel-specific delivery error."""

    code = "TRANSPORT_FAILURE"
    status_code = 502


class ExternalTimeoutError(ChatServiceError):
    """An external call did not finish within its timeout."""

    code = "TIMEOUT"
    status_code = 504
    retryable = True


class NotAuthenticatedError(ChatServiceError):
    """No caller identity on the request."""

    code = "NOT_AUTHENTICATED"
    status_code = 401


class ForbiddenError(ChatServiceError):
    """Caller is known but lacks the role or ownership for the action."""

    code = "FORBIDDEN"
    status_code = 403


class ServiceUnavailableError(ChatServiceError):
    """An optional collaborator is not configured."""

    code = "UNAVAILABLE"
    status_code = 503
