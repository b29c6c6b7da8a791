"""Engine error taxonomy and the user-facing message catalog.

Only text-generation failures and parse failures abort a turn:

    MalformedResponse      The text service answered, but not with a usable
                           TurnResult. Never retried.
    ServiceError           Transport/backend failure, classified from the
                           underlying exception by classify_error():
                             ServiceUnavailable, RateLimited, Unauthorized,
                             ServiceTimeout
                           Retried by RetryPolicy; surfaced once exhausted.

Everything else degrades gracefully:

    ImageGenerationFailed  Logged, previous image reused.
    InvariantViolation     Logged, last known-good value kept.

Session-level errors (TurnInProgress, SessionNotFound, SessionEnded) are
raised by SessionManager and mapped to HTTP status codes by the routes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Literal

import httpx


class EngineError(Exception):
    """Base class for every error the engine raises on purpose."""

    code = "UNKNOWN_ERROR"


# ---------------------------------------------------------------------------
# Text-service output
# ---------------------------------------------------------------------------

class MalformedResponse(EngineError):
    """The text service's output could not be parsed or validated."""

    code = "API_INVALID_RESPONSE"

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


# ---------------------------------------------------------------------------
# Transport failures (retryable)
# ---------------------------------------------------------------------------

class ServiceError(EngineError):
    """An external service call failed. Subclasses say how."""

    code = "API_SERVER_ERROR"
    retryable = True


class ServiceUnavailable(ServiceError):
    code = "API_SERVER_ERROR"


class RateLimited(ServiceError):
    code = "API_RATE_LIMIT"


class Unauthorized(ServiceError):
    code = "API_UNAUTHORIZED"


class ServiceTimeout(ServiceError):
    code = "API_TIMEOUT"


# ---------------------------------------------------------------------------
# Non-fatal
# ---------------------------------------------------------------------------

class ImageGenerationFailed(EngineError):
    """The image service failed. The orchestrator reuses the previous image."""

    code = "IMAGE_GENERATION_FAILED"


class InvariantViolation(EngineError):
    """A lifecycle update could not be reconciled with the current state.

    Managers construct it for logging and fall back to the last good value.
    """

    code = "INVARIANT_VIOLATION"


# ---------------------------------------------------------------------------
# Session-level
# ---------------------------------------------------------------------------

class TurnInProgress(EngineError):
    code = "TURN_IN_PROGRESS"


class SessionNotFound(EngineError):
    code = "SESSION_NOT_FOUND"


class SessionEnded(EngineError):
    code = "SESSION_ENDED"


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def classify_error(exc: BaseException) -> ServiceError | None:
    """Map a raw exception from an external call onto the ServiceError taxonomy.

    Returns None for exceptions that are not transport failures (programming
    errors, MalformedResponse, ...) so callers can let them propagate.
    """
    if isinstance(exc, ServiceError):
        return exc
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ServiceTimeout(str(exc) or "Request timed out")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return RateLimited(f"Backend returned HTTP {status}")
        if status in (401, 403):
            return Unauthorized(f"Backend returned HTTP {status}")
        return ServiceUnavailable(f"Backend returned HTTP {status}")
    if isinstance(exc, httpx.TransportError):
        return ServiceUnavailable(f"Cannot reach backend: {exc}")
    return None


# ---------------------------------------------------------------------------
# User-facing catalog
# ---------------------------------------------------------------------------

Severity = Literal["error", "warning", "info"]


@dataclass(frozen=True)
class ErrorMessage:
    code: str
    title: str
    user_message: str
    severity: Severity


ERROR_MESSAGES: dict[str, ErrorMessage] = {
    "API_RATE_LIMIT": ErrorMessage(
        "API_RATE_LIMIT", "Rate Limit Exceeded",
        "Too many requests. Please wait a moment and try again.", "warning",
    ),
    "API_UNAUTHORIZED": ErrorMessage(
        "API_UNAUTHORIZED", "Authentication Failed",
        "Authentication failed. Please check your configuration.", "error",
    ),
    "API_SERVER_ERROR": ErrorMessage(
        "API_SERVER_ERROR", "Service Unavailable",
        "Service is temporarily unavailable. Please try again later.", "error",
    ),
    "API_TIMEOUT": ErrorMessage(
        "API_TIMEOUT", "Request Timeout",
        "Request timed out. Please check your connection and try again.", "warning",
    ),
    "API_INVALID_RESPONSE": ErrorMessage(
        "API_INVALID_RESPONSE", "Invalid Response",
        "Received an invalid response. Please try again.", "error",
    ),
    "TURN_IN_PROGRESS": ErrorMessage(
        "TURN_IN_PROGRESS", "Please Wait",
        "Still waiting for the last reply. Send your message once it arrives.", "info",
    ),
    "SESSION_NOT_FOUND": ErrorMessage(
        "SESSION_NOT_FOUND", "Conversation Not Found",
        "This conversation no longer exists. Start a new one.", "warning",
    ),
    "SESSION_ENDED": ErrorMessage(
        "SESSION_ENDED", "Conversation Over",
        "This conversation has ended. View your analysis or start a new one.", "info",
    ),
    "UNKNOWN_ERROR": ErrorMessage(
        "UNKNOWN_ERROR", "Unknown Error",
        "An unexpected error occurred. Please try again.", "error",
    ),
}


def error_message_for(exc: BaseException | str) -> ErrorMessage:
    """Look up the catalog entry for an error instance or code."""
    code = exc if isinstance(exc, str) else getattr(exc, "code", "UNKNOWN_ERROR")
    return ERROR_MESSAGES.get(code, ERROR_MESSAGES["UNKNOWN_ERROR"])
