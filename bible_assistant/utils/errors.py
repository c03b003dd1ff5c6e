# utils/errors.py
"""
Assistant error types and standardized API error responses.

Exceptions raised by the core carry a `retryable` flag that the retry loop
uses to decide between backing off and giving up:

    Transport / timeout      retryable
    Rate limit (429)         retryable
    Malformed response       retryable
    Auth failure (401)       terminal
    Safety triggered         terminal (carries the canned SafetyResponse)
    Usage limit exceeded     terminal
    Missing required field   terminal

API errors follow the format: {"error": "error_code", "detail": "optional message"}
"""

from flask import jsonify
from typing import Optional, Any


# -----------------------------------------------------------------------------
# Assistant Exceptions
# -----------------------------------------------------------------------------

class AssistantError(Exception):
    """Base class for errors raised by the assistant core."""
    retryable = False
    code = "assistant_error"

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message or self.__class__.__doc__)
        self.status_code = status_code


class NetworkError(AssistantError):
    """Network error talking to a remote provider."""
    retryable = True
    code = "network_error"


class RateLimitedError(NetworkError):
    """Too many requests. Please wait a moment."""
    code = "rate_limited"

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class AuthError(AssistantError):
    """Provider rejected the API key."""
    code = "auth_failed"

    def __init__(self, message: str = ""):
        super().__init__(message, status_code=401)


class InvalidResponseError(AssistantError):
    """Failed to parse AI response."""
    retryable = True
    code = "invalid_response"


class MissingFieldError(AssistantError):
    """A required field was missing."""
    code = "missing_field"

    def __init__(self, field: str):
        super().__init__(f"Missing required field: {field}")
        self.field = field


class UsageLimitExceededError(AssistantError):
    """You've reached your message limit. Upgrade to Premium for unlimited access."""
    code = "usage_limit_exceeded"


class SafetyTriggeredError(AssistantError):
    """Safety response triggered."""
    code = "safety_triggered"

    def __init__(self, response: Any):
        super().__init__("Safety response triggered")
        self.response = response


class CancelledError(AssistantError):
    """Generation was cancelled."""
    code = "cancelled"


class RetryExhaustedError(AssistantError):
    """All retry attempts failed."""
    code = "retries_exhausted"

    def __init__(self, attempts: int, last_error: Exception):
        super().__init__(f"Failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def is_retryable(error: Exception) -> bool:
    return isinstance(error, AssistantError) and error.retryable


# -----------------------------------------------------------------------------
# Standard HTTP Error Responses
# -----------------------------------------------------------------------------

def error_response(
    code: str,
    status: int = 400,
    detail: Optional[str] = None,
    **extra
):
    """
    Create a standardized error response.

    Args:
        code: Machine-readable error code (snake_case)
        status: HTTP status code
        detail: Human-readable explanation (optional)
        **extra: Additional fields to include in response

    Returns:
        Tuple of (jsonify response, status code)
    """
    payload = {"error": code}
    if detail:
        payload["detail"] = detail
    payload.update(extra)
    return jsonify(payload), status


# Not Found (404)
def not_found(resource: str = "resource", detail: str = None):
    """Requested resource does not exist."""
    return error_response("not_found", 404, detail or f"{resource} not found")


# Validation (400)
def missing_field(field: str):
    """Required field is missing."""
    return error_response(f"{field}_required", 400, f"Missing required field: {field}")


def invalid_field(field: str, detail: str = None):
    """Field value is invalid."""
    return error_response(f"invalid_{field}", 400, detail)


# Rate limit (429)
def rate_limited(detail: str = None):
    return error_response("rate_limited", 429, detail)


# Server Error (500)
def server_error(code: str = "internal_error", detail: str = None):
    """Internal server error."""
    return error_response(code, 500, detail)


def assistant_error_response(error: AssistantError):
    """Map an AssistantError raised by the core onto an API response."""
    if isinstance(error, MissingFieldError):
        return missing_field(error.field)
    if isinstance(error, RateLimitedError):
        return rate_limited(str(error))
    if isinstance(error, UsageLimitExceededError):
        return error_response(error.code, 402, str(error))
    if isinstance(error, AuthError):
        return error_response(error.code, 502, str(error))
    if error.status_code == 400:
        return error_response(error.code, 400, str(error))
    return error_response(error.code, 503 if error.retryable else 500, str(error))
