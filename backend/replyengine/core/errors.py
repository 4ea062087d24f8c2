"""
Error taxonomy and classification for LLM calls.

Every failure that leaves the orchestration core is an APIError carrying one
code from a closed set. classify_error() is the single boundary where raw
transport/HTTP exceptions become APIErrors; downstream code matches on
ErrorCode and never inspects exception shapes.
"""
import asyncio
from enum import Enum
from typing import Any, Optional

import httpx


class ErrorCode(str, Enum):
    """Closed set of error kinds surfaced by the orchestration core."""
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_API_KEY = "INVALID_API_KEY"
    INSUFFICIENT_QUOTA = "INSUFFICIENT_QUOTA"
    SERVER_ERROR = "SERVER_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    CANCELLED = "CANCELLED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


RETRYABLE_CODES = frozenset({
    ErrorCode.NETWORK_ERROR,
    ErrorCode.TIMEOUT,
    ErrorCode.RATE_LIMITED,
    ErrorCode.SERVER_ERROR,
})

SERVER_ERROR_STATUSES = frozenset({500, 502, 503, 504})

USER_MESSAGES = {
    ErrorCode.NETWORK_ERROR: "Unable to connect. Please check your internet connection and try again.",
    ErrorCode.TIMEOUT: "The request took too long. Please try again.",
    ErrorCode.RATE_LIMITED: "Too many requests. Please wait a moment and try again.",
    ErrorCode.INVALID_API_KEY: "Your API key is invalid. Please check it in Settings.",
    ErrorCode.INSUFFICIENT_QUOTA: "You have run out of quota. Please check your plan or billing details.",
    ErrorCode.SERVER_ERROR: "The AI servers are having trouble right now. Please try again shortly.",
    ErrorCode.PARSE_ERROR: "We couldn't read the AI response. Please try again.",
    ErrorCode.CANCELLED: "The request was cancelled.",
    ErrorCode.UNKNOWN_ERROR: "Something went wrong. Please try again.",
}


class APIError(Exception):
    """
    Classified LLM failure.

    Attributes:
        code: ErrorCode for this failure
        message: Developer-facing description
        http_status: HTTP status when a response was received
        retryable: Whether the taxonomy allows a local retry (derived from code)
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.code = ErrorCode(code)
        self.message = message
        self.http_status = http_status

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    @property
    def user_message(self) -> str:
        return get_user_friendly_message(self)

    def __str__(self) -> str:
        parts = [f"[{self.code.value}] {self.message}"]
        if self.http_status is not None:
            parts.append(f"http_status={self.http_status}")
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"APIError(code={self.code.value!r}, message={self.message!r}, "
            f"http_status={self.http_status!r}, retryable={self.retryable!r})"
        )


class OfflineQueuedError(APIError):
    """Raised when a request was parked in the offline queue instead of being sent."""

    def __init__(self, queued_id: str, request_type: str):
        super().__init__(
            ErrorCode.NETWORK_ERROR,
            f"Offline: {request_type} request queued for replay",
        )
        self.queued_id = queued_id
        self.request_type = request_type


class RequestCancelledError(Exception):
    """Raised when an in-flight request is aborted through its cancel handle."""

    def __init__(self, request_id: str):
        super().__init__(f"Request {request_id} was cancelled")
        self.request_id = request_id


def _message_from_response(response: httpx.Response) -> Optional[str]:
    """Pull a human-readable error message out of an error response body."""
    try:
        body: Any = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:500] or None

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if body.get("message"):
            return str(body["message"])
    return None


def classify_http_status(status: int, message: Optional[str] = None) -> APIError:
    """Map an HTTP status (and optional body message) to an APIError."""
    if status == 401:
        return APIError(ErrorCode.INVALID_API_KEY, message or "Invalid API key", status)
    if status == 429:
        return APIError(ErrorCode.RATE_LIMITED, message or "Rate limit exceeded", status)
    if status in (402, 403):
        return APIError(ErrorCode.INSUFFICIENT_QUOTA, message or "Insufficient quota", status)
    if status in SERVER_ERROR_STATUSES:
        return APIError(ErrorCode.SERVER_ERROR, message or f"Server error ({status})", status)
    return APIError(
        ErrorCode.UNKNOWN_ERROR,
        message or f"Unexpected HTTP status {status}",
        status,
    )


def classify_error(error: BaseException) -> APIError:
    """
    Classify any exception raised while performing an LLM call.

    Rules, in priority order:
    1. Explicit cancellation -> CANCELLED
    2. No response received -> TIMEOUT for client-side deadlines, else NETWORK_ERROR
    3. HTTP status received -> status table (401, 429, 402/403, 5xx, other)
    4. Anything else -> UNKNOWN_ERROR

    Pure function: never raises and has no side effects.
    """
    if isinstance(error, APIError):
        return error

    if isinstance(error, (RequestCancelledError, asyncio.CancelledError)):
        return APIError(ErrorCode.CANCELLED, str(error) or "Request cancelled")

    if isinstance(error, httpx.TimeoutException):
        return APIError(ErrorCode.TIMEOUT, str(error) or "Request timed out")

    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        return classify_http_status(response.status_code, _message_from_response(response))

    if isinstance(error, TimeoutError):
        return APIError(ErrorCode.TIMEOUT, str(error) or "Request timed out")

    if isinstance(error, (httpx.TransportError, ConnectionError, OSError)):
        return APIError(
            ErrorCode.NETWORK_ERROR,
            str(error) or f"Network failure ({type(error).__name__})",
        )

    return APIError(ErrorCode.UNKNOWN_ERROR, str(error) or type(error).__name__)


def get_user_friendly_message(error: APIError) -> str:
    """Return the fixed user-facing message for an APIError (never empty)."""
    return USER_MESSAGES.get(error.code, USER_MESSAGES[ErrorCode.UNKNOWN_ERROR])
