"""
Classified API errors

Every failure leaving the request layer is an ApiError tagged with a kind.
The kind drives retry decisions and user-facing messaging.
"""

import asyncio
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import httpx


class ErrorKind(str, Enum):
    """Request-layer error classification"""
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    BAD_REQUEST = "bad_request"
    SERVER = "server"
    UNKNOWN = "unknown"


_STATUS_KINDS = {
    401: (ErrorKind.AUTH, "Authentication failed"),
    403: (ErrorKind.PERMISSION, "Permission denied"),
    404: (ErrorKind.NOT_FOUND, "Resource not found"),
    429: (ErrorKind.RATE_LIMIT, "Rate limit exceeded"),
}


def classify_status(status: int) -> ErrorKind:
    """Map an HTTP status code to an error kind"""
    if status in _STATUS_KINDS:
        return _STATUS_KINDS[status][0]
    if 400 <= status < 500:
        return ErrorKind.BAD_REQUEST
    if status >= 500:
        return ErrorKind.SERVER
    return ErrorKind.UNKNOWN


class ApiError(Exception):
    """A classified failure from an external API call"""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        details: Optional[Dict[str, Any]] = None,
        status: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.details = details or {}
        self.status = status
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def __repr__(self) -> str:
        return f"ApiError(kind={self.kind.value!r}, status={self.status!r}, message={self.message!r})"

    def is_retryable(self) -> bool:
        """Network, timeout and rate-limit failures, and 5xx server errors, are retryable"""
        if self.kind in (ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.RATE_LIMIT):
            return True
        return self.kind == ErrorKind.SERVER and self.status is not None and self.status >= 500

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "kind": self.kind.value,
            "status": self.status,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_response(cls, response: httpx.Response, url: Optional[str] = None) -> "ApiError":
        """Build an error from a non-success response"""
        kind = classify_status(response.status_code)
        if response.status_code in _STATUS_KINDS:
            message = _STATUS_KINDS[response.status_code][1]
        elif kind == ErrorKind.BAD_REQUEST:
            message = "Invalid request"
        elif kind == ErrorKind.SERVER:
            message = "Server error"
        else:
            message = "API request failed"

        try:
            body = response.json()
            details = body if isinstance(body, dict) else {"body": body}
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError):
            details = {"responseText": response.text}

        if url:
            details["url"] = url
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            details["retryAfter"] = retry_after

        return cls(message, kind, details, response.status_code)

    @classmethod
    def from_transport_error(cls, error: BaseException, url: Optional[str] = None) -> "ApiError":
        """Build an error from a transport failure; timeouts and aborts are TIMEOUT, malformed URLs BAD_REQUEST"""
        details = {"url": url} if url else {}
        if isinstance(error, httpx.InvalidURL):
            return cls(f"Invalid request URL: {error}", ErrorKind.BAD_REQUEST, details, None, error)
        if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
            return cls("Request timed out", ErrorKind.TIMEOUT, details, None, error)
        return cls("Network error occurred", ErrorKind.NETWORK, details, None, error)
