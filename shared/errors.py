"""
Shared error handling for the Pratibha Marketing web core.

Two layers live here. ``ErrorKind`` is the taxonomy the request gateway
stamps on failure results; those are returned, never raised. The exception
classes are raised at service seams (cache backends, the worker control
channel) and rendered by the edge host as ``ErrorResponse`` bodies.
"""

from enum import Enum
from typing import Dict, Any, List, Optional

from pydantic import BaseModel

from shared.logging import request_id_var


class ErrorKind(str, Enum):
    """Classified outcome of a failed gateway request."""

    OFFLINE = "offline"
    CANCELLED = "cancelled"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    CSRF_RETRY = "csrf-retry"
    NOT_FOUND = "not-found"
    VALIDATION = "validation"
    RATE_LIMITED = "rate-limited"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server-error"
    SERVICE_UNAVAILABLE = "service-unavailable"
    PARSE_ERROR = "parse-error"
    NETWORK_ERROR = "network-error"
    GENERIC = "generic"


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class PratibhaException(Exception):
    """Base exception for web core services."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class UnknownControlMessageError(PratibhaException):
    """A page sent a control message the worker does not understand."""

    def __init__(self, raw: Any):
        super().__init__(
            "UNKNOWN_CONTROL_MESSAGE",
            f"Unknown worker control message: {raw!r}",
            {"received": repr(raw)},
        )


class CacheStorageError(PratibhaException):
    """Cache backend failures."""

    def __init__(self, message: str = "Cache storage error", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_STORAGE_ERROR", message, details)


class RequestTimeoutError(PratibhaException):
    """A raw authenticated fetch did not complete in time."""

    def __init__(self, message: str = "Request timed out", details: Optional[Dict[str, Any]] = None):
        super().__init__("REQUEST_TIMEOUT", message, details)


class PrecacheError(PratibhaException):
    """Strict install could not fetch every precache URL."""

    def __init__(self, failed: List[str]):
        super().__init__(
            "PRECACHE_FAILED",
            f"Failed to precache {len(failed)} asset(s)",
            {"failed": failed},
        )
