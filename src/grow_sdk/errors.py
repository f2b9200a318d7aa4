"""Typed failures raised by the request pipeline."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any, Dict, Optional

import httpx

if TYPE_CHECKING:  # pragma: no cover
    from .models import QueuedRequest


class ErrorKind(str, enum.Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER = "server"
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMIT = "rate_limit"
    NO_CONNECTION = "no_connection"
    NOT_INITIALIZED = "not_initialized"
    PARSING = "parsing"
    STORAGE = "storage"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


TRANSIENT_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.SERVER})

_USER_MESSAGES = {
    ErrorKind.NETWORK: "Please check your internet connection and try again.",
    ErrorKind.NO_CONNECTION: "Please check your internet connection and try again.",
    ErrorKind.TIMEOUT: "The request took too long to complete. Please try again.",
    ErrorKind.SERVER: "Server is experiencing issues. Please try again later.",
    ErrorKind.AUTHENTICATION: "Please log in to continue.",
    ErrorKind.AUTHORIZATION: "You don't have permission to perform this action.",
    ErrorKind.NOT_FOUND: "The requested resource was not found.",
    ErrorKind.VALIDATION: "Please check your input and try again.",
    ErrorKind.RATE_LIMIT: "Too many requests. Please wait a moment and try again.",
    ErrorKind.NOT_INITIALIZED: "Service is not ready. Please restart the app.",
    ErrorKind.STORAGE: "Storage error occurred. Please check your device storage.",
    ErrorKind.PARSING: "Data format error. Please try again.",
    ErrorKind.CONFLICT: "Data conflict detected. Please refresh and try again.",
    ErrorKind.CANCELLED: "The request was cancelled.",
}

_STATUS_KINDS = {
    401: ErrorKind.AUTHENTICATION,
    403: ErrorKind.AUTHORIZATION,
    404: ErrorKind.NOT_FOUND,
    409: ErrorKind.CONFLICT,
    422: ErrorKind.VALIDATION,
    429: ErrorKind.RATE_LIMIT,
}


class ApiError(Exception):
    """Failure surfaced to callers. Branch on ``kind``, never on ``message``."""

    deferred = False

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code
        self.code = code
        self.details = details
        self.retry_after = retry_after
        self.attempts = 0
        self.retries_exhausted = False
        self.timestamp = datetime.now(timezone.utc)

    @property
    def is_transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    @property
    def is_retryable(self) -> bool:
        if self.kind is ErrorKind.RATE_LIMIT:
            return self.retry_after is not None
        return self.is_transient

    @property
    def suggested_retry_delay(self) -> float:
        if self.kind is ErrorKind.TIMEOUT:
            return 2.0
        if self.kind is ErrorKind.RATE_LIMIT:
            return self.retry_after if self.retry_after is not None else 60.0
        if self.kind is ErrorKind.SERVER:
            return 5.0
        if self.kind is ErrorKind.NETWORK:
            return 1.0
        return 0.0

    @property
    def user_message(self) -> str:
        return _USER_MESSAGES.get(self.kind, self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "kind": self.kind.value,
            "status_code": self.status_code,
            "code": self.code,
            "details": self.details,
            "retry_after": self.retry_after,
            "attempts": self.attempts,
            "retries_exhausted": self.retries_exhausted,
            "timestamp": self.timestamp.isoformat(),
            "user_message": self.user_message,
            "is_retryable": self.is_retryable,
            "suggested_retry_delay": self.suggested_retry_delay,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, kind={self.kind.value}, status={self.status_code})"

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ApiError":
        status = response.status_code
        message: Optional[str] = None
        code: Optional[str] = None
        details: Optional[Dict[str, Any]] = None
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            message = data.get("message") or data.get("error")
            raw_code = data.get("code")
            code = str(raw_code) if raw_code is not None else None
            extra = data.get("errors") or data.get("details")
            if isinstance(extra, dict):
                details = extra

        if status >= 500:
            kind = ErrorKind.SERVER
        elif status >= 400:
            kind = _STATUS_KINDS.get(status, ErrorKind.VALIDATION)
        else:
            kind = ErrorKind.UNKNOWN

        retry_after = None
        if kind is ErrorKind.RATE_LIMIT:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))

        if not message:
            try:
                message = f"HTTP {status} for {response.request.method} {response.request.url.path}"
            except RuntimeError:
                message = f"HTTP {status}"

        return cls(
            message,
            kind=kind,
            status_code=status,
            code=code,
            details=details,
            retry_after=retry_after,
        )

    @classmethod
    def from_transport_error(cls, exc: Exception) -> "ApiError":
        if isinstance(exc, httpx.TimeoutException):
            return cls(f"Request timed out: {exc}", kind=ErrorKind.TIMEOUT)
        if isinstance(exc, httpx.TransportError):
            return cls(f"Network error: {exc}", kind=ErrorKind.NETWORK)
        return cls(f"Unexpected client error: {exc}", kind=ErrorKind.UNKNOWN)

    @classmethod
    def no_connection(cls, message: str = "No internet connection available") -> "ApiError":
        return cls(message, kind=ErrorKind.NO_CONNECTION)

    @classmethod
    def not_initialized(cls) -> "ApiError":
        return cls("HTTP client not initialized. Call initialize() first.", kind=ErrorKind.NOT_INITIALIZED)


class RequestDeferred(ApiError):
    """The request was recorded in the offline queue instead of being sent."""

    deferred = True

    def __init__(self, entry: "QueuedRequest", message: Optional[str] = None) -> None:
        super().__init__(
            message or f"{entry.method.value} {entry.path} deferred until connectivity returns",
            kind=ErrorKind.NO_CONNECTION,
        )
        self.entry = entry


class RequestCancelled(ApiError):
    def __init__(self, message: str = "Request was cancelled") -> None:
        super().__init__(message, kind=ErrorKind.CANCELLED)


class AuthRefreshFailed(ApiError):
    def __init__(self, message: str = "Token refresh failed", *, status_code: Optional[int] = None) -> None:
        super().__init__(message, kind=ErrorKind.AUTHENTICATION, status_code=status_code)


class StorageError(ApiError):
    def __init__(self, message: str, *, operation: Optional[str] = None) -> None:
        super().__init__(
            message,
            kind=ErrorKind.STORAGE,
            details={"operation": operation} if operation else None,
        )


class OfflineQueueError(StorageError):
    pass


def parse_retry_after(value: Optional[str], *, now: Optional[datetime] = None) -> Optional[float]:
    """Parse a ``Retry-After`` header given as seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max((when - current).total_seconds(), 0.0)


__all__ = [
    "ApiError",
    "AuthRefreshFailed",
    "ErrorKind",
    "OfflineQueueError",
    "RequestCancelled",
    "RequestDeferred",
    "StorageError",
    "TRANSIENT_KINDS",
    "parse_retry_after",
]
