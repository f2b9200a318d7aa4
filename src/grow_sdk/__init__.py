"""Grow monitoring API client SDK."""

from .auth import AuthCredential, TokenGuard
from .cache import RequestCache, fingerprint
from .config import ClientConfig, RetryPolicy
from .connectivity import ConnectivityMonitor, ConnectivityState, InterfaceKind
from .dispatcher import RequestDispatcher
from .errors import ApiError, AuthRefreshFailed, ErrorKind, RequestCancelled, RequestDeferred
from .models import ApiResponse, CancelToken, HttpMethod, JsonBody, QueuedRequest, RawBody, RequestOptions
from .offline import DrainResult, OfflineQueue
from .retry import RetryController
from .store import DurableStore, FileStore, MemoryStore

__all__ = [
    "ApiError",
    "ApiResponse",
    "AuthCredential",
    "AuthRefreshFailed",
    "CancelToken",
    "ClientConfig",
    "ConnectivityMonitor",
    "ConnectivityState",
    "DrainResult",
    "DurableStore",
    "ErrorKind",
    "FileStore",
    "HttpMethod",
    "InterfaceKind",
    "JsonBody",
    "MemoryStore",
    "OfflineQueue",
    "QueuedRequest",
    "RawBody",
    "RequestCache",
    "RequestCancelled",
    "RequestDeferred",
    "RequestDispatcher",
    "RequestOptions",
    "RetryController",
    "RetryPolicy",
    "TokenGuard",
    "fingerprint",
]
