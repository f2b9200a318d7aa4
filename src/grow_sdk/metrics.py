"""Prometheus collectors shared by every pipeline in the process."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNTER = Counter(
    "grow_sdk_requests_total",
    "Requests issued through the dispatcher",
    ["method", "outcome"],
)
REQUEST_LATENCY = Histogram(
    "grow_sdk_request_latency_seconds",
    "Latency of a single network attempt",
    ["method"],
)
CACHE_EVENTS = Counter(
    "grow_sdk_cache_events_total",
    "Response cache activity",
    ["event"],
)
RETRY_COUNTER = Counter(
    "grow_sdk_retries_total",
    "Retries scheduled by the retry controller",
    ["kind"],
)
QUEUE_DEPTH = Gauge(
    "grow_sdk_offline_queue_depth",
    "Requests waiting in the offline queue",
)
TOKEN_REFRESH_COUNTER = Counter(
    "grow_sdk_token_refresh_total",
    "Access token refresh attempts",
    ["outcome"],
)


__all__ = [
    "CACHE_EVENTS",
    "QUEUE_DEPTH",
    "REQUEST_COUNTER",
    "REQUEST_LATENCY",
    "RETRY_COUNTER",
    "TOKEN_REFRESH_COUNTER",
]
