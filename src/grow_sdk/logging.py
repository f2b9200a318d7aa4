"""Request/response logging hooks for the underlying httpx client."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping

import httpx

logger = logging.getLogger("grow_sdk.http")

REDACTED_HEADERS = frozenset({"authorization", "cookie", "set-cookie"})


def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {
        name: ("***" if name.lower() in REDACTED_HEADERS else value)
        for name, value in headers.items()
    }


def build_event_hooks(log: logging.Logger = logger) -> Dict[str, List[Callable[[Any], Awaitable[None]]]]:
    async def log_request(request: httpx.Request) -> None:
        log.info("--> %s %s headers=%s", request.method, request.url, redact_headers(request.headers))

    async def log_response(response: httpx.Response) -> None:
        request = response.request
        log.info(
            "<-- %s %s %s",
            response.status_code,
            request.method,
            request.url,
        )

    return {"request": [log_request], "response": [log_response]}


__all__ = ["build_event_hooks", "redact_headers"]
