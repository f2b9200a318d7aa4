"""Bounded retry with exponential backoff for transient failures."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .config import RetryPolicy
from .errors import ApiError, ErrorKind
from .metrics import RETRY_COUNTER

logger = logging.getLogger("grow_sdk.retry")

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


class RetryController:
    def __init__(self, policy: RetryPolicy, *, sleep: Optional[Sleep] = None) -> None:
        self._policy = policy
        self._sleep = sleep or asyncio.sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def execute(self, attempt_fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``attempt_fn`` until it succeeds or the policy gives up.

        Only transient failures (network, timeout, 5xx) and rate limits that
        carry a retry-after value are retried. Everything else propagates on
        first occurrence. When attempts run out the last error is re-raised
        with ``retries_exhausted`` set.
        """
        max_attempts = self._policy.max_attempts
        override: Optional[float] = None
        attempt = 1
        while True:
            if attempt > 1:
                delay = override if override is not None else self._policy.backoff(attempt)
                override = None
                logger.debug("Retrying in %.2fs (attempt %s/%s)", delay, attempt, max_attempts)
                await self._sleep(delay)
            try:
                return await attempt_fn()
            except ApiError as exc:
                exc.attempts = attempt
                if not exc.is_retryable:
                    raise
                if attempt >= max_attempts:
                    exc.retries_exhausted = True
                    logger.warning(
                        "Giving up after %s attempts kind=%s: %s", attempt, exc.kind.value, exc.message
                    )
                    raise
                if exc.kind is ErrorKind.RATE_LIMIT:
                    override = exc.retry_after
                RETRY_COUNTER.labels(kind=exc.kind.value).inc()
                attempt += 1


__all__ = ["RetryController"]
