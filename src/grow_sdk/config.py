"""Configuration objects for the grow API client."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")

    @property
    def max_attempts(self) -> int:
        # max_retries counts the first attempt; zero still sends the request once
        return max(self.max_retries, 1)

    def backoff(self, attempt: int) -> float:
        """Delay before ``attempt`` (1-indexed). The first attempt never waits."""
        if attempt < 2:
            return 0.0
        return self.base_delay * (2 ** (attempt - 2))


@dataclass(frozen=True)
class ClientConfig:
    base_url: str
    default_headers: Dict[str, str] = field(default_factory=dict)
    connect_timeout: float = 30.0
    receive_timeout: float = 30.0
    send_timeout: float = 30.0
    enable_logging: bool = False
    max_retries: int = 3
    retry_delay: float = 1.0
    cache_ttl: float = 300.0
    max_cache_bytes: int = 50 * 1024 * 1024
    app_version: str = "1.0.0"
    platform: str = sys.platform
    refresh_path: str = "/auth/refresh"
    store_path: Optional[str] = None
    token_refresh_skew: float = 30.0
    connectivity_interval: Optional[float] = None

    @property
    def user_agent(self) -> str:
        return f"grow-sdk-python/{self.app_version}"

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_retries=self.max_retries, base_delay=self.retry_delay)

    @classmethod
    def from_env(cls) -> "ClientConfig":
        base_url = os.environ.get("GROW_API_BASE_URL")
        if not base_url:
            raise ValueError("GROW_API_BASE_URL must be configured")

        timeout = float(os.environ.get("GROW_API_TIMEOUT", "30"))
        return cls(
            base_url=base_url,
            connect_timeout=timeout,
            receive_timeout=timeout,
            send_timeout=timeout,
            enable_logging=os.environ.get("GROW_API_LOGGING", "false").lower() == "true",
            max_retries=int(os.environ.get("GROW_API_MAX_RETRIES", "3")),
            retry_delay=float(os.environ.get("GROW_API_RETRY_DELAY", "1.0")),
            cache_ttl=float(os.environ.get("GROW_API_CACHE_TTL", "300")),
            max_cache_bytes=int(os.environ.get("GROW_API_MAX_CACHE_BYTES", str(50 * 1024 * 1024))),
            app_version=os.environ.get("GROW_API_APP_VERSION", "1.0.0"),
            store_path=os.environ.get("GROW_API_STORE_PATH") or None,
        )


__all__ = ["ClientConfig", "RetryPolicy"]
