from __future__ import annotations

import pytest

from grow_sdk.config import ClientConfig, RetryPolicy


def test_backoff_doubles_after_first_retry() -> None:
    policy = RetryPolicy(max_retries=4, base_delay=0.5)
    assert policy.backoff(1) == 0.0
    assert [policy.backoff(n) for n in (2, 3, 4)] == [0.5, 1.0, 2.0]


def test_zero_retries_still_sends_once() -> None:
    assert RetryPolicy(max_retries=0).max_attempts == 1
    assert RetryPolicy(max_retries=5).max_attempts == 5


@pytest.mark.parametrize("kwargs", [{"max_retries": -1}, {"base_delay": -0.1}])
def test_policy_rejects_negative_values(kwargs) -> None:
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


def test_client_config_defaults() -> None:
    cfg = ClientConfig(base_url="https://api.example.com", app_version="3.2.1")
    assert cfg.user_agent == "grow-sdk-python/3.2.1"
    assert cfg.cache_ttl == 300.0
    assert cfg.max_cache_bytes == 50 * 1024 * 1024
    policy = cfg.retry_policy()
    assert policy.max_retries == 3
    assert policy.base_delay == 1.0


def test_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("GROW_API_BASE_URL", "https://grow.example.com")
    monkeypatch.setenv("GROW_API_TIMEOUT", "12")
    monkeypatch.setenv("GROW_API_LOGGING", "true")
    monkeypatch.setenv("GROW_API_MAX_RETRIES", "5")
    monkeypatch.setenv("GROW_API_STORE_PATH", str(tmp_path))

    cfg = ClientConfig.from_env()

    assert cfg.base_url == "https://grow.example.com"
    assert cfg.connect_timeout == cfg.receive_timeout == cfg.send_timeout == 12.0
    assert cfg.enable_logging is True
    assert cfg.max_retries == 5
    assert cfg.store_path == str(tmp_path)


def test_from_env_requires_base_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GROW_API_BASE_URL", raising=False)
    with pytest.raises(ValueError):
        ClientConfig.from_env()
