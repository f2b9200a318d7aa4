from __future__ import annotations

from typing import Any, Callable, List, Optional

import httpx
import pytest

from grow_sdk.config import ClientConfig
from grow_sdk.connectivity import ConnectivityMonitor, InterfaceKind
from grow_sdk.dispatcher import RequestDispatcher
from grow_sdk.store import DurableStore


class FakeNetwork:
    """Probe whose reported interface is set by the test."""

    def __init__(self, kind: InterfaceKind = InterfaceKind.WIFI) -> None:
        self.kind = kind
        self.checks = 0

    async def __call__(self) -> InterfaceKind:
        self.checks += 1
        return self.kind


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(**overrides: Any) -> ClientConfig:
    defaults = dict(
        base_url="https://api.example.com",
        max_retries=3,
        retry_delay=1.0,
        app_version="2.1.0",
        platform="linux",
    )
    defaults.update(overrides)
    return ClientConfig(**defaults)


@pytest.fixture()
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture()
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def make_dispatcher(network: FakeNetwork, sleeper: RecordingSleep) -> Callable[..., RequestDispatcher]:
    def factory(
        handler: Callable[[httpx.Request], Any],
        *,
        store: Optional[DurableStore] = None,
        **overrides: Any,
    ) -> RequestDispatcher:
        refresher = overrides.pop("refresher", None)
        return RequestDispatcher(
            make_config(**overrides),
            transport=httpx.MockTransport(handler),
            store=store,
            monitor=ConnectivityMonitor(probe=network),
            refresher=refresher,
            sleep=sleeper,
        )

    return factory
