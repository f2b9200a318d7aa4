from __future__ import annotations

import asyncio
import gc
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from grow_sdk.auth import AuthCredential, TokenGuard, http_refresher
from grow_sdk.errors import AuthRefreshFailed
from grow_sdk.store import MemoryStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class CountingRefresher:
    def __init__(self, *, fail: bool = False) -> None:
        self.calls = 0
        self.fail = fail

    async def __call__(self, current: AuthCredential) -> AuthCredential:
        self.calls += 1
        # give every waiting caller a chance to pile up on the refresh
        for _ in range(3):
            await asyncio.sleep(0)
        if self.fail:
            raise AuthRefreshFailed("refresh token revoked", status_code=401)
        return AuthCredential(
            access_token=f"fresh-{self.calls}",
            refresh_token=current.refresh_token,
            expiry=NOW + timedelta(hours=1),
        )


def _guard(refresher=None, *, expired: bool = True) -> TokenGuard:
    guard = TokenGuard(MemoryStore(), refresher, skew=30, clock=lambda: NOW)
    expiry = NOW - timedelta(minutes=1) if expired else NOW + timedelta(hours=1)
    guard.set_credential(AuthCredential(access_token="old", refresh_token="r1", expiry=expiry))
    return guard


@pytest.mark.asyncio
async def test_no_credential_leaves_headers_alone() -> None:
    guard = TokenGuard(MemoryStore())
    assert await guard.decorate({"Accept": "application/json"}) == {"Accept": "application/json"}


@pytest.mark.asyncio
async def test_valid_token_is_attached_without_refresh() -> None:
    refresher = CountingRefresher()
    guard = _guard(refresher, expired=False)

    headers = await guard.decorate({})

    assert headers["Authorization"] == "Bearer old"
    assert refresher.calls == 0


@pytest.mark.asyncio
async def test_token_inside_skew_window_is_refreshed() -> None:
    refresher = CountingRefresher()
    guard = TokenGuard(MemoryStore(), refresher, skew=30, clock=lambda: NOW)
    guard.set_credential(AuthCredential(access_token="old", refresh_token="r1", expiry=NOW + timedelta(seconds=10)))

    headers = await guard.decorate({})

    assert headers["Authorization"] == "Bearer fresh-1"


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh() -> None:
    refresher = CountingRefresher()
    guard = _guard(refresher)

    results = await asyncio.gather(*[guard.decorate({}) for _ in range(10)])

    assert refresher.calls == 1
    assert {headers["Authorization"] for headers in results} == {"Bearer fresh-1"}
    assert guard.credential is not None
    assert guard.credential.access_token == "fresh-1"


@pytest.mark.asyncio
async def test_refresh_failure_reaches_every_waiter() -> None:
    refresher = CountingRefresher(fail=True)
    guard = _guard(refresher)

    results = await asyncio.gather(*[guard.decorate({}) for _ in range(5)], return_exceptions=True)

    assert refresher.calls == 1
    assert all(isinstance(result, AuthRefreshFailed) for result in results)

    # the next request starts a new refresh rather than reusing the failed one
    with pytest.raises(AuthRefreshFailed):
        await guard.decorate({})
    assert refresher.calls == 2


@pytest.mark.asyncio
async def test_mark_stale_forces_refresh() -> None:
    refresher = CountingRefresher()
    guard = _guard(refresher, expired=False)

    guard.mark_stale("someone-else")
    assert not guard.needs_refresh()

    guard.mark_stale("old")
    assert guard.needs_refresh()
    headers = await guard.decorate({})
    assert headers["Authorization"] == "Bearer fresh-1"
    assert not guard.needs_refresh()


@pytest.mark.asyncio
async def test_missing_refresher_fails() -> None:
    guard = _guard(None)
    with pytest.raises(AuthRefreshFailed):
        await guard.decorate({})


def test_credential_is_persisted() -> None:
    store = MemoryStore()
    guard = TokenGuard(store)
    guard.set_credential(AuthCredential(access_token="abc", refresh_token="r", expiry=NOW))

    restored = TokenGuard(store)
    assert restored.credential == AuthCredential(access_token="abc", refresh_token="r", expiry=NOW)

    restored.set_credential(None)
    assert TokenGuard(store).credential is None


@pytest.mark.asyncio
async def test_http_refresher_exchanges_refresh_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/auth/refresh"
        assert json.loads(request.content) == {"refresh_token": "r1"}
        return httpx.Response(200, json={"access_token": "new", "expires_in": 3600})

    async with httpx.AsyncClient(base_url="https://api.example.com", transport=httpx.MockTransport(handler)) as client:
        refresh = http_refresher(client)
        credential = await refresh(AuthCredential(access_token="old", refresh_token="r1"))

    assert credential.access_token == "new"
    assert credential.refresh_token == "r1"
    assert credential.expiry is not None


@pytest.mark.asyncio
async def test_http_refresher_rejection() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "invalid_grant"})

    async with httpx.AsyncClient(base_url="https://api.example.com", transport=httpx.MockTransport(handler)) as client:
        refresh = http_refresher(client)
        with pytest.raises(AuthRefreshFailed) as excinfo:
            await refresh(AuthCredential(access_token="old", refresh_token="r1"))
        assert excinfo.value.status_code == 401

        with pytest.raises(AuthRefreshFailed):
            await refresh(AuthCredential(access_token="old"))


@pytest.mark.asyncio
async def test_failed_refresh_with_no_waiters_is_not_reported_as_unretrieved() -> None:
    loop = asyncio.get_running_loop()
    reported = []
    loop.set_exception_handler(lambda _, context: reported.append(context))
    try:
        refresher = CountingRefresher(fail=True)
        guard = _guard(refresher)

        waiter = asyncio.ensure_future(guard.decorate({}))
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        # let the abandoned refresh finish failing, then collect it
        for _ in range(10):
            await asyncio.sleep(0)
        gc.collect()

        assert refresher.calls == 1
        assert not [context for context in reported if "never retrieved" in context.get("message", "")]
    finally:
        loop.set_exception_handler(None)
