"""Bearer credential handling with single-flight token refresh."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from .errors import ApiError, AuthRefreshFailed
from .metrics import TOKEN_REFRESH_COUNTER
from .store import DurableStore

logger = logging.getLogger("grow_sdk.auth")

CREDENTIAL_KEY = "auth.credential"


class AuthCredential(BaseModel):
    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expiry: Optional[datetime] = None

    def is_expired(self, now: datetime, skew: float = 0.0) -> bool:
        if self.expiry is None:
            return False
        expiry = self.expiry if self.expiry.tzinfo else self.expiry.replace(tzinfo=timezone.utc)
        return now + timedelta(seconds=skew) >= expiry


Refresher = Callable[[AuthCredential], Awaitable[AuthCredential]]


def http_refresher(client: httpx.AsyncClient, path: str = "/auth/refresh") -> Refresher:
    """Exchange the refresh token for a new access token via ``POST path``."""

    async def refresh(current: AuthCredential) -> AuthCredential:
        if not current.refresh_token:
            raise AuthRefreshFailed("No refresh token available")
        try:
            response = await client.post(path, json={"refresh_token": current.refresh_token})
        except httpx.HTTPError as exc:
            raise AuthRefreshFailed(f"Token refresh request failed: {exc}") from exc
        if response.status_code != 200:
            raise AuthRefreshFailed(
                f"Token refresh rejected with HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise AuthRefreshFailed("Token refresh returned an unreadable body") from exc
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise AuthRefreshFailed("Token refresh response has no access_token")

        expiry = None
        expires_in = data.get("expires_in")
        if isinstance(expires_in, (int, float)):
            expiry = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        return AuthCredential(
            access_token=token,
            refresh_token=data.get("refresh_token") or current.refresh_token,
            expiry=expiry,
        )

    return refresh


class TokenGuard:
    """Attaches the bearer token to outgoing requests and refreshes it on demand.

    Concurrent callers that find the token expired share one refresh: the
    first starts it and the rest await the same task, so the refresher is
    called once no matter how many requests are waiting.
    """

    def __init__(
        self,
        store: DurableStore,
        refresher: Optional[Refresher] = None,
        *,
        skew: float = 30.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._refresher = refresher
        self._skew = skew
        self._clock = clock
        self._stale_token: Optional[str] = None
        self._inflight: Optional[asyncio.Task] = None
        self._credential = self._load()

    @property
    def credential(self) -> Optional[AuthCredential]:
        return self._credential

    @property
    def has_refresher(self) -> bool:
        return self._refresher is not None

    def bind_refresher(self, refresher: Refresher) -> None:
        if self._refresher is None:
            self._refresher = refresher

    def set_credential(self, credential: Optional[AuthCredential]) -> None:
        self._credential = credential
        self._stale_token = None
        if credential is None:
            self._store.delete(CREDENTIAL_KEY)
        else:
            self._store.write(CREDENTIAL_KEY, credential.model_dump(mode="json"))

    def mark_stale(self, access_token: str) -> None:
        """Force a refresh before the next request if ``access_token`` is still current."""
        if self._credential is not None and self._credential.access_token == access_token:
            self._stale_token = access_token

    def needs_refresh(self, credential: Optional[AuthCredential] = None) -> bool:
        credential = credential or self._credential
        if credential is None:
            return False
        if credential.access_token == self._stale_token:
            return True
        return credential.is_expired(self._clock(), self._skew)

    async def decorate(self, headers: Dict[str, str]) -> Dict[str, str]:
        decorated = dict(headers)
        credential = self._credential
        if credential is None:
            return decorated
        if self.needs_refresh(credential):
            credential = await self.refresh(stale=credential)
        decorated["Authorization"] = f"Bearer {credential.access_token}"
        return decorated

    async def refresh(self, stale: Optional[AuthCredential] = None) -> AuthCredential:
        current = self._credential
        if (
            stale is not None
            and current is not None
            and current.access_token != stale.access_token
            and not self.needs_refresh(current)
        ):
            # someone else already replaced the token we saw
            return current
        if self._inflight is None:
            self._inflight = asyncio.get_running_loop().create_task(self._run_refresh())
        return await asyncio.shield(self._inflight)

    async def _run_refresh(self) -> AuthCredential:
        try:
            if self._refresher is None:
                raise AuthRefreshFailed("No token refresher configured")
            if self._credential is None:
                raise AuthRefreshFailed("No credential to refresh")
            logger.debug("Attempting to refresh authentication token")
            try:
                credential = await self._refresher(self._credential)
            except AuthRefreshFailed:
                raise
            except ApiError as exc:
                raise AuthRefreshFailed(exc.message, status_code=exc.status_code) from exc
        except AuthRefreshFailed as exc:
            TOKEN_REFRESH_COUNTER.labels(outcome="failure").inc()
            logger.error("Token refresh failed: %s", exc.message)
            raise
        finally:
            self._inflight = None

        self.set_credential(credential)
        TOKEN_REFRESH_COUNTER.labels(outcome="success").inc()
        logger.info("Authentication token refreshed")
        return credential

    def _load(self) -> Optional[AuthCredential]:
        raw = self._store.read(CREDENTIAL_KEY)
        if raw is None:
            return None
        try:
            return AuthCredential.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Ignoring malformed stored credential: %s", exc)
            return None


__all__ = ["AuthCredential", "CREDENTIAL_KEY", "Refresher", "TokenGuard", "http_refresher"]
