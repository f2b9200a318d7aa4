"""Request pipeline combining connectivity, caching, auth, retries and the offline queue."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Coroutine,
    Dict,
    List,
    Mapping,
    NoReturn,
    Optional,
    Set,
    TypeVar,
)

import httpx

from .auth import AuthCredential, Refresher, TokenGuard, http_refresher
from .cache import CacheStats, RequestCache, fingerprint
from .config import ClientConfig
from .connectivity import ConnectivityMonitor
from .errors import ApiError, ErrorKind, RequestCancelled, RequestDeferred, StorageError
from .logging import build_event_hooks
from .metrics import REQUEST_COUNTER, REQUEST_LATENCY
from .models import (
    ApiResponse,
    CancelToken,
    HttpMethod,
    JsonBody,
    QueuedRequest,
    RawBody,
    RequestOptions,
    coerce_body,
)
from .offline import DrainResult, OfflineQueue
from .retry import RetryController, Sleep
from .store import DurableStore, FileStore, MemoryStore

logger = logging.getLogger("grow_sdk.dispatcher")

T = TypeVar("T")
Payload = Optional[Any]

UPLOAD_CHUNK_SIZE = 64 * 1024


class RequestDispatcher:
    """Single entry point for API calls made by the application.

    GET responses are served from the cache while fresh. Mutating calls made
    while offline, or whose retries are exhausted by transient failures, are
    written to the offline queue and reported with :class:`RequestDeferred`.
    The queue is replayed through the same verb methods when connectivity
    returns.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        store: Optional[DurableStore] = None,
        monitor: Optional[ConnectivityMonitor] = None,
        cache: Optional[RequestCache] = None,
        token_guard: Optional[TokenGuard] = None,
        refresher: Optional[Refresher] = None,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self._config = config
        self._transport = transport
        if store is None:
            store = FileStore(config.store_path) if config.store_path else MemoryStore()
        self._store = store
        self._monitor = monitor or ConnectivityMonitor()
        self._cache = cache or RequestCache(max_bytes=config.max_cache_bytes, default_ttl=config.cache_ttl)
        self._auth = token_guard or TokenGuard(store, refresher, skew=config.token_refresh_skew)
        if refresher is not None:
            self._auth.bind_refresher(refresher)
        self._retry = RetryController(config.retry_policy(), sleep=sleep)
        self._queue = OfflineQueue(store)
        self._base_url = config.base_url
        self._default_headers: Dict[str, str] = dict(config.default_headers)
        self._client: Optional[httpx.AsyncClient] = None
        self._inflight: Set[asyncio.Task] = set()
        self._initialized = False

    async def __aenter__(self) -> "RequestDispatcher":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def initialize(self) -> None:
        if self._initialized:
            return
        cfg = self._config
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(
                connect=cfg.connect_timeout,
                read=cfg.receive_timeout,
                write=cfg.send_timeout,
                pool=cfg.connect_timeout,
            ),
            transport=self._transport,
            event_hooks=build_event_hooks() if cfg.enable_logging else None,
        )
        self._auth.bind_refresher(http_refresher(self._client, cfg.refresh_path))
        self._monitor.on_reconnect(self._on_reconnect)
        self._initialized = True

        await self._monitor.check()
        if cfg.connectivity_interval:
            self._monitor.start(cfg.connectivity_interval)
        logger.info(
            "HTTP client initialized base_url=%s online=%s retries=%s",
            self._base_url,
            self._monitor.is_online,
            cfg.max_retries,
        )

    async def close(self) -> None:
        self.cancel_all()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        self._monitor.on_reconnect(None)
        await self._monitor.stop()
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._initialized = False
        logger.info("HTTP client disposed")

    # state and collaborators

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def is_online(self) -> bool:
        return self._monitor.is_online

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def monitor(self) -> ConnectivityMonitor:
        return self._monitor

    @property
    def cache(self) -> RequestCache:
        return self._cache

    @property
    def queue(self) -> OfflineQueue:
        return self._queue

    @property
    def auth(self) -> TokenGuard:
        return self._auth

    def update_base_url(self, base_url: str) -> None:
        self._base_url = base_url
        if self._client is not None:
            self._client.base_url = base_url

    def update_headers(self, headers: Mapping[str, str]) -> None:
        self._default_headers.update(headers)

    def clear_headers(self) -> None:
        self._default_headers.clear()

    def set_credential(
        self,
        access_token: str,
        refresh_token: Optional[str] = None,
        expiry: Optional[Any] = None,
    ) -> None:
        self._auth.set_credential(
            AuthCredential(access_token=access_token, refresh_token=refresh_token, expiry=expiry)
        )

    def clear_credential(self) -> None:
        self._auth.set_credential(None)

    async def clear_cache(self) -> None:
        await self._cache.clear()

    async def invalidate(self, path: str, query: Optional[Mapping[str, Any]] = None) -> bool:
        return await self._cache.invalidate(fingerprint(HttpMethod.GET, path, query))

    async def cache_stats(self) -> CacheStats:
        return await self._cache.stats()

    async def queue_stats(self) -> Dict[str, Any]:
        return await self._queue.stats()

    async def pending_requests(self) -> List[QueuedRequest]:
        return await self._queue.peek_all()

    def cancel_all(self) -> None:
        for task in list(self._inflight):
            task.cancel()

    # verbs

    async def get(
        self,
        path: str,
        *,
        query: Optional[Mapping[str, Any]] = None,
        options: Optional[RequestOptions] = None,
    ) -> ApiResponse:
        return await self.request(HttpMethod.GET, path, query=query, options=options)

    async def post(
        self,
        path: str,
        body: Payload = None,
        *,
        query: Optional[Mapping[str, Any]] = None,
        options: Optional[RequestOptions] = None,
    ) -> ApiResponse:
        return await self.request(HttpMethod.POST, path, body=body, query=query, options=options)

    async def put(
        self,
        path: str,
        body: Payload = None,
        *,
        query: Optional[Mapping[str, Any]] = None,
        options: Optional[RequestOptions] = None,
    ) -> ApiResponse:
        return await self.request(HttpMethod.PUT, path, body=body, query=query, options=options)

    async def patch(
        self,
        path: str,
        body: Payload = None,
        *,
        query: Optional[Mapping[str, Any]] = None,
        options: Optional[RequestOptions] = None,
    ) -> ApiResponse:
        return await self.request(HttpMethod.PATCH, path, body=body, query=query, options=options)

    async def delete(
        self,
        path: str,
        body: Payload = None,
        *,
        query: Optional[Mapping[str, Any]] = None,
        options: Optional[RequestOptions] = None,
    ) -> ApiResponse:
        return await self.request(HttpMethod.DELETE, path, body=body, query=query, options=options)

    async def request(
        self,
        method: HttpMethod | str,
        path: str,
        *,
        body: Payload = None,
        query: Optional[Mapping[str, Any]] = None,
        options: Optional[RequestOptions] = None,
    ) -> ApiResponse:
        self._ensure_initialized()
        verb = HttpMethod(method.upper()) if isinstance(method, str) else method
        opts = options or RequestOptions()
        payload = coerce_body(body)
        params = {name: value for name, value in (query or {}).items() if value is not None}
        return await self._cancellable(self._pipeline(verb, path, payload, params, opts), opts.cancel_token)

    async def upload_file(
        self,
        path: str,
        file_path: str | Path,
        *,
        fields: Optional[Mapping[str, Any]] = None,
        options: Optional[RequestOptions] = None,
    ) -> ApiResponse:
        """POST ``file_path`` as multipart field ``file``. Never cached or queued."""
        self._ensure_initialized()
        opts = options or RequestOptions()
        source = Path(file_path)
        if not source.is_file():
            raise ApiError(f"File not found: {file_path}", kind=ErrorKind.NOT_FOUND)
        if not self.is_online:
            raise ApiError.no_connection("Cannot upload files in offline mode")
        return await self._cancellable(
            self._run_transfer(HttpMethod.POST, lambda: self._upload_attempt(path, source, fields or {}, opts)),
            opts.cancel_token,
        )

    async def download_file(
        self,
        url_path: str,
        save_path: str | Path,
        *,
        query: Optional[Mapping[str, Any]] = None,
        options: Optional[RequestOptions] = None,
    ) -> ApiResponse:
        """Stream ``url_path`` into ``save_path``. Never cached or queued."""
        self._ensure_initialized()
        opts = options or RequestOptions()
        if not self.is_online:
            raise ApiError.no_connection("Cannot download files in offline mode")
        target = Path(save_path)
        return await self._cancellable(
            self._run_transfer(
                HttpMethod.GET,
                lambda: self._download_attempt(url_path, target, dict(query or {}), opts),
            ),
            opts.cancel_token,
        )

    async def concurrent(self, *calls: Awaitable[T]) -> List[T]:
        """Await several calls together; refused outright while offline.

        When offline, coroutines are closed unstarted and tasks or futures are
        cancelled, so no part of the batch runs.
        """
        self._ensure_initialized()
        if not self.is_online:
            for call in calls:
                if asyncio.iscoroutine(call):
                    call.close()
                elif asyncio.isfuture(call):
                    call.cancel()
            raise ApiError.no_connection("Cannot make concurrent requests in offline mode")
        return list(await asyncio.gather(*calls))

    async def drain_offline_queue(self) -> DrainResult:
        self._ensure_initialized()
        return await self._queue.drain(self._replay)

    # pipeline

    async def _pipeline(
        self,
        method: HttpMethod,
        path: str,
        payload: Optional[JsonBody | RawBody],
        query: Dict[str, Any],
        options: RequestOptions,
    ) -> ApiResponse:
        key = None if method.is_mutating else fingerprint(method, path, query)
        if key is not None and not options.force_refresh:
            cached = await self._cache.lookup(key)
            if cached is not None:
                logger.debug("Cache hit %s", key)
                REQUEST_COUNTER.labels(method=method.value, outcome="cache").inc()
                return cached.response.model_copy(deep=True, update={"from_cache": True})

        if not self.is_online:
            if method.is_mutating and options.allow_defer:
                await self._defer(method, path, payload, query)
            REQUEST_COUNTER.labels(method=method.value, outcome=ErrorKind.NO_CONNECTION.value).inc()
            raise ApiError.no_connection()

        try:
            response = await self._retry.execute(lambda: self._attempt(method, path, payload, query, options))
        except ApiError as exc:
            if exc.retries_exhausted and exc.is_transient:
                if method.is_mutating and options.allow_defer:
                    await self._defer(method, path, payload, query, cause=exc)
                if not method.is_mutating:
                    REQUEST_COUNTER.labels(method=method.value, outcome=ErrorKind.NO_CONNECTION.value).inc()
                    degraded = ApiError.no_connection(f"{method.value} {path} unavailable: {exc.message}")
                    degraded.attempts = exc.attempts
                    degraded.retries_exhausted = True
                    raise degraded from exc
            REQUEST_COUNTER.labels(method=method.value, outcome=exc.kind.value).inc()
            raise

        if key is not None:
            await self._cache.store(key, response, options.cache_ttl)
        REQUEST_COUNTER.labels(method=method.value, outcome="success").inc()
        return response

    async def _attempt(
        self,
        method: HttpMethod,
        path: str,
        payload: Optional[JsonBody | RawBody],
        query: Dict[str, Any],
        options: RequestOptions,
    ) -> ApiResponse:
        client = self._require_client()
        headers = self._base_headers()
        if payload is not None:
            headers["Content-Type"] = payload.content_type
        headers.update(options.headers)
        headers = await self._auth.decorate(headers)

        content = payload.encode() if payload is not None else None
        extra: Dict[str, Any] = {}
        if options.timeout is not None:
            extra["timeout"] = options.timeout

        start = time.perf_counter()
        try:
            response = await client.request(
                method.value,
                path,
                content=content,
                params=query or None,
                headers=headers,
                **extra,
            )
        except httpx.HTTPError as exc:
            raise ApiError.from_transport_error(exc) from exc
        finally:
            REQUEST_LATENCY.labels(method=method.value).observe(time.perf_counter() - start)

        self._raise_for_status(response, headers)
        result = self._to_response(response)
        if options.on_send_progress is not None and content:
            options.on_send_progress(len(content), len(content))
        if options.on_receive_progress is not None:
            size = len(response.content)
            options.on_receive_progress(size, size)
        return result

    async def _run_transfer(
        self,
        method: HttpMethod,
        attempt_fn: Callable[[], Awaitable[ApiResponse]],
    ) -> ApiResponse:
        try:
            response = await self._retry.execute(attempt_fn)
        except ApiError as exc:
            REQUEST_COUNTER.labels(method=method.value, outcome=exc.kind.value).inc()
            raise
        REQUEST_COUNTER.labels(method=method.value, outcome="success").inc()
        return response

    async def _upload_attempt(
        self,
        path: str,
        source: Path,
        fields: Mapping[str, Any],
        options: RequestOptions,
    ) -> ApiResponse:
        client = self._require_client()
        headers = self._base_headers()
        headers.update(options.headers)
        headers = await self._auth.decorate(headers)
        try:
            data = source.read_bytes()
        except OSError as exc:
            raise StorageError(f"Cannot read {source}: {exc}", operation="upload") from exc

        form = client.build_request(
            "POST",
            path,
            files={"file": (source.name, data)},
            data={name: str(value) for name, value in fields.items()},
            headers=headers,
        )
        encoded = await form.aread()
        total = len(encoded)
        progress = options.on_send_progress

        async def chunks() -> AsyncIterator[bytes]:
            sent = 0
            for offset in range(0, total, UPLOAD_CHUNK_SIZE):
                chunk = encoded[offset:offset + UPLOAD_CHUNK_SIZE]
                sent += len(chunk)
                yield chunk
                if progress is not None:
                    progress(sent, total)

        upload_headers = httpx.Headers(form.headers)
        upload_headers["Content-Length"] = str(total)
        extra: Dict[str, Any] = {}
        if options.timeout is not None:
            extra["timeout"] = options.timeout
        request = client.build_request("POST", path, content=chunks(), headers=upload_headers, **extra)

        start = time.perf_counter()
        try:
            response = await client.send(request)
        except httpx.HTTPError as exc:
            raise ApiError.from_transport_error(exc) from exc
        finally:
            REQUEST_LATENCY.labels(method="POST").observe(time.perf_counter() - start)
        self._raise_for_status(response, headers)
        return self._to_response(response)

    async def _download_attempt(
        self,
        url_path: str,
        target: Path,
        query: Dict[str, Any],
        options: RequestOptions,
    ) -> ApiResponse:
        client = self._require_client()
        headers = self._base_headers()
        headers.update(options.headers)
        headers = await self._auth.decorate(headers)
        extra: Dict[str, Any] = {}
        if options.timeout is not None:
            extra["timeout"] = options.timeout

        # bytes land in a sibling .part file until the transfer completes
        partial = target.with_suffix(target.suffix + ".part")
        start = time.perf_counter()
        try:
            async with client.stream("GET", url_path, params=query or None, headers=headers, **extra) as response:
                if response.status_code >= 400:
                    await response.aread()
                    self._raise_for_status(response, headers)
                total = _content_length(response)
                received = 0
                target.parent.mkdir(parents=True, exist_ok=True)
                with partial.open("wb") as fh:
                    async for chunk in response.aiter_bytes():
                        fh.write(chunk)
                        received += len(chunk)
                        if options.on_receive_progress is not None:
                            options.on_receive_progress(received, total)
            partial.replace(target)
        except httpx.HTTPError as exc:
            raise ApiError.from_transport_error(exc) from exc
        except OSError as exc:
            raise StorageError(f"Cannot write {target}: {exc}", operation="download") from exc
        finally:
            with contextlib.suppress(OSError):
                partial.unlink(missing_ok=True)
            REQUEST_LATENCY.labels(method="GET").observe(time.perf_counter() - start)

        logger.info("Downloaded %s bytes from %s to %s", received, url_path, target)
        return ApiResponse(status_code=response.status_code, headers=dict(response.headers))

    async def _defer(
        self,
        method: HttpMethod,
        path: str,
        payload: Optional[JsonBody | RawBody],
        query: Dict[str, Any],
        *,
        cause: Optional[ApiError] = None,
    ) -> NoReturn:
        entry = await self._queue.enqueue(
            QueuedRequest(method=method, path=path, body=payload, query_parameters=query)
        )
        REQUEST_COUNTER.labels(method=method.value, outcome="deferred").inc()
        logger.warning("Deferred %s %s until connectivity returns (id=%s)", method.value, path, entry.id)
        raise RequestDeferred(entry) from cause

    async def _replay(self, entry: QueuedRequest) -> ApiResponse:
        options = RequestOptions(allow_defer=False)
        if entry.method is HttpMethod.GET:
            return await self.get(entry.path, query=entry.query_parameters, options=options)
        verb = getattr(self, entry.method.value.lower())
        return await verb(entry.path, entry.body, query=entry.query_parameters, options=options)

    async def _on_reconnect(self) -> None:
        result = await self.drain_offline_queue()
        if result.attempted:
            logger.info(
                "Replayed offline queue after reconnect succeeded=%s failed=%s",
                result.succeeded,
                result.failed,
            )

    async def _cancellable(self, coro: Coroutine[Any, Any, T], token: Optional[CancelToken]) -> T:
        if token is not None and token.cancelled:
            coro.close()
            raise RequestCancelled(token.reason or "Request was cancelled")

        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        waiter = asyncio.ensure_future(token.wait()) if token is not None else None
        try:
            await asyncio.wait({task} if waiter is None else {task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if waiter is not None:
                waiter.cancel()

        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            raise RequestCancelled(token.reason if token and token.reason else "Request was cancelled")
        if task.cancelled():
            raise RequestCancelled("Request was cancelled")
        return task.result()

    # helpers

    def _base_headers(self) -> Dict[str, str]:
        headers = dict(self._default_headers)
        headers["User-Agent"] = self._config.user_agent
        headers["Accept"] = "application/json"
        headers["X-Client-Version"] = self._config.app_version
        headers["X-Platform"] = self._config.platform
        return headers

    def _raise_for_status(self, response: httpx.Response, headers: Mapping[str, str]) -> None:
        if response.status_code < 400:
            return
        error = ApiError.from_response(response)
        if error.kind is ErrorKind.AUTHENTICATION:
            sent = headers.get("Authorization", "")
            if sent.startswith("Bearer "):
                self._auth.mark_stale(sent[len("Bearer "):])
        raise error

    def _to_response(self, response: httpx.Response) -> ApiResponse:
        content_type = response.headers.get("content-type", "")
        raw = response.content
        body: Optional[JsonBody | RawBody]
        if not raw:
            body = None
        elif "json" in content_type:
            try:
                body = JsonBody(value=response.json())
            except ValueError as exc:
                raise ApiError(
                    f"Failed to decode JSON response from {response.request.url.path}",
                    kind=ErrorKind.PARSING,
                    status_code=response.status_code,
                ) from exc
        else:
            body = RawBody(data=raw, content_type=content_type or "application/octet-stream")
        return ApiResponse(status_code=response.status_code, body=body, headers=dict(response.headers))

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise ApiError.not_initialized()

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise ApiError.not_initialized()
        return self._client


def _content_length(response: httpx.Response) -> int:
    try:
        return int(response.headers.get("content-length", "-1"))
    except ValueError:
        return -1


__all__ = ["RequestDispatcher"]
