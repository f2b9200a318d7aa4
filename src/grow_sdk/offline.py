"""Durable FIFO queue of mutating requests deferred while offline."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from .errors import OfflineQueueError, StorageError
from .metrics import QUEUE_DEPTH
from .models import STORED_CONTEXT, QueuedRequest
from .store import DurableStore

logger = logging.getLogger("grow_sdk.offline")

ReplayFn = Callable[[QueuedRequest], Awaitable[Any]]


@dataclass(frozen=True)
class DrainResult:
    succeeded: int = 0
    failed: int = 0

    @property
    def attempted(self) -> int:
        return self.succeeded + self.failed


class OfflineQueue:
    """Queue view over a :class:`DurableStore`.

    Stored records that no longer validate are skipped with a warning and
    left in place; indexes used by :meth:`remove` refer to the valid entries
    returned by :meth:`peek_all`.
    """

    def __init__(self, store: DurableStore) -> None:
        self._store = store
        self._lock = asyncio.Lock()
        self._drain_lock = asyncio.Lock()

    async def enqueue(self, entry: QueuedRequest) -> QueuedRequest:
        async with self._lock:
            try:
                self._store.append_queue_entry(entry.model_dump(mode="json"))
            except StorageError as exc:
                raise OfflineQueueError(
                    f"Failed to queue {entry.method.value} {entry.path}: {exc.message}",
                    operation="enqueue",
                ) from exc
            depth = self._depth()
        logger.info("Queued %s %s for replay (pending=%s)", entry.method.value, entry.path, depth)
        return entry

    async def peek_all(self) -> List[QueuedRequest]:
        async with self._lock:
            return [entry for _, entry in self._load()]

    async def remove(self, index: int) -> None:
        async with self._lock:
            entries = self._load()
            if index < 0 or index >= len(entries):
                raise OfflineQueueError(
                    f"Queue index {index} out of range (size={len(entries)})", operation="remove"
                )
            position, _ = entries[index]
            try:
                self._store.remove_queue_entry(position)
            except StorageError as exc:
                raise OfflineQueueError(exc.message, operation="remove") from exc
            self._depth()

    async def size(self) -> int:
        async with self._lock:
            return len(self._load())

    async def stats(self) -> Dict[str, Any]:
        entries = await self.peek_all()
        return {
            "pending": len(entries),
            "oldest_enqueued_at": entries[0].enqueued_at.isoformat() if entries else None,
            "max_attempts": max((entry.attempt_count for entry in entries), default=0),
        }

    async def drain(self, replay: ReplayFn) -> DrainResult:
        """Replay every entry once, in enqueue order.

        A failed entry stays queued with its attempt count bumped and does not
        stop later entries from being attempted in the same pass.
        """
        async with self._drain_lock:
            entries = await self.peek_all()
            if not entries:
                return DrainResult()

            logger.info("Processing offline queue with %s requests", len(entries))
            succeeded = 0
            failed = 0
            for entry in entries:
                try:
                    await replay(entry)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    failed += 1
                    logger.warning(
                        "Replay failed for %s %s (attempt %s): %s",
                        entry.method.value,
                        entry.path,
                        entry.attempt_count + 1,
                        exc,
                    )
                    await self._record_failure(entry.id)
                    continue
                succeeded += 1
                await self._discard(entry.id)

            logger.info("Offline queue drained succeeded=%s failed=%s", succeeded, failed)
            return DrainResult(succeeded=succeeded, failed=failed)

    async def _discard(self, entry_id: str) -> None:
        async with self._lock:
            found = self._find(entry_id)
            if found is not None:
                self._store.remove_queue_entry(found[0])
            self._depth()

    async def _record_failure(self, entry_id: str) -> None:
        async with self._lock:
            found = self._find(entry_id)
            if found is None:
                return
            position, entry = found
            bumped = entry.model_copy(update={"attempt_count": entry.attempt_count + 1})
            self._store.update_queue_entry(position, bumped.model_dump(mode="json"))

    def _find(self, entry_id: str) -> Optional[Tuple[int, QueuedRequest]]:
        for position, entry in self._load():
            if entry.id == entry_id:
                return position, entry
        return None

    def _depth(self) -> Optional[int]:
        try:
            depth = len(self._load())
        except OfflineQueueError as exc:
            logger.warning("Could not count offline queue: %s", exc.message)
            return None
        QUEUE_DEPTH.set(depth)
        return depth

    def _load(self) -> List[Tuple[int, QueuedRequest]]:
        """Valid entries paired with their position in the store."""
        try:
            raw = self._store.list_queue_entries()
        except StorageError as exc:
            raise OfflineQueueError(exc.message, operation="list") from exc
        entries: List[Tuple[int, QueuedRequest]] = []
        for position, item in enumerate(raw):
            try:
                entries.append((position, QueuedRequest.model_validate(item, context=STORED_CONTEXT)))
            except ValidationError as exc:
                logger.warning("Skipping malformed queue entry at position %s: %s", position, exc)
        return entries


__all__ = ["DrainResult", "OfflineQueue"]
