"""Durable key-value and queue storage used by the offline queue and token guard."""

from __future__ import annotations

import copy
import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import StorageError


class DurableStore(ABC):
    """Storage collaborator. Values must be JSON compatible."""

    @abstractmethod
    def read(self, key: str) -> Optional[Any]: ...

    @abstractmethod
    def write(self, key: str, value: Any) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    @abstractmethod
    def append_queue_entry(self, entry: Dict[str, Any]) -> None: ...

    @abstractmethod
    def list_queue_entries(self) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def remove_queue_entry(self, index: int) -> None: ...

    @abstractmethod
    def update_queue_entry(self, index: int, entry: Dict[str, Any]) -> None: ...


class MemoryStore(DurableStore):
    def __init__(self) -> None:
        self._values: Dict[str, Any] = {}
        self._queue: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def read(self, key: str) -> Optional[Any]:
        with self._lock:
            return copy.deepcopy(self._values.get(key))

    def write(self, key: str, value: Any) -> None:
        with self._lock:
            self._values[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def append_queue_entry(self, entry: Dict[str, Any]) -> None:
        with self._lock:
            self._queue.append(copy.deepcopy(entry))

    def list_queue_entries(self) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._queue)

    def remove_queue_entry(self, index: int) -> None:
        with self._lock:
            _check_index(index, len(self._queue))
            del self._queue[index]

    def update_queue_entry(self, index: int, entry: Dict[str, Any]) -> None:
        with self._lock:
            _check_index(index, len(self._queue))
            self._queue[index] = copy.deepcopy(entry)


class FileStore(DurableStore):
    """Directory-backed store: ``kv.json`` for values and ``queue.ndjson`` for the queue."""

    def __init__(self, path: str | Path) -> None:
        self._root = Path(path)
        self._kv_path = self._root / "kv.json"
        self._queue_path = self._root / "queue.ndjson"
        self._lock = threading.Lock()
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            self._queue_path.touch(exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot prepare store at {self._root}: {exc}", operation="open") from exc

    @property
    def root(self) -> Path:
        return self._root

    def read(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._load_kv().get(key)

    def write(self, key: str, value: Any) -> None:
        with self._lock:
            values = self._load_kv()
            values[key] = value
            self._save_kv(values)

    def delete(self, key: str) -> None:
        with self._lock:
            values = self._load_kv()
            if values.pop(key, None) is not None:
                self._save_kv(values)

    def append_queue_entry(self, entry: Dict[str, Any]) -> None:
        payload = json.dumps(entry, separators=(",", ":"))
        with self._lock:
            try:
                with self._queue_path.open("a", encoding="utf-8") as fh:
                    fh.write(payload + "\n")
            except OSError as exc:
                raise StorageError(f"Failed to append queue entry: {exc}", operation="append") from exc

    def list_queue_entries(self) -> List[Dict[str, Any]]:
        with self._lock:
            return self._load_queue()

    def remove_queue_entry(self, index: int) -> None:
        with self._lock:
            entries = self._load_queue()
            _check_index(index, len(entries))
            del entries[index]
            self._save_queue(entries)

    def update_queue_entry(self, index: int, entry: Dict[str, Any]) -> None:
        with self._lock:
            entries = self._load_queue()
            _check_index(index, len(entries))
            entries[index] = entry
            self._save_queue(entries)

    def _load_kv(self) -> Dict[str, Any]:
        if not self._kv_path.exists():
            return {}
        try:
            data = json.loads(self._kv_path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Failed to read {self._kv_path}: {exc}", operation="read") from exc
        if not isinstance(data, dict):
            raise StorageError(f"Unexpected content in {self._kv_path}", operation="read")
        return data

    def _save_kv(self, values: Dict[str, Any]) -> None:
        self._replace(self._kv_path, json.dumps(values, separators=(",", ":")), operation="write")

    def _load_queue(self) -> List[Dict[str, Any]]:
        try:
            lines = self._queue_path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise StorageError(f"Failed to read queue: {exc}", operation="list") from exc
        entries: List[Dict[str, Any]] = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError as exc:
                raise StorageError(f"Corrupt queue entry in {self._queue_path}", operation="list") from exc
        return entries

    def _save_queue(self, entries: List[Dict[str, Any]]) -> None:
        text = "".join(json.dumps(entry, separators=(",", ":")) + "\n" for entry in entries)
        self._replace(self._queue_path, text, operation="rewrite")

    def _replace(self, target: Path, text: str, *, operation: str) -> None:
        # write then rename so a crash never leaves a truncated file behind
        tmp = target.with_suffix(target.suffix + ".tmp")
        try:
            tmp.write_text(text, encoding="utf-8")
            tmp.replace(target)
        except OSError as exc:
            raise StorageError(f"Failed to write {target}: {exc}", operation=operation) from exc


def _check_index(index: int, size: int) -> None:
    if index < 0 or index >= size:
        raise StorageError(f"Queue index {index} out of range (size={size})", operation="index")


__all__ = ["DurableStore", "FileStore", "MemoryStore"]
