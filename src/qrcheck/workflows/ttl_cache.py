"""Age- and count-bounded key/value cache over a pluggable backing store.

The same eviction policy runs over a durable JSON file store and a pure
in-memory store; ``open_store`` falls back to memory when the durable location
is unusable.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, Protocol, Tuple, TypeVar

from .engine_config import ONE_DAY_S

logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], float]


@dataclass
class CacheEntry(Generic[T]):
    value: T
    created_at: float
    accessed_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "created_at": self.created_at, "accessed_at": self.accessed_at}


class CacheStore(Protocol):
    """Backing store; ``get`` returns the live entry and writes reach durable storage on ``flush``."""

    def get(self, key: str) -> Optional[CacheEntry]: ...

    def set(self, key: str, entry: CacheEntry) -> None: ...

    def delete(self, key: str) -> None: ...

    def items(self) -> List[Tuple[str, CacheEntry]]: ...

    def flush(self) -> None: ...


class MemoryStore:
    """Volatile store; contents vanish with the process."""

    def __init__(self) -> None:
        self._data: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[CacheEntry]:
        return self._data.get(key)

    def set(self, key: str, entry: CacheEntry) -> None:
        self._data[key] = entry

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def items(self) -> List[Tuple[str, CacheEntry]]:
        return list(self._data.items())

    def flush(self) -> None:
        pass


class JsonFileStore:
    """Durable store persisted as a single JSON document (values must be JSON-serializable).

    ``set`` and ``delete`` only mark the document dirty; ``flush`` rewrites the
    file once for however many changes accumulated.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._data: Dict[str, CacheEntry] = {}
        self._dirty = False
        if self.path.exists():
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                logger.warning("cache file %s is corrupt; starting empty", self.path)
                raw = {}
            for key, item in (raw.items() if isinstance(raw, dict) else []):
                try:
                    self._data[key] = CacheEntry(
                        value=item["value"],
                        created_at=float(item["created_at"]),
                        accessed_at=float(item["accessed_at"]),
                    )
                except (KeyError, TypeError, ValueError):
                    continue
        # Fail now rather than on first write when the location is read-only
        self._write()

    def _write(self) -> None:
        payload = {key: entry.to_dict() for key, entry in self._data.items()}
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
        tmp.replace(self.path)
        self._dirty = False

    def get(self, key: str) -> Optional[CacheEntry]:
        return self._data.get(key)

    def set(self, key: str, entry: CacheEntry) -> None:
        self._data[key] = entry
        self._dirty = True

    def delete(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._dirty = True

    def items(self) -> List[Tuple[str, CacheEntry]]:
        return list(self._data.items())

    def flush(self) -> None:
        if self._dirty:
            self._write()


def open_store(directory: Optional[Path], namespace: str) -> CacheStore:
    """Return a durable store under ``directory`` or an in-memory fallback."""

    if directory is None:
        return MemoryStore()
    path = Path(directory) / f"{namespace}.json"
    try:
        return JsonFileStore(path)
    except OSError as exc:
        logger.warning("durable cache unavailable at %s (%s); using in-memory store", path, exc)
        return MemoryStore()


class TTLCache(Generic[T]):
    """Key/value cache with max-age expiry and least-recently-accessed eviction.

    Operations are serialized by an instance lock, so concurrent callers in one
    process never lose updates; nothing is coordinated across processes. Each
    public operation flushes the store at most once. Access times are updated
    in place and reach a durable store with the next write.
    """

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        *,
        max_age: float = ONE_DAY_S,
        max_entries: int = 200,
        clock: Clock = time.time,
    ) -> None:
        self.store: CacheStore = store if store is not None else MemoryStore()
        self.max_age = max_age
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.RLock()

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self.max_age

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            entry = self.store.get(key)
            if entry is None:
                return None
            now = self._clock()
            if self._expired(entry, now):
                self.store.delete(key)
                self.store.flush()
                return None
            entry.accessed_at = now
            return entry.value

    def set(self, key: str, value: T) -> None:
        with self._lock:
            now = self._clock()
            self.store.set(key, CacheEntry(value=value, created_at=now, accessed_at=now))
            self._prune(now)
            self.store.flush()

    def delete(self, key: str) -> None:
        with self._lock:
            self.store.delete(key)
            self.store.flush()

    def prune(self) -> int:
        """Drop expired entries, then evict the least recently accessed over the cap."""

        with self._lock:
            removed = self._prune(self._clock())
            self.store.flush()
            return removed

    def _prune(self, now: float) -> int:
        removed = 0
        valid: List[Tuple[str, CacheEntry]] = []
        for key, entry in self.store.items():
            if self._expired(entry, now):
                self.store.delete(key)
                removed += 1
            else:
                valid.append((key, entry))
        overflow = len(valid) - self.max_entries
        if overflow > 0:
            valid.sort(key=lambda kv: kv[1].accessed_at)
            for key, _ in valid[:overflow]:
                self.store.delete(key)
                removed += 1
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self.store.items())
