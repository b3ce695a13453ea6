import json
import threading
from pathlib import Path

import pytest

from qrcheck.workflows.ttl_cache import CacheEntry, JsonFileStore, MemoryStore, TTLCache, open_store


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_max_age() -> None:
    clock = FakeClock()
    cache = TTLCache(max_age=10, max_entries=5, clock=clock)
    cache.set("k", {"v": 1})

    clock.now += 10
    assert cache.get("k") == {"v": 1}
    clock.now += 0.5
    assert cache.get("k") is None
    assert len(cache) == 0


def test_least_recently_accessed_entry_is_evicted() -> None:
    clock = FakeClock()
    cache = TTLCache(max_age=100, max_entries=2, clock=clock)
    cache.set("a", 1)
    clock.now += 1
    cache.set("b", 2)
    clock.now += 1
    assert cache.get("a") == 1
    clock.now += 1
    cache.set("c", 3)

    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3


def test_prune_reports_removed_entries() -> None:
    clock = FakeClock()
    cache = TTLCache(max_age=5, max_entries=10, clock=clock)
    for key in ("a", "b", "c"):
        cache.set(key, key)
    clock.now += 6
    cache.store.set("fresh", CacheEntry(value="x", created_at=clock.now, accessed_at=clock.now))

    assert cache.prune() == 3
    assert len(cache) == 1


def test_json_store_persists_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "cache" / "expansions.json"
    first = TTLCache(JsonFileStore(path), max_age=60)
    first.set("k", {"chain": ["https://example.com/"]})

    second = TTLCache(JsonFileStore(path), max_age=60)

    assert second.get("k") == {"chain": ["https://example.com/"]}
    assert "k" in json.loads(path.read_text(encoding="utf-8"))


def test_json_store_starts_empty_on_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "expansions.json"
    path.write_text("{not json", encoding="utf-8")

    store = JsonFileStore(path)

    assert store.items() == []
    assert json.loads(path.read_text(encoding="utf-8")) == {}


def test_open_store_falls_back_to_memory(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")

    assert isinstance(open_store(None, "expansions"), MemoryStore)
    assert isinstance(open_store(blocker / "nested", "expansions"), MemoryStore)
    assert isinstance(open_store(tmp_path / "ok", "expansions"), JsonFileStore)


def test_concurrent_writers_do_not_lose_entries() -> None:
    cache = TTLCache(max_age=60, max_entries=1000)

    def writer(prefix: str) -> None:
        for i in range(100):
            cache.set(f"{prefix}-{i}", i)

    threads = [threading.Thread(target=writer, args=(str(n),)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(cache) == 400


def test_json_store_rewrites_the_file_once_per_operation(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    clock = FakeClock()
    store = JsonFileStore(tmp_path / "expansions.json")
    cache = TTLCache(store, max_age=60, max_entries=100, clock=clock)
    for i in range(50):
        cache.set(f"k{i}", i)

    writes = []
    real_write = store._write
    monkeypatch.setattr(store, "_write", lambda: (writes.append(1), real_write()))

    for i in range(20):
        clock.now += 1
        assert cache.get(f"k{i}") == i
    assert writes == []

    clock.now += 61
    cache.set("new", "v")

    assert len(writes) == 1
    assert list(json.loads(store.path.read_text(encoding="utf-8"))) == ["new"]


def test_access_times_persist_with_the_next_write(tmp_path: Path) -> None:
    clock = FakeClock()
    path = tmp_path / "expansions.json"
    cache = TTLCache(JsonFileStore(path), max_age=60, clock=clock)
    cache.set("a", 1)
    clock.now += 5
    cache.get("a")
    cache.set("b", 2)

    saved = json.loads(path.read_text(encoding="utf-8"))

    assert saved["a"]["accessed_at"] == clock.now
    assert saved["a"]["created_at"] == clock.now - 5
