"""Tests for signal-key storage and the transport caches."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from kordlink.transport.keys import CachedKeyStore, FileKeyStore, RetryCounterCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def file_store(tmp_path: Path) -> FileKeyStore:
    return FileKeyStore(tmp_path)


class TestFileKeyStore:
    async def test_set_get_and_delete(self, file_store, tmp_path: Path):
        await file_store.set({"pre-key": {"1": {"public": "aa"}, "2": {"public": "bb"}}})

        assert (tmp_path / "pre-key-1.json").exists()
        assert await file_store.get("pre-key", ["1", "3"]) == {"1": {"public": "aa"}}

        await file_store.set({"pre-key": {"1": None}})

        assert not (tmp_path / "pre-key-1.json").exists()
        assert await file_store.get("pre-key", ["1", "2"]) == {"2": {"public": "bb"}}

    async def test_unsafe_characters_in_ids(self, file_store, tmp_path: Path):
        await file_store.set({"sender-key": {"group@g.us/user:1": {"k": 1}}})

        assert (tmp_path / "sender-key-group@g.us-user-1.json").exists()

    async def test_unreadable_file_is_skipped(self, file_store, tmp_path: Path):
        (tmp_path / "session-x.json").write_text("{bad")

        assert await file_store.get("session", ["x"]) == {}


class CountingStore:
    def __init__(self) -> None:
        self.data: dict[tuple[str, str], object] = {}
        self.reads = 0

    async def get(self, key_type, ids):
        self.reads += 1
        return {i: self.data[(key_type, i)] for i in ids if (key_type, i) in self.data}

    async def set(self, data):
        for key_type, entries in data.items():
            for key_id, value in entries.items():
                if value is None:
                    self.data.pop((key_type, key_id), None)
                else:
                    self.data[(key_type, key_id)] = value


class TestCachedKeyStore:
    async def test_reads_through_once_within_ttl(self):
        backing = CountingStore()
        backing.data[("pre-key", "1")] = {"v": 1}
        clock = FakeClock()
        cache = CachedKeyStore(backing, ttl=10, clock=clock)

        assert await cache.get("pre-key", ["1"]) == {"1": {"v": 1}}
        assert await cache.get("pre-key", ["1"]) == {"1": {"v": 1}}
        assert backing.reads == 1

        clock.now = 11
        await cache.get("pre-key", ["1"])
        assert backing.reads == 2

    async def test_writes_through(self):
        backing = CountingStore()
        cache = CachedKeyStore(backing, ttl=10, clock=FakeClock())

        await cache.set({"session": {"a": {"v": 2}}})

        assert backing.data[("session", "a")] == {"v": 2}
        assert await cache.get("session", ["a"]) == {"a": {"v": 2}}
        assert backing.reads == 0

    async def test_delete_evicts(self):
        backing = CountingStore()
        cache = CachedKeyStore(backing, ttl=10, clock=FakeClock())
        await cache.set({"session": {"a": {"v": 2}}})

        await cache.set({"session": {"a": None}})

        assert await cache.get("session", ["a"]) == {}

    async def test_wraps_file_store(self, tmp_path: Path):
        cache = CachedKeyStore(FileKeyStore(tmp_path))
        await cache.set({"app-state-sync-key": {"AAA": {"keyData": "x"}}})

        raw = json.loads((tmp_path / "app-state-sync-key-AAA.json").read_text())
        assert raw == {"keyData": "x"}


class TestRetryCounterCache:
    def test_increment_and_delete(self):
        cache = RetryCounterCache()

        assert cache.increment("m1") == 1
        assert cache.increment("m1") == 2
        assert cache.get("m1") == 2
        cache.delete("m1")
        assert cache.get("m1") == 0

    def test_bounded(self):
        cache = RetryCounterCache(max_size=2)
        cache.increment("a")
        cache.increment("b")
        cache.increment("a")
        cache.increment("c")

        assert len(cache) == 2
        assert cache.get("b") == 0
        assert cache.get("a") == 2
