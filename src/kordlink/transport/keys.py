"""Signal-key storage and the caches handed to the transport.

Per-device signal keys (pre-keys, sessions, sender keys, ...) are kept as
one small JSON file per key in the session directory, next to
``creds.json``.  The transport reads keys constantly, so it gets them
through :class:`CachedKeyStore`.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from collections import OrderedDict
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, TypeAlias

from kordlink.logger import logger
from kordlink.utils import write_text_atomic

KeyData: TypeAlias = dict[str, dict[str, Any | None]]

_UNSAFE_CHARS = re.compile(r"[/\\:]")


class SignalKeyStore(Protocol):
    async def get(self, key_type: str, ids: list[str]) -> dict[str, Any]: ...

    async def set(self, data: KeyData) -> None: ...


def _key_file_name(key_type: str, key_id: str) -> str:
    return _UNSAFE_CHARS.sub("-", f"{key_type}-{key_id}") + ".json"


class FileKeyStore:
    """Key store backed by ``<type>-<id>.json`` files in the session directory."""

    def __init__(self, session_dir: Path) -> None:
        self.session_dir = session_dir

    def _path(self, key_type: str, key_id: str) -> Path:
        return self.session_dir / _key_file_name(key_type, key_id)

    async def get(self, key_type: str, ids: list[str]) -> dict[str, Any]:
        return await asyncio.to_thread(self._read_many, key_type, ids)

    async def set(self, data: KeyData) -> None:
        await asyncio.to_thread(self._write_many, data)

    def _read_many(self, key_type: str, ids: list[str]) -> dict[str, Any]:
        found: dict[str, Any] = {}
        for key_id in ids:
            path = self._path(key_type, key_id)
            if not path.exists():
                continue
            try:
                found[key_id] = json.loads(path.read_text())
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Unreadable key file", file=path.name, err=str(exc))
        return found

    def _write_many(self, data: KeyData) -> None:
        for key_type, entries in data.items():
            for key_id, value in entries.items():
                path = self._path(key_type, key_id)
                if value is None:
                    path.unlink(missing_ok=True)
                else:
                    write_text_atomic(path, json.dumps(value))


class CachedKeyStore:
    """Read-through / write-through TTL cache in front of a key store."""

    def __init__(
        self,
        store: SignalKeyStore,
        *,
        ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl = ttl
        self._clock = clock
        self._cache: dict[tuple[str, str], tuple[float, Any]] = {}

    def _cached(self, key_type: str, key_id: str) -> tuple[bool, Any]:
        entry = self._cache.get((key_type, key_id))
        if entry is None:
            return False, None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._cache[(key_type, key_id)]
            return False, None
        return True, value

    async def get(self, key_type: str, ids: list[str]) -> dict[str, Any]:
        result: dict[str, Any] = {}
        missing: list[str] = []
        for key_id in ids:
            hit, value = self._cached(key_type, key_id)
            if hit:
                result[key_id] = value
            else:
                missing.append(key_id)
        if missing:
            fetched = await self._store.get(key_type, missing)
            expires_at = self._clock() + self._ttl
            for key_id, value in fetched.items():
                self._cache[(key_type, key_id)] = (expires_at, value)
                result[key_id] = value
        return result

    async def set(self, data: KeyData) -> None:
        await self._store.set(data)
        expires_at = self._clock() + self._ttl
        for key_type, entries in data.items():
            for key_id, value in entries.items():
                if value is None:
                    self._cache.pop((key_type, key_id), None)
                else:
                    self._cache[(key_type, key_id)] = (expires_at, value)

    def clear(self) -> None:
        self._cache.clear()


class RetryCounterCache:
    """Bounded message-id → retry-count map; least recently touched entries go first."""

    def __init__(self, max_size: int = 1000) -> None:
        self._max_size = max(1, max_size)
        self._counts: OrderedDict[str, int] = OrderedDict()

    def __len__(self) -> int:
        return len(self._counts)

    def get(self, message_id: str) -> int:
        return self._counts.get(message_id, 0)

    def increment(self, message_id: str) -> int:
        count = self._counts.pop(message_id, 0) + 1
        self._counts[message_id] = count
        while len(self._counts) > self._max_size:
            self._counts.popitem(last=False)
        return count

    def delete(self, message_id: str) -> None:
        self._counts.pop(message_id, None)
