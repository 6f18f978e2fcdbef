"""Contract between the supervisor and a messaging transport.

The wire protocol and encryption live in the transport implementation;
the supervisor only sees the event stream and the handful of calls below.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeAlias, runtime_checkable

from kordlink.event_bus import EventBus
from kordlink.transport.keys import CachedKeyStore, RetryCounterCache
from kordlink.types import MessageKey, SessionCredentials

MessageLookup: TypeAlias = Callable[[MessageKey], Awaitable[dict[str, Any]]]


@dataclass
class SocketOptions:
    version: tuple[int, ...]
    credentials: SessionCredentials
    keys: CachedKeyStore
    retry_cache: RetryCounterCache
    get_message: MessageLookup
    generate_link_previews: bool = True


@runtime_checkable
class Transport(Protocol):
    """One connection's socket. Never reused after it closes."""

    events: EventBus

    @property
    def registered(self) -> bool: ...

    async def connect(self) -> None: ...

    async def send_presence(self, available: bool) -> None: ...

    async def request_pairing_code(self, phone_number: str) -> str: ...

    async def logout(self) -> None: ...

    async def close(self) -> None: ...


class TransportFactory(Protocol):
    async def fetch_latest_version(self) -> tuple[tuple[int, ...], bool]: ...

    def create(self, options: SocketOptions) -> Transport: ...
