"""Socket event stream: a small asyncio pub/sub keyed by event type.

Each transport owns one ``EventBus``. Subscribers get an unsubscribe
handle back so a connection's bindings can be torn down deterministically
before the next reconnect builds new ones.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from kordlink.logger import logger
from kordlink.types import ConnectionState, DisconnectInfo, MessageUpdate, WAMessage

# --- Event types ---


@dataclass
class ConnectionUpdate:
    """The transport's connection state changed."""

    connection: ConnectionState | None = None
    last_disconnect: DisconnectInfo | None = None
    qr: str | None = None


@dataclass
class CredsUpdate:
    """The transport produced new credential fields to persist."""

    partial: dict[str, Any]


@dataclass
class MessagesUpsert:
    """New (or history-synced) messages arrived."""

    messages: list[WAMessage]
    kind: str = "notify"


@dataclass
class MessagesUpdate:
    """Existing messages changed (status, edits, revokes)."""

    updates: list[MessageUpdate]


@dataclass
class ChatsUpsert:
    chats: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ContactsUpsert:
    contacts: list[dict[str, Any]] = field(default_factory=list)


Event: TypeAlias = (
    ConnectionUpdate | CredsUpdate | MessagesUpsert | MessagesUpdate | ChatsUpsert | ContactsUpsert
)
Listener: TypeAlias = Callable[[Any], Coroutine[Any, Any, None]]
Unsubscribe: TypeAlias = Callable[[], None]


class EventBus:
    """Async event dispatcher with explicit subscription handles."""

    def __init__(self) -> None:
        self._listeners: defaultdict[type, list[Listener]] = defaultdict(list)

    def subscribe(self, event_type: type, listener: Listener) -> Unsubscribe:
        """Subscribe to an event type. Returns an unsubscribe function."""
        self._listeners[event_type].append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners[event_type].remove(listener)

        return _unsubscribe

    def listener_count(self, event_type: type) -> int:
        return len(self._listeners[event_type])

    def emit(self, event: Event) -> None:
        """Emit an event to all subscribers. Non-blocking, fire-and-forget."""
        for listener in list(self._listeners[type(event)]):
            asyncio.ensure_future(_safe_call(listener, event))

    async def dispatch(self, event: Event) -> None:
        """Deliver an event to subscribers one at a time, in subscription order."""
        for listener in list(self._listeners[type(event)]):
            await _safe_call(listener, event)


async def _safe_call(listener: Listener, event: Event) -> None:
    try:
        await listener(event)
    except Exception:
        logger.exception("EventBus listener error", event=type(event).__name__)
