"""In-memory message/chat store with periodic JSON snapshots.

The store binds to a transport's event stream and keeps recent messages
per chat plus chat and contact metadata.  ``flush`` rewrites the snapshot
file in full; flushes are serialized by a lock, and the periodic flusher
skips a tick instead of queueing behind an in-flight write.
"""

from __future__ import annotations

import asyncio
import json
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from kordlink.errors import StoreLoadError
from kordlink.event_bus import (
    ChatsUpsert,
    ContactsUpsert,
    EventBus,
    MessagesUpdate,
    MessagesUpsert,
    Unsubscribe,
)
from kordlink.logger import logger
from kordlink.types import WAMessage
from kordlink.utils import write_text_atomic

# Literal file content treated the same as "no file".
EMPTY_SENTINEL = "{}"


@dataclass
class StoreSnapshot:
    chats: dict[str, dict[str, Any]] = field(default_factory=dict)
    contacts: dict[str, dict[str, Any]] = field(default_factory=dict)
    messages: dict[str, list[WAMessage]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.chats or self.contacts or self.messages)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chats": self.chats,
            "contacts": self.contacts,
            "messages": {
                jid: [m.to_dict() for m in msgs] for jid, msgs in self.messages.items()
            },
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> StoreSnapshot:
        return cls(
            chats=dict(raw.get("chats") or {}),
            contacts=dict(raw.get("contacts") or {}),
            messages={
                jid: [WAMessage.from_dict(m) for m in msgs]
                for jid, msgs in (raw.get("messages") or {}).items()
            },
        )


def load_snapshot(path: Path) -> StoreSnapshot:
    """Read a snapshot file.

    A missing file, an empty file, or the literal ``{}`` all mean "no prior
    state".  Anything else that fails to parse raises StoreLoadError.
    """
    try:
        text = path.read_text()
    except FileNotFoundError:
        return StoreSnapshot()
    except OSError as exc:
        raise StoreLoadError(f"cannot read {path}: {exc}") from exc

    if not text.strip() or text.strip() == EMPTY_SENTINEL:
        return StoreSnapshot()
    try:
        raw = json.loads(text)
        if not isinstance(raw, dict):
            raise TypeError(f"expected a JSON object, got {type(raw).__name__}")
        return StoreSnapshot.from_dict(raw)
    except (json.JSONDecodeError, TypeError, KeyError, ValueError) as exc:
        raise StoreLoadError(f"invalid store file {path}: {exc}") from exc


class MessageStore:
    """Recent messages and chat metadata for one process."""

    def __init__(self, *, max_messages_per_chat: int = 1000) -> None:
        self._max_per_chat = max(1, max_messages_per_chat)
        self.chats: dict[str, dict[str, Any]] = {}
        self.contacts: dict[str, dict[str, Any]] = {}
        self._messages: dict[str, OrderedDict[str, WAMessage]] = {}
        self._flush_lock = asyncio.Lock()

    # --- Loading ---

    def load(self, path: Path) -> bool:
        """Replace in-memory state from *path*. Returns True if prior state was found.

        Unreadable files are logged and leave the store empty.
        """
        try:
            snapshot = load_snapshot(path)
        except StoreLoadError as exc:
            logger.error("Error loading store, starting empty", err=str(exc))
            snapshot = StoreSnapshot()
        self.restore(snapshot)
        if snapshot.is_empty:
            logger.info("Store file empty or absent, initializing new store", path=str(path))
            return False
        logger.info("Store loaded", chats=len(self.chats), path=str(path))
        return True

    def restore(self, snapshot: StoreSnapshot) -> None:
        self.chats = dict(snapshot.chats)
        self.contacts = dict(snapshot.contacts)
        self._messages = {}
        for msgs in snapshot.messages.values():
            for msg in msgs:
                self.upsert_message(msg)

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            chats={jid: dict(chat) for jid, chat in self.chats.items()},
            contacts={jid: dict(c) for jid, c in self.contacts.items()},
            messages={jid: list(msgs.values()) for jid, msgs in self._messages.items()},
        )

    # --- Flushing ---

    @property
    def flushing(self) -> bool:
        return self._flush_lock.locked()

    async def flush(self, path: Path) -> None:
        """Write the full snapshot to *path*, waiting for any in-flight flush."""
        async with self._flush_lock:
            # Serialize on the loop thread so no event handler mutates mid-dump.
            text = json.dumps(self.snapshot().to_dict())
            await asyncio.to_thread(write_text_atomic, path, text)
        logger.debug("Store flushed", path=str(path))

    async def flush_if_idle(self, path: Path) -> bool:
        """Periodic variant: skip (return False) if a flush is already running."""
        if self._flush_lock.locked():
            logger.debug("Skipping store flush, previous flush still running")
            return False
        await self.flush(path)
        return True

    # --- Messages ---

    def upsert_message(self, msg: WAMessage) -> None:
        chat = self._messages.setdefault(msg.key.remote_jid, OrderedDict())
        existing = chat.get(msg.key.id)
        if existing is not None and msg.message is None:
            # Keep the known body when a bare key is re-delivered.
            msg.message = existing.message
        chat[msg.key.id] = msg
        chat.move_to_end(msg.key.id)
        while len(chat) > self._max_per_chat:
            chat.popitem(last=False)

    def load_message(self, jid: str, message_id: str) -> WAMessage | None:
        return self._messages.get(jid, {}).get(message_id)

    def messages_for(self, jid: str) -> list[WAMessage]:
        return list(self._messages.get(jid, {}).values())

    @property
    def message_count(self) -> int:
        return sum(len(msgs) for msgs in self._messages.values())

    # --- Event binding ---

    def bind(self, events: EventBus) -> list[Unsubscribe]:
        """Follow *events*; returns the unsubscribe handles for this binding."""
        return [
            events.subscribe(MessagesUpsert, self._on_messages_upsert),
            events.subscribe(MessagesUpdate, self._on_messages_update),
            events.subscribe(ChatsUpsert, self._on_chats_upsert),
            events.subscribe(ContactsUpsert, self._on_contacts_upsert),
        ]

    async def _on_messages_upsert(self, event: MessagesUpsert) -> None:
        for msg in event.messages:
            self.upsert_message(msg)

    async def _on_messages_update(self, event: MessagesUpdate) -> None:
        for item in event.updates:
            record = self.load_message(item.key.remote_jid, item.key.id)
            if record is not None:
                record.apply_update(item.update)

    async def _on_chats_upsert(self, event: ChatsUpsert) -> None:
        for chat in event.chats:
            jid = chat.get("id")
            if jid:
                self.chats.setdefault(jid, {}).update(chat)

    async def _on_contacts_upsert(self, event: ContactsUpsert) -> None:
        for contact in event.contacts:
            jid = contact.get("id")
            if jid:
                self.contacts.setdefault(jid, {}).update(contact)
