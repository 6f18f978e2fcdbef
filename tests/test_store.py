"""Tests for the in-memory message store and its JSON snapshots."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from conftest import make_wa_msg
from kordlink.errors import StoreLoadError
from kordlink.event_bus import (
    ChatsUpsert,
    ContactsUpsert,
    EventBus,
    MessagesUpdate,
    MessagesUpsert,
)
from kordlink.store import MessageStore, load_snapshot
from kordlink.types import MessageUpdate

JID = "2348000000001@s.whatsapp.net"


@pytest.fixture
def store() -> MessageStore:
    return MessageStore()


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoad:
    @pytest.mark.parametrize("content", [None, "", "   \n", "{}"])
    def test_absent_or_empty_means_fresh_store(self, tmp_path: Path, store, content):
        path = tmp_path / "store.json"
        if content is not None:
            path.write_text(content)

        assert store.load(path) is False
        assert store.message_count == 0
        assert store.chats == {}

    def test_invalid_json_starts_empty(self, tmp_path: Path, store):
        path = tmp_path / "store.json"
        path.write_text("{truncated")

        assert store.load(path) is False
        assert store.message_count == 0

    def test_load_snapshot_raises_on_garbage(self, tmp_path: Path):
        path = tmp_path / "store.json"
        path.write_text("[1, 2]")

        with pytest.raises(StoreLoadError):
            load_snapshot(path)

    async def test_flush_then_load_restores_state(self, tmp_path: Path, store):
        path = tmp_path / "store.json"
        store.upsert_message(make_wa_msg("A", text="first"))
        store.chats[JID] = {"id": JID, "name": "Alice"}
        await store.flush(path)

        restored = MessageStore()
        assert restored.load(path) is True
        assert restored.load_message(JID, "A").text == "first"
        assert restored.chats == {JID: {"id": JID, "name": "Alice"}}


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class TestMessages:
    def test_upsert_and_lookup(self, store):
        store.upsert_message(make_wa_msg("A"))

        assert store.load_message(JID, "A").text == "hello"
        assert store.load_message(JID, "missing") is None
        assert store.load_message("other@s.whatsapp.net", "A") is None

    def test_per_chat_bound_drops_oldest(self):
        store = MessageStore(max_messages_per_chat=2)
        for msg_id in ("A", "B", "C"):
            store.upsert_message(make_wa_msg(msg_id))

        assert [m.key.id for m in store.messages_for(JID)] == ["B", "C"]

    def test_redelivered_key_keeps_body(self, store):
        store.upsert_message(make_wa_msg("A", text="original"))
        store.upsert_message(make_wa_msg("A", text=None))

        assert store.load_message(JID, "A").text == "original"


# ---------------------------------------------------------------------------
# Event binding
# ---------------------------------------------------------------------------


class TestBinding:
    async def test_follows_event_stream(self, store):
        bus = EventBus()
        store.bind(bus)

        await bus.dispatch(MessagesUpsert([make_wa_msg("A")]))
        await bus.dispatch(ChatsUpsert([{"id": JID, "name": "Alice"}]))
        await bus.dispatch(ContactsUpsert([{"id": JID, "notify": "Al"}, {"name": "no id"}]))

        assert store.message_count == 1
        assert store.chats[JID]["name"] == "Alice"
        assert list(store.contacts) == [JID]

    async def test_revoke_keeps_body_and_flags_record(self, store):
        bus = EventBus()
        store.bind(bus)
        original = make_wa_msg("A", text="secret")
        await bus.dispatch(MessagesUpsert([original]))

        await bus.dispatch(MessagesUpdate([MessageUpdate(original.key, {"message": None})]))

        record = store.load_message(JID, "A")
        assert record.revoked is True
        assert record.text == "secret"

    async def test_unsubscribe_handles_detach(self, store):
        bus = EventBus()
        for unsubscribe in store.bind(bus):
            unsubscribe()

        await bus.dispatch(MessagesUpsert([make_wa_msg("A")]))

        assert store.message_count == 0


# ---------------------------------------------------------------------------
# Flushing
# ---------------------------------------------------------------------------


class TestFlush:
    async def test_flush_writes_full_snapshot(self, tmp_path: Path, store):
        path = tmp_path / "nested" / "store.json"
        store.upsert_message(make_wa_msg("A"))

        await store.flush(path)

        raw = json.loads(path.read_text())
        assert set(raw) == {"chats", "contacts", "messages"}
        assert raw["messages"][JID][0]["key"]["id"] == "A"
        assert not path.with_suffix(".json.tmp").exists()

    async def test_flush_if_idle_skips_while_flushing(self, tmp_path: Path, store):
        path = tmp_path / "store.json"

        async with store._flush_lock:
            assert store.flushing is True
            assert await store.flush_if_idle(path) is False
        assert not path.exists()

        assert await store.flush_if_idle(path) is True
        assert path.exists()

    async def test_concurrent_flushes_serialize(self, tmp_path: Path, store):
        path = tmp_path / "store.json"
        store.upsert_message(make_wa_msg("A"))

        await asyncio.gather(store.flush(path), store.flush(path), store.flush(path))

        assert json.loads(path.read_text())["messages"][JID][0]["key"]["id"] == "A"
