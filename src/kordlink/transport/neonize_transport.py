"""WhatsApp transport using neonize (whatsmeow Python bindings).

Translates neonize's client events into kordlink's socket event model.

whatsmeow keeps the whole device identity (noise key, signal keys, retry
receipts) in one SQLite file, ``<session_dir>/neonize.db``.  That file
travels inside ``creds.json`` as base64 under ``neonizeDb``:

* a session id from the dashboard or a base64 blob seeds ``neonize.db``
  before the client starts, so either source authenticates the device;
* after every successful connect the current file is exported back through
  ``CredsUpdate`` when it changed, so ``creds.json`` stays portable.

Signal keys and message re-sends are handled inside whatsmeow, so this
transport does not use ``SocketOptions.keys`` or ``get_message``.  The
shared ``retry_cache`` counts deliveries per message id; whatsmeow replays
unacknowledged messages after a reconnect and those repeats are dropped.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import re
from importlib import metadata
from pathlib import Path
from typing import Any

from neonize.aioze import client as neonize_client
from neonize.aioze import events as neonize_events
from neonize.aioze.client import NewAClient
from neonize.events import (
    ConnectedEv,
    ConnectFailureEv,
    DisconnectedEv,
    LoggedOutEv,
    MessageEv,
    PairStatusEv,
)
from neonize.utils.enum import Presence
from neonize.utils.jid import Jid2String

from kordlink.event_bus import (
    ConnectionUpdate,
    CredsUpdate,
    EventBus,
    MessagesUpdate,
    MessagesUpsert,
)
from kordlink.logger import logger
from kordlink.transport.base import SocketOptions
from kordlink.types import (
    REVOKE_STUB_TYPE,
    ConnectionState,
    CredentialSource,
    DisconnectInfo,
    DisconnectReason,
    MessageKey,
    MessageUpdate,
    WAMessage,
)
from kordlink.utils import write_bytes_atomic

AUTH_DB_NAME = "neonize.db"
DEVICE_DB_FIELD = "neonizeDb"

# waE2E.ProtocolMessage.Type.REVOKE
_PROTOCOL_REVOKE = 0


class NeonizeTransport:
    """One neonize client per connection lifetime."""

    def __init__(self, options: SocketOptions) -> None:
        self.events = EventBus()
        self._options = options
        self._registered = options.credentials.registered
        self._idle_task: asyncio.Task[None] | None = None

        # Neonize creates its own event loop at import time; point both the
        # events and client modules at ours so callbacks land on it.
        loop = asyncio.get_running_loop()
        neonize_events.event_global_loop = loop
        neonize_client.event_global_loop = loop

        session_dir = options.credentials.session_dir
        session_dir.mkdir(parents=True, exist_ok=True)
        self._db_path = session_dir / AUTH_DB_NAME
        seed_device_db(options, self._db_path)
        self._client = NewAClient(str(self._db_path))
        self._register_events()

    @property
    def registered(self) -> bool:
        return self._registered

    def _register_events(self) -> None:
        self._client.event(ConnectedEv)(self._on_connected)
        self._client.event(DisconnectedEv)(self._on_disconnected)
        self._client.event(LoggedOutEv)(self._on_logged_out)
        self._client.event(ConnectFailureEv)(self._on_connect_failure)
        self._client.event(PairStatusEv)(self._on_pair_status)
        self._client.event(MessageEv)(self._on_message)

    # --- neonize callbacks ---

    async def _on_connected(self, _client: NewAClient, _ev: ConnectedEv) -> None:
        await self._export_device_db()
        await self.events.dispatch(ConnectionUpdate(connection=ConnectionState.OPEN))

    async def _on_disconnected(self, _client: NewAClient, _ev: DisconnectedEv) -> None:
        await self._emit_closed(DisconnectReason.CONNECTION_LOST, "disconnected")

    async def _on_logged_out(self, _client: NewAClient, ev: LoggedOutEv) -> None:
        reason = str(getattr(ev, "Reason", "") or "logged out")
        await self._emit_closed(DisconnectReason.LOGGED_OUT, reason)

    async def _on_connect_failure(self, _client: NewAClient, ev: ConnectFailureEv) -> None:
        reason = str(getattr(ev, "Reason", "") or "connect failure")
        await self._emit_closed(DisconnectReason.CONNECTION_CLOSED, reason)

    async def _on_pair_status(self, _client: NewAClient, ev: PairStatusEv) -> None:
        self._registered = True
        me = Jid2String(ev.ID)
        logger.info("WhatsApp paired", user=me)
        await self.events.dispatch(CredsUpdate({"registered": True, "me": {"id": me}}))

    async def _on_message(self, _client: NewAClient, message: MessageEv) -> None:
        try:
            event = translate_message(message)
        except Exception:
            logger.exception(
                "Failed to translate message event",
                message_id=getattr(getattr(message, "Info", None), "ID", "unknown"),
            )
            return
        if isinstance(event, MessagesUpsert):
            event = self._drop_redelivered(event)
        if event is not None:
            await self.events.dispatch(event)

    def _drop_redelivered(self, event: MessagesUpsert) -> MessagesUpsert | None:
        fresh = []
        for record in event.messages:
            if self._options.retry_cache.increment(record.key.id) > 1:
                logger.debug("Dropping redelivered message", message_id=record.key.id)
                continue
            fresh.append(record)
        if not fresh:
            return None
        return MessagesUpsert(fresh, kind=event.kind)

    async def _export_device_db(self) -> None:
        try:
            data = await asyncio.to_thread(self._db_path.read_bytes)
        except FileNotFoundError:
            return
        encoded = base64.b64encode(data).decode("ascii")
        if encoded == self._options.credentials.creds.get(DEVICE_DB_FIELD):
            return
        logger.debug("Exporting device store to credentials", size=len(data))
        await self.events.dispatch(
            CredsUpdate({DEVICE_DB_FIELD: encoded, "registered": self._registered})
        )

    async def _emit_closed(self, code: DisconnectReason, reason: str) -> None:
        await self.events.dispatch(
            ConnectionUpdate(
                connection=ConnectionState.CLOSED,
                last_disconnect=DisconnectInfo(status_code=int(code), reason=reason),
            )
        )

    # --- Transport API ---

    async def connect(self) -> None:
        await self.events.dispatch(ConnectionUpdate(connection=ConnectionState.CONNECTING))
        await self._client.connect()
        self._idle_task = asyncio.ensure_future(self._client.idle())

    async def send_presence(self, available: bool) -> None:
        await self._client.send_presence(
            Presence.AVAILABLE if available else Presence.UNAVAILABLE
        )

    async def request_pairing_code(self, phone_number: str) -> str:
        digits = re.sub(r"\D", "", phone_number)
        return str(await self._client.PairPhone(digits, show_push_notification=True))

    async def logout(self) -> None:
        await self._client.logout()

    async def close(self) -> None:
        if self._idle_task:
            self._idle_task.cancel()
            self._idle_task = None
        with contextlib.suppress(Exception):
            await self._client.disconnect()


def translate_message(message: Any) -> MessagesUpsert | MessagesUpdate | None:
    """Map a neonize ``MessageEv`` to an upsert, or a revoke to an update."""
    info = message.Info
    source = info.MessageSource
    chat_jid = Jid2String(source.Chat)
    if not chat_jid or chat_jid == "status@broadcast":
        return None

    msg = message.Message
    if msg.HasField("protocolMessage") and msg.protocolMessage.type == _PROTOCOL_REVOKE:
        revoked = msg.protocolMessage.key
        key = MessageKey(
            remote_jid=revoked.remoteJID or chat_jid,
            id=revoked.ID,
            from_me=bool(revoked.fromMe),
        )
        return MessagesUpdate(
            [MessageUpdate(key=key, update={"message": None, "messageStubType": REVOKE_STUB_TYPE})]
        )

    content = (
        msg.conversation
        or msg.extendedTextMessage.text
        or msg.imageMessage.caption
        or msg.videoMessage.caption
        or ""
    )
    ts = info.Timestamp
    if ts > 1e10:
        ts = ts / 1000
    participant = Jid2String(source.Sender) if source.IsGroup else None
    record = WAMessage(
        key=MessageKey(
            remote_jid=chat_jid,
            id=info.ID,
            from_me=bool(source.IsFromMe),
            participant=participant,
        ),
        message={"conversation": content},
        timestamp=int(ts),
        push_name=info.Pushname or None,
    )
    return MessagesUpsert([record])


class NeonizeTransportFactory:
    async def fetch_latest_version(self) -> tuple[tuple[int, ...], bool]:
        # whatsmeow negotiates the web client version itself; report the binding's.
        try:
            raw = metadata.version("neonize")
        except metadata.PackageNotFoundError:
            return (0,), False
        parts = tuple(int(p) for p in re.findall(r"\d+", raw)[:3])
        return parts or (0,), True

    def create(self, options: SocketOptions) -> NeonizeTransport:
        logger.debug(
            "Creating neonize transport",
            session_dir=str(options.credentials.session_dir),
        )
        return NeonizeTransport(options)


def seed_device_db(options: SocketOptions, db_path: Path) -> bool:
    """Write ``neonize.db`` from the credentials; True if the file was written.

    Credentials that arrived from the dashboard or a blob replace any local
    file, once per process; later sockets keep the file whatsmeow has been
    updating. Local credentials only fill in a missing file.
    """
    credentials = options.credentials
    encoded = credentials.creds.get(DEVICE_DB_FIELD)
    fresh = (
        credentials.source in (CredentialSource.REMOTE, CredentialSource.BLOB)
        and not credentials.applied
    )
    credentials.applied = True
    if not encoded:
        return False
    if db_path.exists() and not fresh:
        return False
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, TypeError) as exc:
        logger.warning("Ignoring unreadable device store in credentials", err=str(exc))
        return False
    write_bytes_atomic(db_path, data)
    logger.info("Seeded device store from credentials", source=str(credentials.source))
    return True
