"""Connection and session lifecycle supervisor.

One :class:`Supervisor` owns the connection state and the active socket.
Each pass of :meth:`Supervisor.run` is one connection lifetime:

    resolve credentials → fetch version → create socket → bind events
    → connect → wait for close

The close handler only records a decision (reconnect or terminal); the
outer loop in ``run()`` owns the restart, so a reconnect never re-enters
socket construction from inside an event callback.  All bindings made for
a lifetime are unsubscribed before the next one starts, and the heartbeat
is stopped on every close, so neither survives into the next socket.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from functools import partial
from pathlib import Path
from typing import Any

from kordlink.credentials import CredentialStore
from kordlink.errors import ConnectionClosedError, CredentialResolutionError, ShutdownStepError
from kordlink.event_bus import (
    ConnectionUpdate,
    CredsUpdate,
    MessagesUpdate,
    MessagesUpsert,
    Unsubscribe,
)
from kordlink.heartbeat import HeartbeatReporter
from kordlink.logger import logger
from kordlink.plugin import call_hook
from kordlink.status import MessageCounter
from kordlink.store import MessageStore
from kordlink.transport.base import SocketOptions, Transport, TransportFactory
from kordlink.transport.keys import CachedKeyStore, FileKeyStore, RetryCounterCache
from kordlink.types import ConnectionState, DisconnectInfo, MessageKey
from kordlink.utils import cancel_task, create_background_task

EMPTY_MESSAGE: dict[str, Any] = {"conversation": ""}


class CloseOutcome(StrEnum):
    RECONNECT = "reconnect"
    TERMINAL = "terminal"


class Supervisor:
    def __init__(
        self,
        *,
        factory: TransportFactory,
        credentials: CredentialStore,
        store: MessageStore,
        hooks: Any,
        counter: MessageCounter,
        store_path: Path,
        heartbeat: HeartbeatReporter | None = None,
        owner_number: str = "",
        always_online: bool = False,
        reconnect_delay: float = 5.0,
        max_restarts: int = 0,
        flush_interval: float = 30.0,
        retry_cache_size: int = 1000,
        key_cache_ttl: float = 300.0,
        shutdown_step_timeout: float = 5.0,
    ) -> None:
        self._factory = factory
        self._credentials = credentials
        self._store = store
        self._hooks = hooks
        self._counter = counter
        self._store_path = store_path
        self._heartbeat = heartbeat
        self._owner_number = owner_number
        self._always_online = always_online
        self._reconnect_delay = reconnect_delay
        self._max_restarts = max_restarts
        self._flush_interval = flush_interval
        self._key_cache_ttl = key_cache_ttl
        self._shutdown_step_timeout = shutdown_step_timeout

        # Shared by every socket this process creates.
        self.retry_cache = RetryCounterCache(retry_cache_size)

        self.state: ConnectionState | None = None
        self.sock: Transport | None = None
        self.restart_count = 0
        self.pairing_code: str | None = None
        self._consecutive_restarts = 0
        self._stopping = False
        self._stop_requested = asyncio.Event()
        self._closed: asyncio.Future[CloseOutcome] | None = None
        self._subscriptions: list[Unsubscribe] = []
        self._flush_task: asyncio.Task[None] | None = None

    @property
    def flush_active(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    # ------------------------------------------------------------------
    # Outer loop
    # ------------------------------------------------------------------

    async def run(self) -> CloseOutcome:
        """Keep a connection up until a terminal close or shutdown.

        Raises CredentialResolutionError if the configured session cannot be
        resolved; every other failure becomes a delayed reconnect.
        """
        while True:
            try:
                outcome = await self._run_connection()
            except CredentialResolutionError:
                raise
            except Exception:
                logger.exception("Connection attempt failed")
                if self._heartbeat is not None:
                    await self._heartbeat.stop()
                self.state = ConnectionState.CLOSED
                outcome = CloseOutcome.RECONNECT

            if outcome is CloseOutcome.TERMINAL or self._stopping:
                return CloseOutcome.TERMINAL

            self.restart_count += 1
            self._consecutive_restarts += 1
            if self._max_restarts and self._consecutive_restarts > self._max_restarts:
                logger.error(
                    "Reconnect limit reached, giving up",
                    restarts=self._consecutive_restarts - 1,
                )
                await self._stop_flush_loop()
                return CloseOutcome.TERMINAL

            logger.info(
                "Reconnecting", delay=self._reconnect_delay, attempt=self.restart_count
            )
            if await self._wait_for_stop(self._reconnect_delay):
                logger.info("Shutdown requested during reconnect delay")
                return CloseOutcome.TERMINAL

    async def _wait_for_stop(self, delay: float) -> bool:
        """Sleep up to *delay* seconds; True if shutdown began meanwhile."""
        try:
            await asyncio.wait_for(self._stop_requested.wait(), timeout=delay)
        except TimeoutError:
            return self._stopping
        return True

    async def _run_connection(self) -> CloseOutcome:
        self.state = ConnectionState.CONNECTING
        credentials = await self._credentials.resolve()

        version, is_latest = await self._factory.fetch_latest_version()
        logger.info(
            "Using transport version",
            version=".".join(str(p) for p in version),
            is_latest=is_latest,
        )

        keys = CachedKeyStore(FileKeyStore(credentials.session_dir), ttl=self._key_cache_ttl)
        sock = self._factory.create(
            SocketOptions(
                version=version,
                credentials=credentials,
                keys=keys,
                retry_cache=self.retry_cache,
                get_message=self._get_message,
                generate_link_previews=True,
            )
        )
        self.sock = sock
        closed: asyncio.Future[CloseOutcome] = asyncio.get_running_loop().create_future()
        self._closed = closed
        try:
            await self._bind(sock)
            await sock.connect()
            return await closed
        finally:
            self._unbind()
            self._closed = None
            if not closed.done():
                closed.cancel()
            try:
                await sock.close()
            except Exception as exc:
                logger.debug("Socket close failed", err=str(exc))

    # ------------------------------------------------------------------
    # Event bindings (one set per connection lifetime)
    # ------------------------------------------------------------------

    async def _bind(self, sock: Transport) -> None:
        self._subscriptions = self._store.bind(sock.events)
        await self._call_hook(
            "kordlink_socket_ready", self._hooks.kordlink_socket_ready, sock=sock, store=self._store
        )
        events = sock.events
        self._subscriptions.append(events.subscribe(CredsUpdate, self._on_creds_update))
        self._ensure_flush_loop()
        self._subscriptions.append(events.subscribe(MessagesUpsert, self._on_messages_upsert))
        self._subscriptions.append(events.subscribe(MessagesUpdate, self._on_messages_update))
        self._subscriptions.append(events.subscribe(ConnectionUpdate, self._on_connection_update))

    def _unbind(self) -> None:
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []

    async def _on_creds_update(self, event: CredsUpdate) -> None:
        await self._credentials.update(event.partial)

    async def _on_messages_upsert(self, event: MessagesUpsert) -> None:
        if event.kind != "notify":
            # History sync: the store keeps these, but they are not new traffic.
            return
        for message in event.messages:
            self._counter.increment()
            await self._call_hook(
                "kordlink_message", self._hooks.kordlink_message, sock=self.sock, message=message
            )

    async def _on_messages_update(self, event: MessagesUpdate) -> None:
        for update in event.updates:
            if update.is_deletion:
                await self._call_hook(
                    "kordlink_message_deleted",
                    self._hooks.kordlink_message_deleted,
                    sock=self.sock,
                    update=update,
                    store=self._store,
                )

    async def _on_connection_update(self, event: ConnectionUpdate) -> None:
        match event.connection:
            case ConnectionState.CONNECTING:
                self.state = ConnectionState.CONNECTING
            case ConnectionState.OPEN:
                await self._handle_open()
            case ConnectionState.CLOSED:
                await self._handle_close(event.last_disconnect)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    async def _handle_open(self) -> None:
        sock = self.sock
        if sock is None:
            return
        self.state = ConnectionState.OPEN
        self._consecutive_restarts = 0
        logger.info("Connected successfully")

        try:
            await sock.send_presence(self._always_online)
        except Exception as exc:
            logger.warning("Failed to update presence", err=str(exc))

        await self._call_hook(
            "kordlink_connection_open", self._hooks.kordlink_connection_open, sock=sock
        )

        if self._heartbeat is not None and not self._stopping:
            await self._heartbeat.start()

        if not sock.registered:
            await self._request_pairing_code(sock)

    async def _request_pairing_code(self, sock: Transport) -> None:
        phone = self._owner_number
        if not phone:
            logger.error("Session is not registered and no owner number is configured")
            return
        try:
            code = await sock.request_pairing_code(phone)
        except Exception:
            logger.exception("Failed to request pairing code", phone=phone)
            return
        self.pairing_code = code
        logger.warning("Pairing code issued, enter it on the phone to link", phone=phone, code=code)

    async def _handle_close(self, info: DisconnectInfo | None) -> None:
        self.state = ConnectionState.CLOSED
        if self._heartbeat is not None:
            await self._heartbeat.stop()

        closed = ConnectionClosedError(
            info.status_code if info else None, info.reason if info else ""
        )
        reconnect = not closed.is_logged_out
        logger.warning(
            "Connection closed",
            status_code=closed.status_code,
            reason=closed.reason,
            reconnect=reconnect,
        )
        if not reconnect:
            await self._stop_flush_loop()

        if self._closed is not None and not self._closed.done():
            self._closed.set_result(CloseOutcome.RECONNECT if reconnect else CloseOutcome.TERMINAL)

    # ------------------------------------------------------------------
    # Periodic store flush (one task per process, survives reconnects)
    # ------------------------------------------------------------------

    def _ensure_flush_loop(self) -> None:
        if not self._stopping and not self.flush_active:
            self._flush_task = create_background_task(self._flush_loop(), name="store-flush")

    async def _stop_flush_loop(self) -> None:
        task, self._flush_task = self._flush_task, None
        await cancel_task(task)

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            try:
                # Shielded so cancelling the loop never abandons a half-done write.
                await asyncio.shield(self._store.flush_if_idle(self._store_path))
            except OSError as exc:
                logger.error("Store flush failed", path=str(self._store_path), err=str(exc))

    # ------------------------------------------------------------------
    # Transport callbacks
    # ------------------------------------------------------------------

    async def _get_message(self, key: MessageKey) -> dict[str, Any]:
        """Message lookup for transport retries; never raises."""
        try:
            record = self._store.load_message(key.remote_jid, key.id)
        except Exception as exc:
            logger.warning("Message lookup failed", message_id=key.id, err=str(exc))
            return dict(EMPTY_MESSAGE)
        if record is not None and record.message:
            return record.message
        return dict(EMPTY_MESSAGE)

    async def _call_hook(self, name: str, hook: Any, **kwargs: Any) -> None:
        try:
            await call_hook(hook, **kwargs)
        except Exception:
            logger.exception("Plugin hook failed", hook=name)

    # ------------------------------------------------------------------
    # Graceful shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> list[str]:
        """Run the shutdown steps in their fixed order.

        Each step is bounded by the step timeout; a failing step is logged
        and the remaining steps still run.  Returns the steps that succeeded.
        """
        self._stopping = True
        self._stop_requested.set()
        steps: list[tuple[str, Callable[[], Awaitable[None]]]] = [
            ("cancel_flush", self._stop_flush_loop),
            ("stop_heartbeat", self._stop_heartbeat),
            ("final_flush", partial(self._store.flush, self._store_path)),
            ("logout", self._logout),
        ]
        completed: list[str] = []
        for name, step in steps:
            try:
                await asyncio.wait_for(step(), timeout=self._shutdown_step_timeout)
            except Exception as exc:
                err = ShutdownStepError(name, exc)
                logger.error("Shutdown step failed", step=err.step, err=repr(exc))
            else:
                completed.append(name)
        return completed

    async def _stop_heartbeat(self) -> None:
        if self._heartbeat is not None:
            await self._heartbeat.stop()

    async def _logout(self) -> None:
        if self.sock is None:
            logger.info("No socket to log out of")
            return
        await self.sock.logout()
        logger.info("Logged out of remote session")
