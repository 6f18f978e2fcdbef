"""Process orchestrator: wires settings, plugins, store, heartbeat and supervisor.

Startup order:

1. Plugins (``kordlink_load_commands`` runs once, before any socket exists)
2. Status HTTP server
3. Message store load
4. Supervisor loop (credentials → socket → reconnects)

SIGINT/SIGTERM trigger a graceful shutdown bounded by a watchdog; a second
signal force-exits.
"""

from __future__ import annotations

import asyncio
import os
import signal
import threading
from typing import Any

from aiohttp import web

from kordlink.config import Settings, get_settings
from kordlink.credentials import CredentialStore
from kordlink.errors import CredentialResolutionError
from kordlink.heartbeat import HeartbeatReporter
from kordlink.http_server import start_http_server
from kordlink.logger import logger, set_level
from kordlink.plugin import call_hook, get_plugin_manager
from kordlink.status import MessageCounter
from kordlink.store import MessageStore
from kordlink.supervisor import Supervisor
from kordlink.transport.base import TransportFactory


class KordApp:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.counter = MessageCounter()
        self.store = MessageStore(
            max_messages_per_chat=self.settings.store.max_messages_per_chat
        )
        self.plugin_manager: Any | None = None
        self.heartbeat: HeartbeatReporter | None = None
        self.supervisor: Supervisor | None = None
        self._http_runner: web.AppRunner | None = None
        self._run_task: asyncio.Task[Any] | None = None
        self._watchdog: threading.Timer | None = None
        self._shutting_down = False

    # ------------------------------------------------------------------
    # Status views (consumed by the HTTP server)
    # ------------------------------------------------------------------

    def message_total(self) -> int:
        return self.counter.value

    def connection_state(self) -> str:
        if self.supervisor is None or self.supervisor.state is None:
            return "idle"
        return str(self.supervisor.state)

    def heartbeat_phase(self) -> str:
        if self.heartbeat is None:
            return "disabled"
        return str(self.heartbeat.phase)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def _make_heartbeat(self) -> HeartbeatReporter | None:
        s = self.settings
        if not s.heartbeat.enabled:
            return None
        return HeartbeatReporter(
            bot_id=s.owner.name,
            counter=self.counter,
            base_url=s.dashboard.base_url,
            api_key=s.dashboard.api_key.get_secret_value(),
            version=s.bot.version,
            interval=s.heartbeat.interval_seconds,
            retry_delay=s.heartbeat.retry_delay_seconds,
            initial_attempts=s.heartbeat.initial_attempts,
            max_failures=s.heartbeat.max_failures,
            timeout=s.dashboard.timeout_seconds,
        )

    def _make_supervisor(self, factory: TransportFactory) -> Supervisor:
        s = self.settings
        credentials = CredentialStore(
            s.session_dir,
            s.session_ref,
            remote_prefix=s.session.remote_prefix,
            dashboard_url=s.dashboard.base_url,
            api_key=s.dashboard.api_key.get_secret_value(),
            timeout=s.dashboard.timeout_seconds,
        )
        return Supervisor(
            factory=factory,
            credentials=credentials,
            store=self.store,
            hooks=self.plugin_manager.hook,
            counter=self.counter,
            store_path=s.store_path,
            heartbeat=self.heartbeat,
            owner_number=s.owner.primary_number,
            always_online=s.bot.always_online,
            reconnect_delay=s.supervisor.reconnect_delay_seconds,
            max_restarts=s.supervisor.max_restarts,
            flush_interval=s.supervisor.store_flush_interval_seconds,
            retry_cache_size=s.supervisor.retry_cache_size,
            key_cache_ttl=s.supervisor.key_cache_ttl_seconds,
            shutdown_step_timeout=s.supervisor.shutdown_step_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> int:
        """Run until shutdown or a terminal close. Returns the exit code."""
        s = self.settings
        set_level(s.logging.level)

        self.plugin_manager = get_plugin_manager()
        await call_hook(self.plugin_manager.hook.kordlink_load_commands)

        factory = self.plugin_manager.hook.kordlink_transport_factory(settings=s)
        if factory is None:
            logger.critical(
                "No transport available, install the whatsapp extra (kordlink[whatsapp])"
            )
            return 1

        self._http_runner = await start_http_server(self, s.server.host, s.server.port)

        if self.store.load(s.store_path):
            logger.info(
                "Message store loaded",
                path=str(s.store_path),
                messages=self.store.message_count,
            )

        self.heartbeat = self._make_heartbeat()
        self.supervisor = self._make_supervisor(factory)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.ensure_future(self.shutdown(s.name)),
            )

        self._run_task = asyncio.create_task(self.supervisor.run(), name="supervisor")
        exit_code = 0
        try:
            await self._run_task
        except asyncio.CancelledError:
            if not self._shutting_down:
                raise
            logger.info("Shutdown complete")
        except CredentialResolutionError as exc:
            logger.critical("Could not resolve session credentials", err=str(exc))
            exit_code = 1
        else:
            if self._shutting_down:
                logger.info("Shutdown complete")
            else:
                # Terminal close (logged out or reconnect limit): persist what we have.
                try:
                    await self.store.flush(s.store_path)
                except OSError as exc:
                    logger.error("Final store flush failed", err=str(exc))
                logger.info("Supervisor stopped, exiting")
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            if self._http_runner is not None:
                await self._http_runner.cleanup()
                self._http_runner = None
            if self._watchdog is not None:
                self._watchdog.cancel()
        return exit_code

    async def shutdown(self, sig_name: str) -> None:
        """Graceful shutdown handler. Second signal force-exits."""
        if self._shutting_down:
            logger.info("Force shutdown")
            os._exit(1)
        self._shutting_down = True
        logger.info("Shutdown signal received, saving store and exiting", signal=sig_name)

        # Hard-exit watchdog in case a step ignores its timeout.
        self._watchdog = threading.Timer(
            self.settings.supervisor.shutdown_watchdog_seconds, lambda: os._exit(1)
        )
        self._watchdog.daemon = True
        self._watchdog.start()

        if self.supervisor is not None:
            await self.supervisor.shutdown()
        if self._run_task is not None:
            self._run_task.cancel()
