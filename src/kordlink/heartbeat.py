"""Liveness reporting to the dashboard.

Lifecycle: ``IDLE → STARTING → RUNNING → STOPPED``.  ``start()`` makes one
immediate report, retries it in the background a bounded number of times,
and schedules a periodic report.  Periodic failures are counted; after
``max_failures`` consecutive failures the reporter stops itself so an
unreachable monitor cannot generate unbounded retry traffic.

A reporter is created per process but torn down (``stop()``) on every
connection close and restarted on the next open.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import aiohttp

from kordlink.errors import HeartbeatReportError
from kordlink.logger import logger
from kordlink.status import MessageCounter, process_uptime
from kordlink.utils import cancel_task

HEARTBEAT_PATH = "/api/status/heartbeat"


class HeartbeatPhase(StrEnum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"


class HeartbeatReporter:
    def __init__(
        self,
        *,
        bot_id: str,
        counter: MessageCounter,
        base_url: str,
        api_key: str,
        version: str = "1.0.0",
        interval: float = 300.0,
        retry_delay: float = 5.0,
        initial_attempts: int = 3,
        max_failures: int = 3,
        timeout: float = 5.0,
        uptime: Callable[[], int] = process_uptime,
    ) -> None:
        self.bot_id = bot_id
        self._counter = counter
        self._url = base_url.rstrip("/") + HEARTBEAT_PATH
        self._api_key = api_key
        self._version = version
        self._interval = interval
        self._retry_delay = retry_delay
        self._initial_attempts = initial_attempts
        self._max_failures = max_failures
        self._timeout = timeout
        self._uptime = uptime

        self.phase = HeartbeatPhase.IDLE
        self.consecutive_failures = 0
        self.initial_failures = 0
        self.initial_established = False
        self.last_heartbeat: str | None = None
        self._periodic_task: asyncio.Task[None] | None = None
        self._initial_task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self.phase is HeartbeatPhase.RUNNING

    @property
    def timer_active(self) -> bool:
        return self._periodic_task is not None and not self._periodic_task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """(Re)start reporting. A running reporter is stopped first."""
        if self.phase in (HeartbeatPhase.STARTING, HeartbeatPhase.RUNNING):
            await self.stop()

        self.phase = HeartbeatPhase.STARTING
        self.consecutive_failures = 0
        self.initial_failures = 0
        self.initial_established = False

        established = await self._attempt_initial()
        if self.phase is not HeartbeatPhase.STARTING:
            # stop() ran while the first report was in flight.
            return
        if not established:
            self._initial_task = asyncio.create_task(
                self._retry_initial(), name="heartbeat-initial-retry"
            )
        self._periodic_task = asyncio.create_task(self._periodic_loop(), name="heartbeat")
        self.phase = HeartbeatPhase.RUNNING

    async def stop(self) -> None:
        """Cancel timers and, if we were running, send a final offline report."""
        was_running = self.phase in (HeartbeatPhase.STARTING, HeartbeatPhase.RUNNING)
        self.phase = HeartbeatPhase.STOPPED

        current = asyncio.current_task()
        initial, periodic = self._initial_task, self._periodic_task
        self._initial_task = self._periodic_task = None
        for task in (initial, periodic):
            if task is not current:
                await cancel_task(task)

        if not was_running:
            return
        logger.info("Heartbeat service stopped")
        try:
            await self.send_report(offline=True)
        except HeartbeatReportError as exc:
            logger.warning("Failed to send offline status update", kind=exc.kind, err=str(exc))

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def build_payload(self, *, offline: bool = False) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "version": self._version,
            "messagesSent": self._counter.value,
            "uptime": self._uptime(),
            "lastActive": datetime.now(UTC).isoformat(),
        }
        if offline:
            metadata["status"] = "offline"
        return {"botId": self.bot_id, "metadata": metadata}

    async def send_report(self, *, offline: bool = False) -> dict[str, Any]:
        """POST one report. Raises HeartbeatReportError on any failure."""
        payload = self.build_payload(offline=offline)
        headers = {"x-api-key": self._api_key}
        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as session:
                async with session.post(self._url, json=payload, headers=headers) as resp:
                    try:
                        body = await resp.json(content_type=None)
                    except ValueError:
                        body = None
                    if resp.status >= 400:
                        message = body.get("message", "") if isinstance(body, dict) else ""
                        raise HeartbeatReportError(
                            "status", message or "Unknown error", status=resp.status
                        )
        except HeartbeatReportError:
            raise
        except (aiohttp.ClientConnectionError, TimeoutError) as exc:
            raise HeartbeatReportError("unreachable", str(exc) or type(exc).__name__) from exc
        except (aiohttp.ClientError, ValueError) as exc:
            raise HeartbeatReportError("request", str(exc) or type(exc).__name__) from exc

        if not isinstance(body, dict) or body.get("status") != "success":
            raise HeartbeatReportError(
                "status", "heartbeat not acknowledged", status=resp.status
            )
        data = body.get("data") or {}
        self.last_heartbeat = data.get("lastHeartbeat")
        if not offline:
            logger.debug("Heartbeat recorded", last_heartbeat=self.last_heartbeat)
        return body

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _attempt_initial(self) -> bool:
        try:
            await self.send_report()
        except HeartbeatReportError as exc:
            self.initial_failures += 1
            _log_failure(exc)
            return False
        self.initial_failures = 0
        self.initial_established = True
        logger.info("Initial heartbeat established")
        return True

    async def _retry_initial(self) -> None:
        while self.initial_failures < self._initial_attempts:
            logger.info(
                "Retrying initial heartbeat",
                attempt=self.initial_failures,
                max_attempts=self._initial_attempts,
            )
            await asyncio.sleep(self._retry_delay)
            if await self._attempt_initial():
                return
        logger.error("Failed to establish initial heartbeat", attempts=self.initial_failures)

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.send_report()
            except HeartbeatReportError as exc:
                self.consecutive_failures += 1
                _log_failure(exc, failures=self.consecutive_failures)
                if self.consecutive_failures >= self._max_failures:
                    logger.error(
                        "Multiple heartbeat failures detected, stopping heartbeat service",
                        failures=self.consecutive_failures,
                    )
                    await self.stop()
                    return
            else:
                self.consecutive_failures = 0


def _log_failure(exc: HeartbeatReportError, **kwargs: Any) -> None:
    if exc.kind == "status":
        match exc.status:
            case 400:
                logger.error("Invalid heartbeat data", message=exc.message, **kwargs)
            case 401:
                logger.error("Heartbeat authentication failed, check API key", **kwargs)
            case 500:
                logger.error("Heartbeat server error", message=exc.message, **kwargs)
            case _:
                logger.error(
                    "Heartbeat failed", status=exc.status, message=exc.message, **kwargs
                )
    elif exc.kind == "unreachable":
        logger.error("No response from heartbeat server", err=exc.message, **kwargs)
    else:
        logger.error("Error sending heartbeat", err=exc.message, **kwargs)
