"""Shared test fixtures for kordlink."""

from __future__ import annotations

from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from kordlink.event_bus import ConnectionUpdate, EventBus
from kordlink.transport.base import SocketOptions
from kordlink.types import ConnectionState, DisconnectInfo, DisconnectReason, MessageKey, WAMessage

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures: importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset({"project_root", "session_dir", "store_path"})


def make_settings(**overrides):
    """Create a Settings object with defaults for testing.

    Accepts both model fields (heartbeat, supervisor, etc.) and cached
    property overrides (project_root, session_dir, store_path).

    Usage::

        s = make_settings(session_dir=tmp_path / "session")
        s = make_settings(heartbeat=HeartbeatConfig(enabled=False))
    """
    from kordlink.config import (
        BotConfig,
        DashboardConfig,
        HeartbeatConfig,
        LoggingConfig,
        OwnerConfig,
        ServerConfig,
        SessionConfig,
        Settings,
        StoreConfig,
        SupervisorConfig,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "owner": OwnerConfig(),
        "session": SessionConfig(),
        "bot": BotConfig(),
        "dashboard": DashboardConfig(),
        "heartbeat": HeartbeatConfig(),
        "supervisor": SupervisorConfig(),
        "store": StoreConfig(),
        "server": ServerConfig(),
        "logging": LoggingConfig(),
        "plugins": {},
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def make_wa_msg(
    msg_id: str = "MSG1",
    *,
    jid: str = "2348000000001@s.whatsapp.net",
    text: str | None = "hello",
    from_me: bool = False,
    push_name: str | None = "Alice",
) -> WAMessage:
    return WAMessage(
        key=MessageKey(remote_jid=jid, id=msg_id, from_me=from_me),
        message={"conversation": text} if text is not None else None,
        timestamp=1_700_000_000,
        push_name=push_name,
    )


class FakeTransport:
    """In-memory transport. Tests drive connection events by hand."""

    def __init__(self, options: SocketOptions, *, registered: bool = True) -> None:
        self.events = EventBus()
        self.options = options
        self._registered = registered
        self.calls: list[str] = []
        self.presence: list[bool] = []
        self.pairing_requests: list[str] = []
        self.logout_error: Exception | None = None

    @property
    def registered(self) -> bool:
        return self._registered

    async def connect(self) -> None:
        self.calls.append("connect")

    async def send_presence(self, available: bool) -> None:
        self.presence.append(available)

    async def request_pairing_code(self, phone_number: str) -> str:
        self.pairing_requests.append(phone_number)
        return "KORD-1234"

    async def logout(self) -> None:
        self.calls.append("logout")
        if self.logout_error is not None:
            raise self.logout_error

    async def close(self) -> None:
        self.calls.append("close")

    # --- test drivers ---

    async def open(self) -> None:
        await self.events.dispatch(ConnectionUpdate(connection=ConnectionState.OPEN))

    async def drop(self, code: int = DisconnectReason.CONNECTION_LOST, reason: str = "") -> None:
        await self.events.dispatch(
            ConnectionUpdate(
                connection=ConnectionState.CLOSED,
                last_disconnect=DisconnectInfo(status_code=int(code), reason=reason),
            )
        )


class FakeTransportFactory:
    def __init__(self, *, registered: bool = True) -> None:
        self.registered = registered
        self.sockets: list[FakeTransport] = []
        self.create_errors: list[Exception] = []
        self.always_fail: Exception | None = None
        self.create_calls = 0

    async def fetch_latest_version(self) -> tuple[tuple[int, ...], bool]:
        return (2, 3000, 1015901307), True

    def create(self, options: SocketOptions) -> FakeTransport:
        self.create_calls += 1
        if self.always_fail is not None:
            raise self.always_fail
        if self.create_errors:
            raise self.create_errors.pop(0)
        sock = FakeTransport(options, registered=self.registered)
        self.sockets.append(sock)
        return sock


class FakeDashboard:
    """Records requests to the dashboard API and replays scripted responses."""

    def __init__(self) -> None:
        self.heartbeats: list[dict[str, Any]] = []
        self.fetches: list[dict[str, Any]] = []
        self.heartbeat_responses: list[tuple[int, Any]] = []
        self.heartbeat_default: tuple[int, Any] = (
            200,
            {"status": "success", "data": {"lastHeartbeat": "2026-01-01T00:00:00.000Z"}},
        )
        self.fetch_response: tuple[int, Any] = (200, {"status": "success", "data": {}})
        self.base_url = ""

    async def handle_heartbeat(self, request: web.Request) -> web.Response:
        self.heartbeats.append(
            {"headers": dict(request.headers), "json": await request.json()}
        )
        if self.heartbeat_responses:
            status, body = self.heartbeat_responses.pop(0)
        else:
            status, body = self.heartbeat_default
        return web.json_response(body, status=status)

    async def handle_fetch(self, request: web.Request) -> web.Response:
        self.fetches.append(
            {"ref": request.match_info["ref"], "query": dict(request.query)}
        )
        status, body = self.fetch_response
        return web.json_response(body, status=status)


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch, tmp_path):
    """Each test starts with a Settings singleton built from pure defaults.

    No config.toml, no .env: tests are isolated from any local config.
    """
    safe = make_settings(
        project_root=tmp_path,
        session_dir=tmp_path / "session",
        store_path=tmp_path / "store.json",
    )
    monkeypatch.setattr("kordlink.config._settings", safe)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def dashboard():
    """Start a fake dashboard serving heartbeat and credential-fetch routes."""
    fake = FakeDashboard()
    app = web.Application()
    app.router.add_post("/api/status/heartbeat", fake.handle_heartbeat)
    app.router.add_get("/api/files/fetch/{ref}", fake.handle_fetch)
    server = TestServer(app)
    await server.start_server()
    fake.base_url = f"http://{server.host}:{server.port}"
    yield fake
    await server.close()
