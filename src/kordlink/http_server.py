"""Embedded HTTP server exposing the message counter and a health check."""

from __future__ import annotations

from typing import Protocol

from aiohttp import web

from kordlink.logger import logger
from kordlink.status import process_uptime


class StatusDeps(Protocol):
    """Read-only views supplied by the app."""

    def message_total(self) -> int: ...

    def connection_state(self) -> str: ...

    def heartbeat_phase(self) -> str: ...


deps_key: web.AppKey[StatusDeps] = web.AppKey("deps", StatusDeps)


async def _handle_messages_total(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    return web.json_response({"messageTotal": deps.message_total()})


async def _handle_health(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    return web.json_response(
        {
            "status": "ok",
            "uptime_seconds": process_uptime(),
            "connection": deps.connection_state(),
            "heartbeat": deps.heartbeat_phase(),
        }
    )


def create_app(deps: StatusDeps) -> web.Application:
    app = web.Application()
    app[deps_key] = deps
    app.router.add_get("/messagestotal", _handle_messages_total)
    app.router.add_get("/health", _handle_health)
    return app


async def start_http_server(deps: StatusDeps, host: str, port: int) -> web.AppRunner:
    """Create, start, and return the HTTP server runner."""
    runner = web.AppRunner(create_app(deps))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("HTTP server listening", host=host, port=port)
    return runner
