"""Pluggy hook specifications for kordlink plugins.

Command dispatch, anti-delete, chatbot and anti-link features live in
plugins; the supervisor only calls these hooks at the right points of the
connection lifecycle.  Implementations may be plain functions or
coroutines: the supervisor awaits whatever is awaitable.
"""

from __future__ import annotations

from typing import Any

import pluggy

hookspec = pluggy.HookspecMarker("kordlink")


class KordlinkSpec:
    """Hook specifications for kordlink plugins."""

    @hookspec
    def kordlink_load_commands(self) -> Any:
        """Load the command registry. Called once at startup."""

    @hookspec
    def kordlink_socket_ready(self, sock: Any, store: Any) -> Any:
        """A new socket exists and its event stream is bound to the store.

        Called once per connection lifetime, before ``connect()``.  The
        socket is lent for this lifetime only; do not keep it across
        reconnects.
        """

    @hookspec
    def kordlink_connection_open(self, sock: Any) -> Any:
        """The connection reached ``open``. Initialize connection-bound modules."""

    @hookspec
    def kordlink_message(self, sock: Any, message: Any) -> Any:
        """An inbound message arrived (``WAMessage``)."""

    @hookspec
    def kordlink_message_deleted(self, sock: Any, update: Any, store: Any) -> Any:
        """A message was revoked. ``update`` is the ``MessageUpdate``; the
        original body can usually still be read from ``store``."""

    @hookspec(firstresult=True)
    def kordlink_transport_factory(self, settings: Any) -> Any | None:
        """Provide the transport factory. First non-None result wins."""
