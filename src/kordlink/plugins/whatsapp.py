"""kordlink WhatsApp transport plugin (neonize)."""

from __future__ import annotations

from typing import Any

from kordlink.plugin import hookimpl
from kordlink.transport.neonize_transport import NeonizeTransportFactory


class WhatsAppTransportPlugin:
    @hookimpl
    def kordlink_transport_factory(self, settings: Any) -> NeonizeTransportFactory:
        return NeonizeTransportFactory()
