"""kordlink: keeps the Kord bot's WhatsApp session connected, persisted and monitored."""

__version__ = "0.1.0"
