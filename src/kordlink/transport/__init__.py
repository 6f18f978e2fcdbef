"""Transport contract, signal-key storage and the built-in neonize adapter."""

from kordlink.transport.base import MessageLookup, SocketOptions, Transport, TransportFactory
from kordlink.transport.keys import CachedKeyStore, FileKeyStore, RetryCounterCache

__all__ = [
    "CachedKeyStore",
    "FileKeyStore",
    "MessageLookup",
    "RetryCounterCache",
    "SocketOptions",
    "Transport",
    "TransportFactory",
]
