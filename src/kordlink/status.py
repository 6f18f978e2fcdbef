"""Process-wide status values read by the HTTP status endpoint."""

from __future__ import annotations

import time

_start_time = time.monotonic()


def process_uptime() -> int:
    """Whole seconds since this module was imported (process start)."""
    return int(time.monotonic() - _start_time)


class MessageCounter:
    """Best-effort count of messages observed; not persisted."""

    def __init__(self) -> None:
        self._value = 0

    @property
    def value(self) -> int:
        return self._value

    def increment(self, n: int = 1) -> int:
        self._value += n
        return self._value
