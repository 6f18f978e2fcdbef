"""Process-wide structlog logger for kordlink.

The level comes from ``LOG_LEVEL`` at import time, before Settings exist,
so a bad config file can still be reported. ``set_level()`` applies the
``[logging].level`` setting once Settings have loaded.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog


def _resolve_level(level_name: str) -> int:
    level = getattr(logging, level_name.upper(), None)
    return level if isinstance(level, int) else logging.INFO


def _processors(colors: bool) -> list[structlog.types.Processor]:
    return [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.dev.ConsoleRenderer(colors=colors),
    ]


def _configure(level: int) -> structlog.stdlib.BoundLogger:
    # filter_by_level reads the stdlib root level, so set that up first.
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)
    structlog.configure(
        processors=_processors(colors=sys.stderr.isatty()),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("kordlink")


logger = _configure(_resolve_level(os.environ.get("LOG_LEVEL", "INFO")))


def set_level(level_name: str) -> None:
    logging.getLogger().setLevel(_resolve_level(level_name))


def _log_uncaught(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Unhandled exception, exiting", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _log_uncaught
