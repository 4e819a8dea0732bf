"""Logging setup for applications embedding the realtime client.

The library only emits structlog events. Rendering is decided by the
application; the CLI calls setup_logging() before connecting.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog

LOG_LEVEL_ENV = "INSFORGE_LOG_LEVEL"
LOG_FORMAT_ENV = "INSFORGE_LOG_FORMAT"

# Loggers of the transport libraries; their INFO output repeats our own events
NOISY_LOGGERS = ("socketio.client", "engineio.client", "httpx", "httpcore")


def setup_logging(
    level: str | None = None,
    log_format: str | None = None,
) -> None:
    """Configure structlog on top of the standard logging module.

    Args:
        level: DEBUG, INFO, WARNING or ERROR. Falls back to $INSFORGE_LOG_LEVEL, then INFO.
        log_format: 'console' or 'json'. Falls back to $INSFORGE_LOG_FORMAT, then console.
    """
    level_name = (level or os.environ.get(LOG_LEVEL_ENV) or "INFO").upper()
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.INFO
    fmt = (log_format or os.environ.get(LOG_FORMAT_ENV) or "console").lower()

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level)
    quiet_transport_loggers(log_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            *_render_chain(fmt),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def quiet_transport_loggers(level: int) -> None:
    """Raise the Socket.IO and HTTP library loggers to WARNING unless debugging."""
    threshold = level if level <= logging.DEBUG else max(level, logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(threshold)


def _render_chain(log_format: str) -> list[Any]:
    if log_format == "json":
        return [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    return [
        structlog.dev.ConsoleRenderer(
            colors=sys.stderr.isatty(),
            exception_formatter=structlog.dev.plain_traceback,
        )
    ]


class LogContext:
    """Bind key/value pairs to every log event emitted inside a block.

    Nested contexts restore the outer values on exit:

        with LogContext(channel="todos"):
            with LogContext(channel="chat"):
                ...  # channel="chat"
            ...  # channel="todos" again
    """

    def __init__(self, **kwargs: Any) -> None:
        self._context = kwargs
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)
        self._tokens = {}
