"""structlog setup plus request-scoped context binding.

Every module logs through ``structlog.get_logger(__name__)``; this module
decides where those events go (stderr, optionally a file) and how they are
rendered (coloured console lines or JSON objects).
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Third-party loggers that are noisy below WARNING.
_QUIET_LOGGERS = ("LiteLLM", "httpx", "httpcore")


def generate_session_id() -> str:
    """Return a fresh id correlating the usage records of one user session."""
    return str(uuid.uuid4())


def _renderer(fmt: str) -> structlog.types.Processor:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def _handlers(log_file: str | Path | None) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(str(log_file), encoding="utf-8"))
    return handlers


def configure_logging(
    level: str = "INFO",
    fmt: str = "console",
    log_file: str | Path | None = None,
    session_id: str | None = None,
) -> None:
    """Route structlog through stdlib logging.

    Calling this again replaces the previous handlers, so the CLI and the
    API server can each configure logging from their own settings.

    Args:
        level: Level name, case-insensitive.
        fmt: ``"console"`` or ``"json"``.
        log_file: Also append events to this file.
        session_id: Bound to every subsequent event when given.

    Raises:
        ValueError: If ``level`` is not a standard level name.
    """
    name = level.upper()
    if name not in LEVELS:
        msg = f"Invalid log level: {level!r} (expected one of {', '.join(LEVELS)})"
        raise ValueError(msg)
    numeric = logging.getLevelName(name)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _renderer(fmt),
        ],
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(numeric)
    for handler in _handlers(log_file):
        handler.setLevel(numeric)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for noisy in _QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(max(numeric, logging.WARNING))

    if session_id:
        structlog.contextvars.bind_contextvars(session_id=session_id)


@contextmanager
def request_logging_context(
    endpoint: str, **extra: Any
) -> Iterator[structlog.stdlib.BoundLogger]:
    """Bind ``endpoint`` and ``extra`` to every event logged inside the block.

    Lower layers (providers, fetcher, LLM client) pick the binding up through
    structlog's contextvars, so their events carry the originating endpoint.
    The bindings are removed on exit even when the block raises.

    Example::

        with request_logging_context("/api/analyze", source_id=source.id):
            result = await pipeline.analyze(source, ...)
    """
    structlog.contextvars.bind_contextvars(endpoint=endpoint, **extra)
    log: structlog.stdlib.BoundLogger = structlog.get_logger("angle_finder.request")
    log.debug("request_start")
    try:
        yield log
    finally:
        log.debug("request_end")
        structlog.contextvars.unbind_contextvars("endpoint", *extra)
