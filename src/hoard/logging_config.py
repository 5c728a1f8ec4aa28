"""Structured logging configuration using structlog.

Command output goes to stdout; every log line, including stage progress from
``hoard.progress``, goes to stderr.
"""

import logging
import sys
from typing import TextIO

import structlog

_NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "aiosqlite")


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]


def configure_logging(log_level: str = "info", json_output: bool = False, stream: TextIO | None = None) -> None:
    """Route stdlib and structlog records through one stderr handler.

    Args:
        log_level: Logging level string (debug/info/warning/error).
        json_output: One JSON object per line instead of console rendering.
        stream: Destination, stderr by default.
    """
    stream = stream or sys.stderr
    level = getattr(logging, log_level.upper(), logging.INFO)
    shared = _shared_processors()

    if json_output:
        renderer = structlog.processors.JSONRenderer()
        shared.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=stream.isatty())

    structlog.configure(
        processors=shared + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=shared,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Library chatter only shows up in debug mode.
    library_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)


def bind_operation_context(command: str, profile: str | None = None) -> None:
    """Attach the running command (and profile) to every log line."""
    ctx = {"command": command}
    if profile:
        ctx["profile"] = profile
    structlog.contextvars.bind_contextvars(**ctx)


def clear_operation_context() -> None:
    structlog.contextvars.clear_contextvars()
