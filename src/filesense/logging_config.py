"""structlog configuration for filesense.

Library modules only ever call :func:`get_logger`; the CLI entry point
calls :func:`configure_logging` once at startup.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TextIO

import structlog


def configure_logging(
    debug: bool = False,
    log_file: Path | None = None,
) -> None:
    """Configure structlog for the process.

    Args:
        debug: Log at DEBUG instead of INFO.
        log_file: Append plain key/value lines to this file instead of
            rendering to stderr.
    """
    level = logging.DEBUG if debug else logging.INFO
    processors: list[structlog.typing.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    stream: TextIO
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        stream = log_file.open("a", encoding="utf-8")
        processors.append(structlog.processors.KeyValueRenderer())
    else:
        stream = sys.stderr
        processors.append(
            structlog.dev.ConsoleRenderer(colors=stream.isatty())
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=stream),
    )


def get_logger(
    name: str | None = None,
) -> structlog.typing.FilteringBoundLogger:
    return structlog.get_logger(name)
