"""Structured logging configuration."""

import logging
import sys
from typing import Any

import structlog


class StderrLogger:
    """Print rendered events to whatever ``sys.stderr`` is at call time.

    Cached loggers outlive stream swaps (test capture, daemon redirects), so
    the stream is never bound at construction.
    """

    def msg(self, message: str) -> None:
        print(message, file=sys.stderr, flush=True)

    log = debug = info = warn = warning = error = critical = exception = fatal = msg


def _stderr_logger_factory(*args: Any) -> StderrLogger:
    return StderrLogger()


def configure_logging(*, json_output: bool = False, level: int = logging.INFO) -> None:
    """Configure structlog for the dedup workers and CLI.

    Args:
        json_output: If True, one JSON object per line (for queue workers).
            Otherwise, console output, coloured when stderr is a terminal.
        level: Minimum level emitted (default: INFO).
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=_stderr_logger_factory,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
