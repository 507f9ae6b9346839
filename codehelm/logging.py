"""Logging configuration for codehelm."""

import logging
import sys
from typing import Any, Callable

import structlog

from codehelm.config import Config, get_config
from codehelm.exceptions import ConfigurationError

_system_log_sink: Callable[[str], None] | None = None


class _SinkWriter:
    """File-like sink for structlog that forwards lines to a callback."""

    def __init__(self, sink: Callable[[str], None]):
        self._sink = sink
        self._buffer = ""

    def write(self, text: str) -> int:
        self._buffer += text
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            if line:
                self._sink(line)
        return len(text)

    def flush(self) -> None:
        if self._buffer:
            self._sink(self._buffer)
            self._buffer = ""


def set_system_log_sink(sink: Callable[[str], None] | None) -> None:
    """Route log lines to a callback (the REPL prints them dimmed)."""
    global _system_log_sink
    _system_log_sink = sink


def build_processors(fmt: str, colors: bool = True) -> list[Any]:
    """Processor chain ending in the renderer for ``fmt`` ("console" or "json")."""
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if fmt == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=colors))
    elif fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        raise ConfigurationError(f"unknown log format: {fmt}")
    return processors


def configure_logging(config: Config | None = None, level: str | None = None) -> None:
    """Configure structured logging for codehelm.

    Args:
        config: Configuration to read ``logging`` from; defaults to the global config
        level: Optional level override (e.g. "DEBUG" for --verbose)
    """
    config = config or get_config()
    level_name = (level or config.logging.level).upper()
    log_level = logging.getLevelNamesMapping().get(level_name, logging.INFO)
    sink = _system_log_sink

    structlog.configure(
        # Colour codes would end up verbatim in the REPL's dimmed lines.
        processors=build_processors(config.logging.format, colors=sink is None),
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=_SinkWriter(sink) if sink else sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
