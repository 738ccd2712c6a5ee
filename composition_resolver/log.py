"""Structured logging helpers.

Verbosity and indentation are carried by an explicit ``LogConfig`` value that
callers thread through each step instead of reading process-wide state.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, replace

import structlog

logger = structlog.get_logger(__name__)

INDENT_TOKEN = "│"


@dataclass(frozen=True)
class LogConfig:
    verbose: bool = False
    indent: bool = False
    tag: str | None = None

    def with_tag(self, tag: str) -> "LogConfig":
        return replace(self, tag=tag)


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog the same way for the CLI and embedding programs."""
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        # stdout is reserved for command output.
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def _format(cfg: LogConfig, message: str) -> str:
    parts = []
    if cfg.indent:
        parts.append(INDENT_TOKEN)
    if cfg.tag:
        parts.append(f"[{cfg.tag}]")
    parts.append(message)
    return " ".join(parts)


def verbose_advanced(cfg: LogConfig, message: str, **fields) -> None:
    """Log a message that is only interesting when the caller asked for verbosity.

    ``verbose=True`` promotes the line to ``info``; otherwise it stays at
    ``debug`` and is filtered out by the default configuration.
    """
    text = _format(cfg, message)
    if cfg.verbose:
        logger.info(text, **fields)
    else:
        logger.debug(text, **fields)
