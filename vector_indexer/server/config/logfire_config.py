"""Logging configuration for the vector indexer.

Standard library loggers are used throughout the package with event-style
messages and structured ``extra`` context. When ``LOGFIRE_TOKEN`` is set the
records are also shipped to Logfire through its logging handler.

Usage:
    >>> from vector_indexer.server.config.logfire_config import get_logger, logfire
    >>> logger = get_logger(__name__)
    >>> logger.info("entity_processed", extra={"entity_id": "42"})
"""

import logging
import os
from typing import Optional

import logfire

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# VECTOR_LOG_LEVEL values mapped onto stdlib levels
LOG_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}

_configured = False


def resolve_log_level(level: Optional[str]) -> int:
    """Translate a configured verbosity name into a logging level."""
    if not level:
        return logging.INFO
    return LOG_LEVELS.get(level.lower(), logging.INFO)


def setup_logging(level: Optional[str] = None, service_name: str = "vector-indexer") -> None:
    """Configure root logging and, if a token is present, Logfire.

    Safe to call more than once; only the first call installs handlers.

    Args:
        level: One of debug/info/warn/error/fatal (defaults to VECTOR_LOG_LEVEL)
        service_name: Service name reported to Logfire
    """
    global _configured

    log_level = resolve_log_level(level or os.getenv("VECTOR_LOG_LEVEL"))
    root = logging.getLogger()
    root.setLevel(log_level)

    if _configured:
        return

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if os.getenv("LOGFIRE_TOKEN"):
        logfire.configure(
            service_name=service_name,
            send_to_logfire="if-token-present",
            console=False,
        )
        handlers.append(logfire.LogfireLoggingHandler())

    for handler in handlers:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)

    _configured = True
    logging.getLogger(__name__).info(
        "logging_configured",
        extra={"level": logging.getLevelName(log_level), "logfire": len(handlers) > 1},
    )


def get_logger(name: str) -> logging.Logger:
    """Return a module logger."""
    return logging.getLogger(name)


__all__ = ["get_logger", "logfire", "setup_logging", "resolve_log_level", "LOG_LEVELS"]
