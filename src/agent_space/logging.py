"""
Logging utilities for the agent-space runtime.

Provides a centralized logging configuration for the entire package, plus a
structured ``log_event`` helper for named diagnostic events.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, TextIO

# Package root logger
_root_logger = logging.getLogger("agent_space")
_event_logger = logging.getLogger("agent_space.events")

_EVENT_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging(
    level: str | int = "INFO",
    format: str | None = None,
    stream: TextIO | None = None,
    file: str | None = None,
) -> None:
    """
    Configure logging for the runtime.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL) or int
        format: Custom log format string
        stream: Output stream (defaults to stderr)
        file: Optional file path to write logs

    Example:
        from agent_space.logging import setup_logging

        setup_logging("DEBUG")
        setup_logging("INFO", file="agent-space.log")
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    _root_logger.setLevel(level)
    _root_logger.handlers.clear()

    if format is None:
        format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    formatter = logging.Formatter(format)

    stream_handler = logging.StreamHandler(stream or sys.stderr)
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level)
    _root_logger.addHandler(stream_handler)

    if file:
        file_handler = logging.FileHandler(file)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        _root_logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    """
    Get a child logger for a submodule.

    Args:
        name: Submodule name (e.g., "plugins", "session")

    Returns:
        Logger instance
    """
    if name.startswith("agent_space."):
        return logging.getLogger(name)
    return logging.getLogger(f"agent_space.{name}")


def log_event(level: str, event: str, payload: dict[str, Any] | None = None) -> None:
    """
    Log a named diagnostic event with a JSON payload.

    The payload is also attached to the record as ``event_payload`` so
    handlers can consume it without re-parsing the message.

    Example:
        log_event("info", "plugin.catalog.synced", {"discoveredPlugins": 3})
    """
    levelno = _EVENT_LEVELS.get(level.lower(), logging.INFO)
    if not _event_logger.isEnabledFor(levelno):
        return
    body = payload or {}
    try:
        rendered = json.dumps(body, default=str, sort_keys=True)
    except (TypeError, ValueError):
        rendered = repr(body)
    _event_logger.log(
        levelno,
        "%s %s",
        event,
        rendered,
        extra={"event_name": event, "event_payload": body},
    )


def set_level(level: str | int) -> None:
    """Set the log level for the runtime."""
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    _root_logger.setLevel(level)


def disable() -> None:
    """Disable all logging for the runtime."""
    _root_logger.disabled = True


def enable() -> None:
    """Re-enable logging for the runtime."""
    _root_logger.disabled = False
