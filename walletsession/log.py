"""Logging utilities for walletsession.

Modules log through ``logging.getLogger("walletsession.<area>")``; this
module owns the package root logger and the redaction helper used before
request or response payloads reach a log line.
"""

from __future__ import annotations

import logging
import sys

from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from .config import LogSettings


ROOT_LOGGER_NAME = "walletsession"


class _LoggerHolder:
    """Holder for the package root logger."""

    instance: logging.Logger | None = None


def get_logger() -> logging.Logger:
    """Get the walletsession root logger.

    Returns
    -------
    logging.Logger
        The package logger, with a stderr handler attached once.
    """
    if _LoggerHolder.instance is None:
        logger = logging.getLogger(ROOT_LOGGER_NAME)
        logger.setLevel(logging.WARNING)

        if not logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setLevel(logging.DEBUG)
            handler.setFormatter(logging.Formatter("%(name)s - %(levelname)s - %(message)s"))
            logger.addHandler(handler)

        _LoggerHolder.instance = logger

    return _LoggerHolder.instance


def set_level(level: int | str) -> None:
    """Set the package logging level.

    Parameters
    ----------
    level : int or str
        The logging level (e.g., logging.DEBUG, "DEBUG").
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    get_logger().setLevel(level)


def enable_debug() -> None:
    """Log every provider call, backend request and session transition."""
    set_level(logging.DEBUG)


def configure_from_settings(settings: LogSettings) -> logging.Logger:
    """Apply level and format from the ``log`` settings section.

    Parameters
    ----------
    settings : LogSettings
        The logging configuration.

    Returns
    -------
    logging.Logger
        The configured root logger.
    """
    logger = get_logger()
    logger.setLevel(getattr(logging, settings.level))
    for handler in logger.handlers:
        handler.setFormatter(logging.Formatter(settings.format))
    return logger


# Key fragments whose values never reach a log line
_SENSITIVE_KEYS = frozenset(
    {
        "secret",
        "password",
        "token",
        "credential",
        "signature",
        "authorization",
        "cookie",
        "code",
        "verifier",
    }
)


def redact_sensitive_data(
    data: dict[str, Any] | list[Any] | str | None, max_depth: int = 5
) -> dict[str, Any] | list[Any] | str | None:
    """Redact sensitive values from data for safe logging.

    Parameters
    ----------
    data : dict or list or str or None
        The data to redact.
    max_depth : int, optional
        Maximum recursion depth (default: 5).

    Returns
    -------
    dict or list or str or None
        A copy of the data with sensitive values replaced by ``"[REDACTED]"``.
    """
    if max_depth <= 0:
        return "[MAX_DEPTH]"

    if isinstance(data, dict):
        result: dict[str, Any] = {}
        for key, value in data.items():
            key_lower = str(key).lower()
            if any(fragment in key_lower for fragment in _SENSITIVE_KEYS):
                result[key] = "[REDACTED]"
            else:
                result[key] = redact_sensitive_data(value, max_depth - 1)
        return result

    if isinstance(data, list):
        return [redact_sensitive_data(item, max_depth - 1) for item in data]

    return data
