"""Logging utilities for authgate.

Modules log through children of the ``authgate`` logger
(``authgate.session``, ``authgate.csrf``, ...). Applications own the
logging setup; :func:`configure_logging` is a convenience for scripts
and examples.
"""

from __future__ import annotations

import logging
import sys

from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from .config import LogSettings


LOGGER_NAME = "authgate"


def get_logger(name: str | None = None) -> logging.Logger:
    """Get the authgate logger or one of its children.

    Parameters
    ----------
    name : str, optional
        Child name, e.g. ``"session"`` for ``authgate.session``.

    Returns
    -------
    logging.Logger
        The requested logger.
    """
    if name:
        return logging.getLogger(f"{LOGGER_NAME}.{name}")
    return logging.getLogger(LOGGER_NAME)


def configure_logging(settings: LogSettings) -> logging.Logger:
    """Attach a stream handler to the authgate logger.

    Only adds a handler if none exists, so calling this repeatedly
    is harmless.

    Parameters
    ----------
    settings : LogSettings
        Level and format to use.

    Returns
    -------
    logging.Logger
        The configured ``authgate`` logger.
    """
    logger = get_logger()
    logger.setLevel(settings.level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(settings.format))
        logger.addHandler(handler)

    return logger


def set_level(level: int | str) -> None:
    """Set the logging level.

    Parameters
    ----------
    level : int or str
        The logging level (e.g., logging.DEBUG, "DEBUG").
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    get_logger().setLevel(level)


# Keys that should be redacted in log output
_SENSITIVE_KEYS = frozenset(
    {
        "secret",
        "password",
        "token",
        "code",
        "state",
        "verifier",
        "credential",
        "authorization",
        "cookie",
    }
)


def redact_sensitive_data(
    data: dict[str, Any] | list[Any] | str | None, max_depth: int = 5
) -> dict[str, Any] | list[Any] | str | None:
    """Mask credentials in a provider payload before it is logged.

    Any mapping key containing one of the sensitive fragments (token,
    secret, code, ...) has its value replaced by ``"[REDACTED]"``,
    at every nesting level up to *max_depth*.

    Parameters
    ----------
    data : dict or list or str or None
        Payload, typically a decoded profile or token response.
    max_depth : int, optional
        Nesting levels to descend before giving up (default: 5).

    Returns
    -------
    dict or list or str or None
        A masked copy; scalars are returned unchanged.
    """
    if max_depth <= 0:
        return "[MAX_DEPTH]"

    if data is None:
        return None

    if isinstance(data, dict):
        result: dict[str, Any] = {}
        for k, v in data.items():
            key_lower = k.lower() if isinstance(k, str) else str(k).lower()
            if any(sensitive in key_lower for sensitive in _SENSITIVE_KEYS):
                result[k] = "[REDACTED]"
            else:
                result[k] = redact_sensitive_data(v, max_depth - 1)
        return result

    if isinstance(data, list):
        return [redact_sensitive_data(item, max_depth - 1) for item in data]

    return data
