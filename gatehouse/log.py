"""Logging for Gatehouse.

Modules log through child loggers of ``gatehouse`` (``gatehouse.auth``,
``gatehouse.session``, ...). Login flows move secrets through URLs,
token responses, and cookies, so the package handler redacts them
before anything is written. Nothing here raises, except ``set_level``
on an unknown level name.
"""

from __future__ import annotations

import logging
import sys

from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


REDACTED = "[REDACTED]"

# Substrings of keys and query parameters whose values never reach log output
_SENSITIVE_KEYS = frozenset(
    {
        "secret",
        "password",
        "token",
        "code",
        "verifier",
        "nonce",
        "state",
        "cookie",
        "authorization",
        "credential",
    }
)


def _is_sensitive(key: Any) -> bool:
    name = key.lower() if isinstance(key, str) else str(key).lower()
    return any(sensitive in name for sensitive in _SENSITIVE_KEYS)


def redact_sensitive_data(
    data: dict[str, Any] | list[Any] | str | None, max_depth: int = 5
) -> dict[str, Any] | list[Any] | str | None:
    """Redact sensitive values from data for safe logging.

    Recursively traverses dicts/lists and replaces values for keys
    such as ``client_secret``, ``access_token`` or ``code_verifier``
    with ``"[REDACTED]"``.

    Parameters
    ----------
    data : dict or list or str or None
        The data to redact.
    max_depth : int, optional
        Maximum recursion depth (default: 5).

    Returns
    -------
    dict or list or str or None
        A copy of the data with sensitive values redacted.
    """
    if max_depth <= 0:
        return "[MAX_DEPTH]"
    if isinstance(data, dict):
        return {
            k: REDACTED if _is_sensitive(k) else redact_sensitive_data(v, max_depth - 1)
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [redact_sensitive_data(item, max_depth - 1) for item in data]
    return data


def redact_url(url: str) -> str:
    """Mask sensitive query parameters of ``url``.

    Authorization redirects and callbacks carry ``state``, ``code``,
    ``code_challenge`` and ``nonce`` in the query string.

    Examples
    --------
    >>> redact_url("https://app.example.com/auth/callback/github?code=abc&scope=user")
    'https://app.example.com/auth/callback/github?code=%5BREDACTED%5D&scope=user'
    """
    parts = urlsplit(url)
    if not parts.query:
        return url
    query = [
        (name, REDACTED if _is_sensitive(name) else value)
        for name, value in parse_qsl(parts.query, keep_blank_values=True)
    ]
    return urlunsplit(parts._replace(query=urlencode(query)))


class RedactingFilter(logging.Filter):
    """Redact mapping and list arguments of every record it sees.

    Installed on the package handler, so third-party handlers attached
    by the application are left alone.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        args = record.args
        if isinstance(args, dict):
            record.args = redact_sensitive_data(args)
        elif isinstance(args, tuple):
            record.args = tuple(
                redact_sensitive_data(arg) if isinstance(arg, (dict, list)) else arg
                for arg in args
            )
        return True


@lru_cache(maxsize=1)
def get_logger() -> logging.Logger:
    """Get the ``gatehouse`` package logger.

    The first call attaches a stderr handler with a ``RedactingFilter``
    unless the application already configured one.

    Returns
    -------
    logging.Logger
        The package logger.
    """
    logger = logging.getLogger("gatehouse")
    if logger.level == logging.NOTSET:
        logger.setLevel(logging.WARNING)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(name)s - %(levelname)s - %(message)s"))
        handler.addFilter(RedactingFilter())
        logger.addHandler(handler)
    return logger


def set_level(level: int | str) -> None:
    """Set the package log level.

    Parameters
    ----------
    level : int or str
        A ``logging`` level or its name (``"DEBUG"``, ``"info"``, ...).

    Raises
    ------
    ValueError
        If ``level`` names no logging level.
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            msg = f"Unknown log level: {level!r}"
            raise ValueError(msg)
        level = resolved
    get_logger().setLevel(level)


def enable_debug() -> None:
    """Log flow transitions, check cookies, and token handling."""
    set_level(logging.DEBUG)
