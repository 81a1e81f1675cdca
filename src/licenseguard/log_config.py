"""Logging setup with redaction of license material.

Installs a filter that masks license keys, bearer tokens and JWTs in log
output, a stderr handler, and optionally a rotating file handler.
"""

from __future__ import annotations

import logging
import os
import re
from logging.handlers import RotatingFileHandler
from typing import Optional

_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

_REDACTED = "***REDACTED***"

# (pattern, replacement) pairs applied in order.
_SCRUB_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r'((?:license_)?key["\x27]?\s*[:=]\s*["\x27]?)([^"\x27\s,}{\]]+)', re.IGNORECASE),
     r"\1" + _REDACTED),
    (re.compile(r'((?:bearer_)?token["\x27]?\s*[:=]\s*["\x27]?)([^"\x27\s,}{\]]+)', re.IGNORECASE),
     r"\1" + _REDACTED),
    (re.compile(r"(Authorization:\s*Bearer\s+)(\S+)", re.IGNORECASE),
     r"\1" + _REDACTED),
    # Encoded JWTs: header.payload.signature, header always starts with "eyJ".
    (re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"),
     _REDACTED),
    # OpenSSL salted ciphertext ("Salted__" base64 encodes to "U2FsdGVkX1").
    (re.compile(r"U2FsdGVkX1[A-Za-z0-9+/=]+"),
     _REDACTED),
]


def _scrub(text: str) -> str:
    for pattern, replacement in _SCRUB_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _scrub_arg(value: object) -> object:
    # Exceptions are logged as %s arguments and may quote the offending key.
    if isinstance(value, BaseException):
        return _scrub(str(value))
    if isinstance(value, str):
        return _scrub(value)
    return value


class ScrubFilter(logging.Filter):
    """Redacts license keys, service account tokens and JWTs from records.

    Scrubs the format string and every string or exception argument.
    Always returns True; records are rewritten, never dropped.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str) and record.msg:
            record.msg = _scrub(record.msg)
        args = record.args
        if isinstance(args, dict):
            record.args = {name: _scrub_arg(value) for name, value in args.items()}
        elif isinstance(args, tuple) and args:
            record.args = tuple(_scrub_arg(value) for value in args)
        return True


def configure_logging(
    level: Optional[str] = None,
    *,
    log_dir: Optional[str] = None,
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
) -> None:
    """Configure the root logger.

    :param level: Log level name.  Reads ``LICENSEGUARD_LOG_LEVEL``, then
        falls back to ``"INFO"``.
    :param log_dir: If given (or ``LICENSEGUARD_LOG_DIR`` is set), also log
        to a rotating ``licenseguard.log`` in that directory.
    """
    level = level or os.environ.get("LICENSEGUARD_LOG_LEVEL", "INFO")
    log_dir = log_dir or os.environ.get("LICENSEGUARD_LOG_DIR")
    log_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(_FORMAT, datefmt=_DATEFMT)
    scrub_filter = ScrubFilter()

    root = logging.getLogger()
    root.setLevel(log_level)

    if not any(type(h) is logging.StreamHandler for h in root.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)

    if log_dir and not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "licenseguard.log"),
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # Install scrub filter on all handlers.
    for handler in root.handlers:
        if not any(isinstance(f, ScrubFilter) for f in handler.filters):
            handler.addFilter(scrub_filter)
