"""Logging configuration with secret redaction.

Every module logs through ``logging.getLogger(__name__)`` under the
``loopauth`` namespace. :func:`configure_logging` attaches a single stderr
handler to that namespace and a :class:`RedactingFilter` that masks token
material before any record is emitted, so a stray ``logger.debug("%s",
response_body)`` can never leak a refresh token into a terminal or CI log.
"""

from __future__ import annotations

import logging
import os
import re
import sys

LOGGER_NAME = "loopauth"
ENV_DEBUG = "LOOPAUTH_DEBUG"

REDACTED = "[REDACTED]"

SENSITIVE_KEYS: tuple[str, ...] = (
    "access_token",
    "refresh_token",
    "id_token",
    "client_secret",
    "code_verifier",
    "token",
    "code",
)

_KEYS = "|".join(re.escape(k) for k in SENSITIVE_KEYS)

# "key": "value" (JSON and repr) and key=value (query strings, form bodies).
_QUOTED_RE = re.compile(rf"""(["'](?:{_KEYS})["']\s*:\s*)(["'])(.*?)\2""")
_ASSIGN_RE = re.compile(rf"""(\b(?:{_KEYS})=)([^&\s"',]+)""")


def redact(text: str) -> str:
    """Mask the values of sensitive keys in *text*."""
    text = _QUOTED_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}{m.group(2)}", text)
    return _ASSIGN_RE.sub(lambda m: f"{m.group(1)}{REDACTED}", text)


class RedactingFilter(logging.Filter):
    """Logging filter that masks token values in the rendered message."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


def _debug_from_env() -> bool:
    return os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes")


def configure_logging(verbose: bool = False) -> logging.Logger:
    """Configure and return the ``loopauth`` logger.

    Level is DEBUG with ``--verbose`` or ``LOOPAUTH_DEBUG=1``, WARNING
    otherwise. Calling this more than once replaces the previous handler.
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, "_loopauth", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] [%(name)s] %(message)s"))
    handler.addFilter(RedactingFilter())
    handler._loopauth = True  # type: ignore[attr-defined]
    logger.addHandler(handler)

    logger.setLevel(logging.DEBUG if verbose or _debug_from_env() else logging.WARNING)
    return logger
