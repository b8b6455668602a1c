"""Logging configuration using loguru.

Intercepts stdlib logging so that httpx and anyio records flow through loguru
with the same format.  Every record passes through a patcher that replaces
registered secrets (path keys, the auth token) with a short hash prefix, so
a key never reaches a sink even when it is interpolated by mistake.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

from loguru import logger

from quietsync.sync_engine.cipher import sha256_hex

if TYPE_CHECKING:
    from loguru import Record

    from quietsync.sync_engine.settings import QuietSyncSettings

_TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


class _SecretRedactor:
    """loguru patcher that masks registered secret values in messages."""

    def __init__(self) -> None:
        self._replacements: dict[str, str] = {}

    def register(self, secret: str, label: str = "key") -> None:
        if secret:
            self._replacements[secret] = f"<{label}:{sha256_hex(secret)[:12]}>"

    def __call__(self, record: Record) -> None:
        message = record["message"]
        for secret, replacement in self._replacements.items():
            if secret in message:
                message = message.replace(secret, replacement)
        record["message"] = message


_redactor = _SecretRedactor()


def redact_secret(secret: str, label: str = "key") -> None:
    """Mask *secret* in every later log record as ``<label:hash-prefix>``."""
    _redactor.register(secret, label)


class _InterceptHandler(logging.Handler):
    """Bridge stdlib logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Report the stdlib caller, not this handler.
        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(settings: QuietSyncSettings) -> None:
    """Configure loguru from *settings* as the sole logging sink.

    Logs go to stderr; command output on stdout stays clean.  The configured
    path key and auth token are registered for redaction here; keys generated
    later are registered by the engine.
    """
    level = settings.log_level.upper()
    if settings.path_key is not None:
        redact_secret(settings.path_key.get_secret_value())
    if settings.auth_token is not None:
        redact_secret(settings.auth_token.get_secret_value(), label="token")

    logger.remove()
    logger.configure(patcher=_redactor)
    if settings.log_format == "json":
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=_TEXT_FORMAT)

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug("Logging initialised (level={}, format={})", level, settings.log_format)
