# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Logging configuration with credential redaction.

The library itself never installs handlers; it only logs through
module-level loggers.  Applications call ``configure_logging`` once.

Credential sources register every access key, secret key and session
token they hand out with ``SecretFilter``, so a secret that slips into a
log message (for example inside an exception string) is replaced with
``[REDACTED]``.

Usage:
    # In applications
    from stowage.logging import configure_logging
    configure_logging(level=logging.INFO)

    # In library modules
    import logging
    logger = logging.getLogger(__name__)
    logger.info("Uploading part %d of %s", number, key)
"""

import logging
import re
from collections.abc import Iterable, Mapping
from typing import ClassVar


_SIGNATURE_RE = re.compile(r"(Signature=)[0-9a-f]+")


class SecretFilter(logging.Filter):
    """Logging filter that redacts registered secrets from log output.

    Secrets are held in a class-level registry so that every handler
    carrying the filter sees secrets registered after it was created.

    Example:
        filter = SecretFilter()
        filter.register_secret("wJalrXUtnFEMI/K7MDENG")
        logger.addFilter(filter)
        logger.info("secret=%s", "wJalrXUtnFEMI/K7MDENG")
        # Output: "secret=[REDACTED]"
    """

    _secrets: ClassVar[set[str]] = set()
    _pattern: ClassVar[re.Pattern[str] | None] = None

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact registered secrets in the record message and arguments.

        Args:
            record: The log record to filter.

        Returns:
            Always True (records are modified, never suppressed).
        """
        if self._pattern is not None:
            record.msg = self._pattern.sub("[REDACTED]", str(record.msg))
            if record.args:
                record.args = tuple(
                    self._pattern.sub("[REDACTED]", str(arg))
                    if isinstance(arg, str)
                    else arg
                    for arg in record.args
                )
        return True

    @classmethod
    def register_secret(cls, secret: str | None) -> None:
        """Register a secret to be redacted from all log output.

        Args:
            secret: The secret string.  Empty and None values are ignored.
        """
        if secret and secret not in cls._secrets:
            cls._secrets.add(secret)
            cls._rebuild_pattern()

    @classmethod
    def register_secrets(cls, secrets: Iterable[str | None]) -> None:
        """Register several secrets at once."""
        for secret in secrets:
            cls.register_secret(secret)

    @classmethod
    def unregister_secrets(cls, secrets: Iterable[str | None]) -> None:
        """Stop redacting secrets that are no longer in use."""
        removed = False
        for secret in secrets:
            if secret and secret in cls._secrets:
                cls._secrets.discard(secret)
                removed = True
        if removed:
            cls._rebuild_pattern()

    @classmethod
    def clear_secrets(cls) -> None:
        """Clear all registered secrets. Primarily for testing."""
        cls._secrets.clear()
        cls._pattern = None

    @classmethod
    def _rebuild_pattern(cls) -> None:
        if cls._secrets:
            # Longest first so a secret containing another is fully masked
            ordered = sorted(cls._secrets, key=len, reverse=True)
            escaped = [re.escape(s) for s in ordered]
            cls._pattern = re.compile("|".join(escaped))
        else:
            cls._pattern = None


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Return a copy of request headers that is safe to log.

    The ``Authorization`` signature and the session token are masked; the
    credential scope stays visible because it is useful for debugging
    signature mismatches.
    """
    safe: dict[str, str] = {}
    for name, value in headers.items():
        lower = name.lower()
        if lower == "authorization":
            value = _SIGNATURE_RE.sub(r"\1[REDACTED]", value)
        elif lower == "x-amz-security-token":
            value = "[REDACTED]"
        safe[name] = value
    return safe


def configure_logging(
    level: int = logging.INFO,
    format_string: str | None = None,
    add_secret_filter: bool = True,
) -> None:
    """Configure the root logger for an application using the client.

    Args:
        level: The logging level (e.g., logging.INFO, logging.DEBUG).
        format_string: Custom format string. If None, uses default format.
        add_secret_filter: Whether to add the SecretFilter to redact secrets.
    """
    if format_string is None:
        format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(format_string))

    if add_secret_filter:
        handler.addFilter(SecretFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for existing_handler in root_logger.handlers[:]:
        root_logger.removeHandler(existing_handler)

    root_logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a module.

    Args:
        name: The logger name, typically __name__.

    Returns:
        A logger instance.
    """
    return logging.getLogger(name)
