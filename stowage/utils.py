# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Validation, hashing and time helpers shared across the client."""

from __future__ import annotations

import base64
import hashlib
import re
import zlib
from datetime import UTC, datetime
from email.utils import format_datetime, parsedate_to_datetime

from stowage.errors import ValidationError


#: SHA-256 of the empty payload.
EMPTY_SHA256 = hashlib.sha256(b"").hexdigest()

_IPV4_RE = re.compile(
    r"^((25[0-5]|2[0-4][0-9]|1[0-9][0-9]|[1-9][0-9]|[0-9])\.){3}"
    r"(25[0-5]|2[0-4][0-9]|1[0-9][0-9]|[1-9][0-9]|[0-9])$"
)
_BUCKET_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.\-_:]{1,61}[A-Za-z0-9]$")
_BUCKET_STRICT_RE = re.compile(r"^[a-z0-9][a-z0-9.\-]{1,61}[a-z0-9]$")

#: Longest object key the service accepts, in UTF-8 bytes.
MAX_OBJECT_NAME_BYTES = 1024

_PLAIN_MD5_ETAG_RE = re.compile(r"^[0-9a-fA-F]{32}$")


def utc_now() -> datetime:
    """Current UTC time."""
    return datetime.now(UTC)


def to_amz_date(value: datetime) -> str:
    """Format a time as ``YYYYMMDDTHHMMSSZ`` (second precision)."""
    return value.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")


def to_signer_date(value: datetime) -> str:
    """Format a time as ``YYYYMMDD`` for the credential scope."""
    return value.astimezone(UTC).strftime("%Y%m%d")


def from_amz_date(value: str) -> datetime:
    """Parse a ``YYYYMMDDTHHMMSSZ`` timestamp."""
    return datetime.strptime(value, "%Y%m%dT%H%M%SZ").replace(tzinfo=UTC)


def to_http_date(value: datetime) -> str:
    """Format a time as an RFC 7231 HTTP date."""
    return format_datetime(value.astimezone(UTC), usegmt=True)


def from_http_date(value: str) -> datetime:
    """Parse an RFC 7231 HTTP date (e.g. ``Last-Modified``)."""
    return parsedate_to_datetime(value).astimezone(UTC)


def from_iso8601(value: str) -> datetime:
    """Parse the ISO-8601 timestamps used in XML listings."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value).astimezone(UTC)


def sha256_hex(data: bytes) -> str:
    """Hex-encoded SHA-256 of ``data``."""
    return hashlib.sha256(data).hexdigest()


def md5_base64(data: bytes) -> str:
    """Base64-encoded MD5 of ``data`` (``Content-MD5`` header value)."""
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")


def crc32_base64(value: int) -> str:
    """Encode a CRC32 as the big-endian base64 form S3 uses."""
    return base64.b64encode(value.to_bytes(4, "big")).decode("ascii")


def crc32_of(data: bytes, value: int = 0) -> int:
    """Running CRC32 over ``data``."""
    return zlib.crc32(data, value)


def trim_quotes(value: str) -> str:
    """Strip one pair of surrounding double quotes (ETag values)."""
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return value[1:-1]
    return value


def is_plain_md5_etag(etag: str) -> bool:
    """True if the ETag is the MD5 of the content (not multipart)."""
    return bool(_PLAIN_MD5_ETAG_RE.match(trim_quotes(etag)))


def check_bucket_name(name: str, *, strict: bool = True) -> None:
    """Validate a bucket name.

    Args:
        name: Bucket name.
        strict: Require the lower-case DNS-compatible form.

    Raises:
        ValidationError: If the name is not acceptable.
    """
    name = name.strip()
    if not name:
        raise ValidationError("bucket name cannot be empty")
    if len(name) < 3:
        raise ValidationError(
            f"bucket name ({name!r}) cannot be less than 3 characters"
        )
    if len(name) > 63:
        raise ValidationError(
            f"bucket name ({name!r}) cannot be greater than 63 characters"
        )
    if _IPV4_RE.match(name):
        raise ValidationError(
            f"bucket name ({name!r}) cannot be an IP address"
        )
    if ".." in name or ".-" in name or "-." in name:
        raise ValidationError(
            f"bucket name ({name!r}) contains invalid successive "
            f"characters '..', '.-' or '-.'"
        )
    pattern = _BUCKET_STRICT_RE if strict else _BUCKET_RE
    if not pattern.match(name):
        raise ValidationError(
            f"bucket name ({name!r}) does not follow S3 naming rules"
        )


def check_object_name(name: str) -> None:
    """Validate an object key.

    Raises:
        ValidationError: If the key is empty or longer than 1024 bytes.
    """
    if not name:
        raise ValidationError("object name cannot be empty")
    if len(name.encode("utf-8")) > MAX_OBJECT_NAME_BYTES:
        raise ValidationError(
            f"object name cannot be greater than "
            f"{MAX_OBJECT_NAME_BYTES} bytes"
        )
