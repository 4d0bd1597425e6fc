# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Value types shared by the signer, executor, decoder and orchestrator.

Everything here is an immutable dataclass.  Requests carry their body as a
``Payload`` descriptor so the executor can re-open a replayable body for
every attempt instead of buffering it.
"""

from __future__ import annotations

import enum
import hashlib
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import IO, ClassVar

import httpx

from stowage.utils import is_plain_md5_etag, to_amz_date, to_signer_date


#: SigV4 algorithm identifier (HMAC-SHA256).
ALGORITHM_SIGV4 = "AWS4-HMAC-SHA256"

#: SigV4A algorithm identifier (ECDSA P-256).
ALGORITHM_SIGV4A = "AWS4-ECDSA-P256-SHA256"

_IDEMPOTENT_METHODS = frozenset({"GET", "HEAD"})

#: Read size used when streaming files and file objects.
DEFAULT_READ_SIZE = 64 * 1024


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------


class PayloadKind(enum.Enum):
    """How a request body is provided."""

    EMPTY = "empty"
    BYTES = "bytes"
    SIZED_STREAM = "sized-stream"
    UNSIZED_STREAM = "unsized-stream"


@dataclass(frozen=True)
class Payload:
    """Request body descriptor.

    Streams are described by an ``opener`` that returns a fresh chunk
    iterator on every call, so a replayable stream can be re-sent on
    retry without holding the whole body in memory.

    Attributes:
        kind: Which of the four body shapes this is.
        data: Body bytes (``BYTES`` only).
        opener: Returns a new chunk iterator (streams only).
        length: Body length in bytes, or None when unknown.
        replayable: Whether ``open()`` may be called more than once.
    """

    kind: PayloadKind
    data: bytes = b""
    opener: Callable[[], Iterable[bytes]] | None = field(
        default=None, repr=False
    )
    length: int | None = None
    replayable: bool = True

    @classmethod
    def empty(cls) -> Payload:
        return cls(PayloadKind.EMPTY, length=0)

    @classmethod
    def from_bytes(cls, data: bytes) -> Payload:
        if not data:
            return cls.empty()
        return cls(PayloadKind.BYTES, data=bytes(data), length=len(data))

    @classmethod
    def from_stream(
        cls,
        opener: Callable[[], Iterable[bytes]],
        length: int | None = None,
        *,
        replayable: bool = True,
    ) -> Payload:
        kind = (
            PayloadKind.SIZED_STREAM
            if length is not None
            else PayloadKind.UNSIZED_STREAM
        )
        return cls(kind, opener=opener, length=length, replayable=replayable)

    @classmethod
    def from_file(
        cls,
        path: Path,
        offset: int = 0,
        length: int | None = None,
        *,
        read_size: int = DEFAULT_READ_SIZE,
    ) -> Payload:
        """Describe a window of a file on disk (re-opened per attempt)."""
        if length is None:
            length = path.stat().st_size - offset

        def opener() -> Iterator[bytes]:
            with path.open("rb") as f:
                f.seek(offset)
                yield from _read_window(f, length, read_size)

        return cls.from_stream(opener, length)

    @classmethod
    def from_fileobj(
        cls,
        fileobj: IO[bytes],
        length: int | None = None,
        *,
        read_size: int = DEFAULT_READ_SIZE,
    ) -> Payload:
        """Describe a binary file object.

        Seekable objects are replayable: every attempt rewinds to the
        position the object had when this payload was created.
        """
        seekable = fileobj.seekable()
        start = fileobj.tell() if seekable else 0

        def opener() -> Iterator[bytes]:
            if seekable:
                fileobj.seek(start)
            if length is None:
                while chunk := fileobj.read(read_size):
                    yield chunk
            else:
                yield from _read_window(fileobj, length, read_size)

        return cls.from_stream(opener, length, replayable=seekable)

    def open(self) -> Iterator[bytes]:
        """Return a fresh iterator over the body chunks."""
        if self.kind is PayloadKind.EMPTY:
            return iter(())
        if self.kind is PayloadKind.BYTES:
            return iter((self.data,))
        assert self.opener is not None
        return iter(self.opener())

    @property
    def is_stream(self) -> bool:
        return self.kind in (
            PayloadKind.SIZED_STREAM,
            PayloadKind.UNSIZED_STREAM,
        )


def _read_window(f: IO[bytes], length: int, read_size: int) -> Iterator[bytes]:
    remaining = length
    while remaining > 0:
        chunk = f.read(min(read_size, remaining))
        if not chunk:
            raise OSError(
                f"source ended {remaining} bytes before the declared length"
            )
        remaining -= len(chunk)
        yield chunk


EMPTY_PAYLOAD = Payload.empty()


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


QueryInput = (
    Mapping[str, str | Sequence[str]] | Iterable[tuple[str, str]] | None
)
HeaderInput = Mapping[str, str | Sequence[str]] | httpx.Headers | None


def _flatten_query(query: QueryInput) -> tuple[tuple[str, str], ...]:
    if query is None:
        return ()
    if isinstance(query, Mapping):
        pairs: list[tuple[str, str]] = []
        for key, value in query.items():
            if isinstance(value, str):
                pairs.append((key, value))
            else:
                pairs.extend((key, v) for v in value)
        return tuple(pairs)
    return tuple((k, v) for k, v in query)


def _to_headers(headers: HeaderInput) -> httpx.Headers:
    if headers is None:
        return httpx.Headers()
    if isinstance(headers, httpx.Headers):
        return httpx.Headers(headers)
    pairs: list[tuple[str, str]] = []
    for name, value in headers.items():
        if isinstance(value, str):
            pairs.append((name, value))
        else:
            pairs.extend((name, v) for v in value)
    return httpx.Headers(pairs)


@dataclass(frozen=True)
class PendingRequest:
    """An unsigned request.

    Attributes:
        method: HTTP method.
        host: Host (and optional port) the request goes to.
        path: Request path, already URI-escaped.
        query: Query parameters as a multimap of (name, value) pairs.
        headers: Case-insensitive header multimap.
        payload: Body descriptor.
        idempotent: Whether repeating the request is side-effect free.
        operation: Operation name for logs and error context.
        scheme: ``https`` or ``http``.
    """

    method: str
    host: str
    path: str
    query: tuple[tuple[str, str], ...] = ()
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    payload: Payload = EMPTY_PAYLOAD
    idempotent: bool = False
    operation: str = ""
    scheme: str = "https"

    @classmethod
    def build(
        cls,
        method: str,
        host: str,
        path: str,
        *,
        query: QueryInput = None,
        headers: HeaderInput = None,
        payload: Payload = EMPTY_PAYLOAD,
        idempotent: bool | None = None,
        operation: str = "",
        scheme: str = "https",
    ) -> PendingRequest:
        """Build a request from loosely typed inputs.

        ``query`` and ``headers`` values may be a string or a list of
        strings.  GET and HEAD are idempotent unless stated otherwise.
        """
        method = method.upper()
        if idempotent is None:
            idempotent = method in _IDEMPOTENT_METHODS
        return cls(
            method=method,
            host=host,
            path=path or "/",
            query=_flatten_query(query),
            headers=_to_headers(headers),
            payload=payload,
            idempotent=idempotent,
            operation=operation or method,
            scheme=scheme,
        )

    @property
    def url(self) -> str:
        """Unsigned URL (query encoded the way the signer canonicalizes)."""
        from stowage.signing import canonical_query_string

        query = canonical_query_string(self.query)
        base = f"{self.scheme}://{self.host}{self.path}"
        return f"{base}?{query}" if query else base


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SigningContext:
    """Time and scope a signature is bound to.

    Attributes:
        timestamp: Signing time, UTC, whole seconds.
        region: Region (ignored in the SigV4A scope).
        service: Service name.
        algorithm: ``AWS4-HMAC-SHA256`` or ``AWS4-ECDSA-P256-SHA256``.
    """

    max_skew: ClassVar[timedelta] = timedelta(minutes=15)

    timestamp: datetime
    region: str
    service: str = "s3"
    algorithm: str = ALGORITHM_SIGV4

    def __post_init__(self) -> None:
        if self.timestamp.microsecond:
            object.__setattr__(
                self, "timestamp", self.timestamp.replace(microsecond=0)
            )

    @property
    def amz_date(self) -> str:
        return to_amz_date(self.timestamp)

    @property
    def date_stamp(self) -> str:
        return to_signer_date(self.timestamp)

    @property
    def credential_scope(self) -> str:
        if self.algorithm == ALGORITHM_SIGV4A:
            return f"{self.date_stamp}/{self.service}/aws4_request"
        return f"{self.date_stamp}/{self.region}/{self.service}/aws4_request"


@dataclass(frozen=True)
class CanonicalRequest:
    """The deterministic string form of a request that gets signed."""

    method: str
    path: str
    query: str
    headers: str
    signed_headers: tuple[str, ...]
    payload_hash: str

    @property
    def signed_headers_str(self) -> str:
        return ";".join(self.signed_headers)

    @property
    def text(self) -> str:
        return "\n".join(
            [
                self.method,
                self.path,
                self.query,
                self.headers,
                self.signed_headers_str,
                self.payload_hash,
            ]
        )

    def digest(self) -> str:
        """Hex SHA-256 of the canonical request text."""
        return hashlib.sha256(self.text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Signature:
    """A computed request signature.

    Attributes:
        algorithm: Algorithm identifier.
        value: Hex-encoded signature.
        signed_headers: Signed header names, in canonical order.
        credential_scope: Scope the signature is bound to.
        timestamp: Signing time.
    """

    algorithm: str
    value: str
    signed_headers: tuple[str, ...]
    credential_scope: str
    timestamp: datetime


@dataclass(frozen=True)
class SignedRequest:
    """A request ready for the transport.

    ``body`` is None for an empty body, bytes for in-memory payloads and a
    chunk iterator for streams.
    """

    method: str
    url: str
    headers: httpx.Headers
    body: bytes | Iterable[bytes] | None
    signature: Signature
    canonical_request: CanonicalRequest


# ---------------------------------------------------------------------------
# Multipart and listing results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompletedPart:
    """A part the service acknowledged with an ETag."""

    part_number: int
    etag: str
    size: int = 0


@dataclass(frozen=True)
class PartInfo:
    """A part as reported by ListParts."""

    part_number: int
    etag: str
    size: int
    last_modified: datetime | None = None


@dataclass(frozen=True)
class InitiateMultipartUploadResult:
    bucket: str
    key: str
    upload_id: str


@dataclass(frozen=True)
class ListPartsResult:
    bucket: str
    key: str
    upload_id: str
    parts: tuple[PartInfo, ...]
    is_truncated: bool = False
    next_part_number_marker: int = 0
    max_parts: int = 0


@dataclass(frozen=True)
class CompleteMultipartUploadResult:
    location: str
    bucket: str
    key: str
    etag: str
    version_id: str = ""


@dataclass(frozen=True)
class MultipartUploadInfo:
    """An in-progress upload as reported by ListMultipartUploads."""

    key: str
    upload_id: str
    initiated: datetime | None = None
    storage_class: str = ""


@dataclass(frozen=True)
class ListMultipartUploadsResult:
    bucket: str
    uploads: tuple[MultipartUploadInfo, ...]
    is_truncated: bool = False
    next_key_marker: str = ""
    next_upload_id_marker: str = ""


@dataclass(frozen=True)
class ObjectInfo:
    """One entry of a ListObjectsV2 page."""

    key: str
    size: int
    etag: str = ""
    last_modified: datetime | None = None
    storage_class: str = ""


@dataclass(frozen=True)
class ListObjectsPage:
    """One page of a ListObjectsV2 listing."""

    bucket: str
    prefix: str
    objects: tuple[ObjectInfo, ...]
    common_prefixes: tuple[str, ...] = ()
    is_truncated: bool = False
    next_continuation_token: str = ""
    key_count: int = 0


@dataclass(frozen=True)
class ObjectStat:
    """Object metadata from a HEAD request."""

    bucket: str
    key: str
    size: int
    etag: str
    last_modified: datetime | None = None
    content_type: str = ""
    version_id: str = ""
    checksum_crc32: str = ""
    checksum_type: str = ""
    server_side_encryption: str = ""
    sse_customer_algorithm: str = ""
    metadata: Mapping[str, str] = field(default_factory=dict)

    @property
    def has_plain_md5_etag(self) -> bool:
        """Whether the ETag is the MD5 of the object bytes.

        Multipart ETags carry a ``-N`` suffix, and KMS or customer-key
        encryption makes the ETag opaque.
        """
        if self.sse_customer_algorithm:
            return False
        if self.server_side_encryption.startswith("aws:kms"):
            return False
        return is_plain_md5_etag(self.etag)

    @property
    def full_object_crc32(self) -> str:
        """The CRC32 of the whole object, or "" if only composite."""
        if not self.checksum_crc32 or "-" in self.checksum_crc32:
            return ""
        if self.checksum_type and self.checksum_type != "FULL_OBJECT":
            return ""
        return self.checksum_crc32


@dataclass(frozen=True)
class PutObjectResult:
    bucket: str
    key: str
    etag: str
    version_id: str = ""


@dataclass(frozen=True)
class UploadResult:
    """Outcome of ``TransferOrchestrator.upload``.

    ``upload_id`` is empty and ``parts`` is 0 for single-shot uploads.
    """

    bucket: str
    key: str
    etag: str
    size: int
    version_id: str = ""
    upload_id: str = ""
    parts: int = 0


@dataclass(frozen=True)
class DownloadResult:
    """Outcome of ``TransferOrchestrator.download``.

    ``verified`` names the integrity check that passed (``md5``,
    ``crc32``) or is empty when the service gave nothing to check.
    """

    bucket: str
    key: str
    size: int
    etag: str
    ranges: int
    verified: str = ""
    version_id: str = ""
