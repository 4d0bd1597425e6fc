# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""S3-compatible object storage client.

``Client`` owns the transport, signer, request executor, upload session
registry and transfer orchestrator.  Its single-request operations map one
to one onto service requests.  ``upload_object``, ``upload_file``,
``download_file`` and ``download_range`` hand off to
``TransferOrchestrator`` for multipart and parallel ranged transfers.

Example::

    config = (
        ClientConfig.builder()
        .endpoint("https://s3.eu-west-1.amazonaws.com")
        .region("eu-west-1")
        .credentials(StaticCredentials("AKIA...", "..."))
        .build()
    )
    with Client(config) as client:
        client.upload_file("my-bucket", "backups/db.tar", Path("db.tar"))
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import replace
from datetime import timedelta
from pathlib import Path
from typing import IO, Self

import httpx

from stowage.cancel import CancelToken
from stowage.config import ClientConfig
from stowage.decoder import (
    decode_complete_multipart_upload,
    decode_initiate_multipart_upload,
    decode_list_multipart_uploads,
    decode_list_objects_v2,
    decode_list_parts,
    encode_complete_multipart_upload,
)
from stowage.errors import ProtocolError, ValidationError
from stowage.executor import RequestExecutor
from stowage.models import (
    CompletedPart,
    CompleteMultipartUploadResult,
    DownloadResult,
    ListMultipartUploadsResult,
    ListObjectsPage,
    ListPartsResult,
    ObjectInfo,
    ObjectStat,
    PartInfo,
    Payload,
    PayloadKind,
    PendingRequest,
    PutObjectResult,
    UploadResult,
)
from stowage.multipart import (
    MAX_PART_SIZE,
    MAX_PARTS,
    MultipartUploadSession,
    SessionRegistry,
)
from stowage.signing import Signer, check_presign_expiry, uri_encode
from stowage.transfer import Source, TransferOrchestrator
from stowage.transport import HttpxTransport, RawResponse, Transport
from stowage.utils import (
    check_bucket_name,
    check_object_name,
    from_http_date,
    md5_base64,
    trim_quotes,
)


logger = logging.getLogger(__name__)

_DEFAULT_CONTENT_TYPE = "application/octet-stream"
_META_PREFIX = "x-amz-meta-"
_SSE_C_PREFIX = "x-amz-server-side-encryption-customer-"

#: Largest object a single PUT accepts.
MAX_SINGLE_PUT_SIZE = MAX_PART_SIZE

BodyInput = bytes | bytearray | memoryview | IO[bytes] | Path | Payload


def _to_payload(data: BodyInput, length: int | None) -> Payload:
    if isinstance(data, Payload):
        return data
    if isinstance(data, (bytes, bytearray, memoryview)):
        return Payload.from_bytes(bytes(data))
    if isinstance(data, Path):
        return Payload.from_file(data, 0, length)
    return Payload.from_fileobj(data, length)


def _object_headers(
    headers: Mapping[str, str] | None,
    content_type: str | None,
    metadata: Mapping[str, str] | None,
) -> httpx.Headers:
    result = httpx.Headers(headers or {})
    if content_type:
        result["content-type"] = content_type
    elif "content-type" not in result:
        result["content-type"] = _DEFAULT_CONTENT_TYPE
    for name, value in (metadata or {}).items():
        if not name.lower().startswith(_META_PREFIX):
            name = _META_PREFIX + name
        result[name] = value
    return result


def _expiry_seconds(expires: int | timedelta) -> int:
    if isinstance(expires, timedelta):
        return int(expires.total_seconds())
    return int(expires)


def _require_etag(response: RawResponse, operation: str) -> str:
    etag = trim_quotes(response.headers.get("etag", ""))
    if not etag:
        raise ProtocolError(
            f"{operation}: response has no ETag header",
            status=response.status,
            request_id=response.headers.get("x-amz-request-id", ""),
        )
    return etag


class ListObjectsPaginator:
    """Lazy ListObjectsV2 listing.

    Iterating yields one ``ListObjectsPage`` per request; ``objects()``
    flattens them.  ``continuation_token`` always holds the token for the
    next page, so a listing can be resumed later with
    ``client.list_objects(..., continuation_token=saved)``.
    """

    def __init__(
        self,
        client: Client,
        bucket: str,
        *,
        prefix: str = "",
        delimiter: str = "",
        start_after: str = "",
        continuation_token: str = "",
        max_keys: int = 1000,
        cancel: CancelToken | None = None,
    ) -> None:
        self._client = client
        self.bucket = bucket
        self.prefix = prefix
        self.delimiter = delimiter
        self.start_after = start_after
        self.continuation_token = continuation_token
        self.max_keys = max_keys
        self._cancel = cancel
        self.exhausted = False

    def __iter__(self) -> Iterator[ListObjectsPage]:
        while not self.exhausted:
            page = self._client.list_objects_page(
                self.bucket,
                prefix=self.prefix,
                delimiter=self.delimiter,
                start_after=self.start_after,
                continuation_token=self.continuation_token,
                max_keys=self.max_keys,
                cancel=self._cancel,
            )
            if page.is_truncated and not page.next_continuation_token:
                raise ProtocolError(
                    f"ListObjectsV2 on {self.bucket} is truncated but has "
                    f"no continuation token"
                )
            self.continuation_token = page.next_continuation_token
            self.exhausted = not page.is_truncated
            yield page

    def objects(self) -> Iterator[ObjectInfo]:
        for page in self:
            yield from page.objects


class Client:
    """S3-compatible object storage client.

    Thread-safe: operations may be issued from several threads.  Close
    the client (or use it as a context manager) to release the
    connection pool.

    Args:
        config: Validated client configuration.
        transport: Transport to send requests with.  Defaults to an
            ``HttpxTransport`` the client owns and closes.
    """

    def __init__(
        self, config: ClientConfig, *, transport: Transport | None = None
    ) -> None:
        self.config = config
        self._owns_transport = transport is None
        self.transport: Transport = transport or HttpxTransport(
            timeout=config.request_timeout,
            max_connections=max(32, config.concurrency * 2),
        )
        self.signer = Signer(
            config.region,
            algorithm=config.signing_algorithm,
            chunk_size=config.chunk_size,
            streaming_signature=config.streaming_signature,
            checksum_trailer=config.checksum_trailer,
        )
        self.executor = RequestExecutor(
            self.transport,
            self.signer,
            config.credentials,
            config.retry,
            timeout=config.request_timeout,
        )
        self.sessions = SessionRegistry()
        self.transfer = TransferOrchestrator(self, config)

    def close(self) -> None:
        if self._owns_transport:
            self.transport.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Request construction
    # ------------------------------------------------------------------

    def _address(self, bucket: str, key: str = "") -> tuple[str, str]:
        """Host and escaped path for ``bucket``/``key``.

        Dotted bucket names stay path-style over TLS, since they would not
        match the endpoint's wildcard certificate.
        """
        encoded = uri_encode(key, encode_slash=False) if key else ""
        virtual = self.config.virtual_host_style and not (
            "." in bucket and self.config.is_secure
        )
        if virtual:
            return f"{bucket}.{self.config.host}", f"/{encoded}"
        if encoded:
            return self.config.host, f"/{bucket}/{encoded}"
        return self.config.host, f"/{bucket}"

    def _request(
        self,
        method: str,
        bucket: str,
        key: str | None = None,
        *,
        operation: str,
        query: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | httpx.Headers | None = None,
        payload: Payload | None = None,
        idempotent: bool | None = None,
    ) -> PendingRequest:
        check_bucket_name(bucket)
        if key is not None:
            check_object_name(key)
        if headers and not self.config.is_secure:
            for name in headers:
                if name.lower().startswith(_SSE_C_PREFIX):
                    raise ValidationError(
                        "server-side encryption with customer keys "
                        "requires a TLS endpoint"
                    )
        host, path = self._address(bucket, key or "")
        return PendingRequest.build(
            method,
            host,
            path,
            query=query,
            headers=headers,
            payload=payload or Payload.empty(),
            idempotent=idempotent,
            operation=operation,
            scheme=self.config.scheme,
        )

    def _hash_verified(self, payload: Payload) -> bool:
        """Whether the service checks the body against a signed hash."""
        if payload.kind in (PayloadKind.EMPTY, PayloadKind.BYTES):
            return True
        return (
            payload.kind is PayloadKind.SIZED_STREAM
            and self.config.streaming_signature
        )

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    def put_object(
        self,
        bucket: str,
        key: str,
        data: BodyInput,
        *,
        length: int | None = None,
        headers: Mapping[str, str] | None = None,
        content_type: str | None = None,
        metadata: Mapping[str, str] | None = None,
        cancel: CancelToken | None = None,
    ) -> PutObjectResult:
        """Upload an object in one PUT (at most 5 GiB).

        Raises:
            ValidationError: If the length is unknown or too large.
        """
        payload = _to_payload(data, length)
        if payload.length is None:
            raise ValidationError(
                "put_object needs the body length; use upload_object for "
                "streams of unknown size"
            )
        if payload.length > MAX_SINGLE_PUT_SIZE:
            raise ValidationError(
                f"object of {payload.length} bytes exceeds the single PUT "
                f"limit of {MAX_SINGLE_PUT_SIZE}; use upload_object"
            )
        request = self._request(
            "PUT",
            bucket,
            key,
            operation="PutObject",
            headers=_object_headers(headers, content_type, metadata),
            payload=payload,
            # Without a verified content hash a replay could store a
            # different body under the same key.
            idempotent=self._hash_verified(payload),
        )
        with self.executor.execute(request, cancel=cancel) as response:
            return PutObjectResult(
                bucket=bucket,
                key=key,
                etag=trim_quotes(response.headers.get("etag", "")),
                version_id=response.headers.get("x-amz-version-id", ""),
            )

    def get_object(
        self,
        bucket: str,
        key: str,
        *,
        offset: int = 0,
        length: int | None = None,
        version_id: str | None = None,
        headers: Mapping[str, str] | None = None,
        cancel: CancelToken | None = None,
    ) -> RawResponse:
        """Open an object (or a byte range of it) for streaming.

        The caller must close the returned response.  Its headers carry
        the ETag, content length and ``x-amz-version-id``.
        """
        if offset < 0:
            raise ValidationError(f"offset cannot be negative: {offset}")
        if length is not None and length <= 0:
            raise ValidationError(f"length must be positive: {length}")
        request_headers = httpx.Headers(headers or {})
        if length is not None:
            request_headers["range"] = f"bytes={offset}-{offset + length - 1}"
        elif offset:
            request_headers["range"] = f"bytes={offset}-"
        request = self._request(
            "GET",
            bucket,
            key,
            operation="GetObject",
            query={"versionId": version_id} if version_id else None,
            headers=request_headers,
        )
        return self.executor.execute(request, cancel=cancel)

    def stat_object(
        self,
        bucket: str,
        key: str,
        *,
        version_id: str | None = None,
        checksum_mode: bool = False,
        headers: Mapping[str, str] | None = None,
        cancel: CancelToken | None = None,
    ) -> ObjectStat:
        """HEAD an object.

        Args:
            checksum_mode: Ask the service to return stored checksums
                (``x-amz-checksum-mode: ENABLED``).
        """
        request_headers = httpx.Headers(headers or {})
        if checksum_mode:
            request_headers["x-amz-checksum-mode"] = "ENABLED"
        request = self._request(
            "HEAD",
            bucket,
            key,
            operation="HeadObject",
            query={"versionId": version_id} if version_id else None,
            headers=request_headers,
        )
        with self.executor.execute(request, cancel=cancel) as response:
            h = response.headers
        try:
            size = int(h["content-length"])
        except (KeyError, ValueError) as e:
            raise ProtocolError(
                f"HeadObject s3://{bucket}/{key}: missing or invalid "
                f"Content-Length",
                status=response.status,
            ) from e
        last_modified = None
        if h.get("last-modified"):
            try:
                last_modified = from_http_date(h["last-modified"])
            except (TypeError, ValueError):
                logger.debug(
                    "Unparsable Last-Modified: %s", h["last-modified"]
                )
        return ObjectStat(
            bucket=bucket,
            key=key,
            size=size,
            etag=trim_quotes(h.get("etag", "")),
            last_modified=last_modified,
            content_type=h.get("content-type", ""),
            version_id=h.get("x-amz-version-id", ""),
            checksum_crc32=h.get("x-amz-checksum-crc32", ""),
            checksum_type=h.get("x-amz-checksum-type", ""),
            server_side_encryption=h.get("x-amz-server-side-encryption", ""),
            sse_customer_algorithm=h.get(
                "x-amz-server-side-encryption-customer-algorithm", ""
            ),
            metadata={
                name[len(_META_PREFIX):]: value
                for name, value in h.items()
                if name.startswith(_META_PREFIX)
            },
        )

    def delete_object(
        self,
        bucket: str,
        key: str,
        *,
        version_id: str | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        request = self._request(
            "DELETE",
            bucket,
            key,
            operation="DeleteObject",
            query={"versionId": version_id} if version_id else None,
            idempotent=True,
        )
        with self.executor.execute(request, cancel=cancel):
            pass

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_objects_page(
        self,
        bucket: str,
        *,
        prefix: str = "",
        delimiter: str = "",
        start_after: str = "",
        continuation_token: str = "",
        max_keys: int = 1000,
        cancel: CancelToken | None = None,
    ) -> ListObjectsPage:
        """Fetch a single ListObjectsV2 page."""
        if not 1 <= max_keys <= 1000:
            raise ValidationError(f"max_keys must be 1-1000, got {max_keys}")
        query = {"list-type": "2", "max-keys": str(max_keys)}
        if prefix:
            query["prefix"] = prefix
        if delimiter:
            query["delimiter"] = delimiter
        if start_after:
            query["start-after"] = start_after
        if continuation_token:
            query["continuation-token"] = continuation_token
        request = self._request(
            "GET", bucket, operation="ListObjectsV2", query=query
        )
        return self.executor.execute_xml(
            request, decode_list_objects_v2, cancel=cancel
        )

    def list_objects(
        self,
        bucket: str,
        *,
        prefix: str = "",
        delimiter: str = "",
        start_after: str = "",
        continuation_token: str = "",
        max_keys: int = 1000,
        cancel: CancelToken | None = None,
    ) -> ListObjectsPaginator:
        """Lazily list objects; no request is made until iteration."""
        return ListObjectsPaginator(
            self,
            bucket,
            prefix=prefix,
            delimiter=delimiter,
            start_after=start_after,
            continuation_token=continuation_token,
            max_keys=max_keys,
            cancel=cancel,
        )

    # ------------------------------------------------------------------
    # Multipart
    # ------------------------------------------------------------------

    def create_multipart_upload(
        self,
        bucket: str,
        key: str,
        *,
        headers: Mapping[str, str] | None = None,
        content_type: str | None = None,
        metadata: Mapping[str, str] | None = None,
        cancel: CancelToken | None = None,
    ) -> MultipartUploadSession:
        """Start a multipart upload and register its session."""
        request = self._request(
            "POST",
            bucket,
            key,
            operation="CreateMultipartUpload",
            query={"uploads": ""},
            headers=_object_headers(headers, content_type, metadata),
        )
        result = self.executor.execute_xml(
            request, decode_initiate_multipart_upload, cancel=cancel
        )
        session = MultipartUploadSession(bucket, key, result.upload_id)
        self.sessions.add(session)
        logger.info(
            "Initiated multipart upload %s for s3://%s/%s",
            result.upload_id,
            bucket,
            key,
        )
        return session

    def upload_part(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        data: BodyInput,
        *,
        length: int | None = None,
        headers: Mapping[str, str] | None = None,
        cancel: CancelToken | None = None,
    ) -> CompletedPart:
        """Upload one part.  Re-sending a part number replaces it."""
        if not 1 <= part_number <= MAX_PARTS:
            raise ValidationError(
                f"part number {part_number} outside [1, {MAX_PARTS}]"
            )
        payload = _to_payload(data, length)
        if payload.length is None:
            raise ValidationError("upload_part needs the part length")
        if payload.length > MAX_PART_SIZE:
            raise ValidationError(
                f"part of {payload.length} bytes exceeds the maximum of "
                f"{MAX_PART_SIZE}"
            )
        request = self._request(
            "PUT",
            bucket,
            key,
            operation="UploadPart",
            query={"partNumber": str(part_number), "uploadId": upload_id},
            headers=headers,
            payload=payload,
            idempotent=True,
        )
        with self.executor.execute(request, cancel=cancel) as response:
            etag = _require_etag(response, "UploadPart")
        return CompletedPart(part_number, etag, payload.length)

    def list_parts_page(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        *,
        part_number_marker: int = 0,
        max_parts: int = 1000,
        cancel: CancelToken | None = None,
    ) -> ListPartsResult:
        query = {"uploadId": upload_id, "max-parts": str(max_parts)}
        if part_number_marker:
            query["part-number-marker"] = str(part_number_marker)
        request = self._request(
            "GET", bucket, key, operation="ListParts", query=query
        )
        return self.executor.execute_xml(
            request, decode_list_parts, cancel=cancel
        )

    def list_parts(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        *,
        max_parts: int = 1000,
        cancel: CancelToken | None = None,
    ) -> list[PartInfo]:
        """All uploaded parts, following ``part-number-marker`` pages."""
        parts: list[PartInfo] = []
        marker = 0
        while True:
            page = self.list_parts_page(
                bucket,
                key,
                upload_id,
                part_number_marker=marker,
                max_parts=max_parts,
                cancel=cancel,
            )
            parts.extend(page.parts)
            if not page.is_truncated:
                return parts
            if page.next_part_number_marker <= marker:
                raise ProtocolError(
                    f"ListParts for upload {upload_id} did not advance past "
                    f"part {marker}"
                )
            marker = page.next_part_number_marker

    def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: Sequence[CompletedPart],
        *,
        cancel: CancelToken | None = None,
    ) -> CompleteMultipartUploadResult:
        """Send CompleteMultipartUpload exactly once.

        Parts are sent in ascending part-number order whatever order they
        are given in.  The request is not retried: a lost response may
        hide a completion that already happened.
        """
        if not parts:
            raise ValidationError(f"upload {upload_id}: no parts to complete")
        ordered = sorted(parts, key=lambda p: p.part_number)
        for prev, part in zip(ordered, ordered[1:]):
            if prev.part_number == part.part_number:
                raise ValidationError(
                    f"upload {upload_id}: part {part.part_number} listed "
                    f"twice"
                )
        body = encode_complete_multipart_upload(ordered)
        request = self._request(
            "POST",
            bucket,
            key,
            operation="CompleteMultipartUpload",
            query={"uploadId": upload_id},
            headers={
                "content-type": "application/xml",
                "content-md5": md5_base64(body),
            },
            payload=Payload.from_bytes(body),
            idempotent=False,
        )
        with self.executor.execute(
            request, cancel=cancel, retry=False
        ) as response:
            # A 200 response can still carry an <Error> document
            result = decode_complete_multipart_upload(
                response.iter_bytes(), status=response.status
            )
            version_id = response.headers.get("x-amz-version-id", "")
        return replace(result, version_id=version_id)

    def abort_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        *,
        cancel: CancelToken | None = None,
    ) -> None:
        request = self._request(
            "DELETE",
            bucket,
            key,
            operation="AbortMultipartUpload",
            query={"uploadId": upload_id},
            idempotent=True,
        )
        with self.executor.execute(request, cancel=cancel):
            pass

    def list_multipart_uploads(
        self,
        bucket: str,
        *,
        prefix: str = "",
        key_marker: str = "",
        upload_id_marker: str = "",
        max_uploads: int = 1000,
        cancel: CancelToken | None = None,
    ) -> ListMultipartUploadsResult:
        """One page of in-progress multipart uploads in ``bucket``."""
        query = {"uploads": "", "max-uploads": str(max_uploads)}
        if prefix:
            query["prefix"] = prefix
        if key_marker:
            query["key-marker"] = key_marker
        if upload_id_marker:
            query["upload-id-marker"] = upload_id_marker
        request = self._request(
            "GET", bucket, operation="ListMultipartUploads", query=query
        )
        return self.executor.execute_xml(
            request, decode_list_multipart_uploads, cancel=cancel
        )

    def complete_upload(
        self,
        session: MultipartUploadSession,
        expected_parts: Sequence[int] | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> CompleteMultipartUploadResult:
        """Complete a registered session (see ``TransferOrchestrator``)."""
        with self.sessions.claim(session.upload_id):
            return self.transfer.complete(
                session, expected_parts, cancel=cancel
            )

    def abort_upload(
        self,
        session: MultipartUploadSession,
        *,
        cancel: CancelToken | None = None,
    ) -> None:
        """Abort a registered session and drop it from the registry."""
        with self.sessions.claim(session.upload_id):
            self.transfer.abort(session, cancel=cancel)

    # ------------------------------------------------------------------
    # Presigned URLs
    # ------------------------------------------------------------------

    def get_presigned_url(
        self,
        method: str,
        bucket: str,
        key: str = "",
        *,
        expires: int | timedelta | None = None,
        query: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> str:
        """Presign a request.

        Args:
            expires: Lifetime, at most ``max_presign_expiry`` (which is
                also the default).

        Raises:
            ValidationError: If the expiry is out of range.
        """
        check_bucket_name(bucket)
        if key:
            check_object_name(key)
        seconds = (
            self.config.max_presign_expiry
            if expires is None
            else _expiry_seconds(expires)
        )
        check_presign_expiry(seconds, self.config.max_presign_expiry)
        host, path = self._address(bucket, key)
        return self.signer.presign(
            method.upper(),
            host,
            path,
            self.config.credentials.current(),
            expires=seconds,
            query=tuple((query or {}).items()),
            headers=dict(headers or {}),
            scheme=self.config.scheme,
            max_expires=self.config.max_presign_expiry,
        )

    def presigned_get_object(
        self,
        bucket: str,
        key: str,
        *,
        expires: int | timedelta | None = None,
        version_id: str | None = None,
        response_headers: Mapping[str, str] | None = None,
    ) -> str:
        """Presigned GET URL.

        ``response_headers`` are sent as ``response-*`` overrides, for
        example ``{"response-content-type": "text/plain"}``.
        """
        query = dict(response_headers or {})
        if version_id:
            query["versionId"] = version_id
        return self.get_presigned_url(
            "GET", bucket, key, expires=expires, query=query
        )

    def presigned_put_object(
        self,
        bucket: str,
        key: str,
        *,
        expires: int | timedelta | None = None,
    ) -> str:
        return self.get_presigned_url("PUT", bucket, key, expires=expires)

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def upload_object(
        self,
        bucket: str,
        key: str,
        source: Source,
        *,
        size: int | None = None,
        headers: Mapping[str, str] | None = None,
        content_type: str | None = None,
        metadata: Mapping[str, str] | None = None,
        cancel: CancelToken | None = None,
    ) -> UploadResult:
        """Upload bytes, a file object or a path, multipart when large."""
        check_bucket_name(bucket)
        check_object_name(key)
        return self.transfer.upload(
            bucket,
            key,
            source,
            size=size,
            headers=_object_headers(headers, content_type, metadata),
            cancel=cancel,
        )

    def upload_file(
        self,
        bucket: str,
        key: str,
        path: str | Path,
        *,
        headers: Mapping[str, str] | None = None,
        content_type: str | None = None,
        metadata: Mapping[str, str] | None = None,
        cancel: CancelToken | None = None,
    ) -> UploadResult:
        return self.upload_object(
            bucket,
            key,
            Path(path),
            headers=headers,
            content_type=content_type,
            metadata=metadata,
            cancel=cancel,
        )

    def download_file(
        self,
        bucket: str,
        key: str,
        path: str | Path,
        *,
        range_size: int | None = None,
        version_id: str | None = None,
        cancel: CancelToken | None = None,
    ) -> DownloadResult:
        """Download an object to ``path`` with parallel ranged GETs."""
        check_bucket_name(bucket)
        check_object_name(key)
        return self.transfer.download(
            bucket,
            key,
            Path(path),
            range_size=range_size,
            version_id=version_id,
            cancel=cancel,
        )

    def download_range(
        self,
        bucket: str,
        key: str,
        offset: int,
        length: int,
        *,
        version_id: str | None = None,
        cancel: CancelToken | None = None,
    ) -> bytes:
        return self.transfer.download_range(
            bucket,
            key,
            offset,
            length,
            version_id=version_id,
            cancel=cancel,
        )
