# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Streaming decoding of S3 XML responses and encoding of request bodies.

Bodies are fed chunk by chunk into ``xml.etree.ElementTree.XMLPullParser``
and each element is released once it has been read, so a listing with
thousands of entries never sits in memory as a full tree.  Namespaces are
stripped and unknown elements are ignored.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from collections.abc import Iterable, Iterator, Mapping, Sequence
from datetime import datetime

import httpx

from stowage.errors import ProtocolError, S3ServiceError
from stowage.models import (
    CompletedPart,
    CompleteMultipartUploadResult,
    InitiateMultipartUploadResult,
    ListMultipartUploadsResult,
    ListObjectsPage,
    ListPartsResult,
    MultipartUploadInfo,
    ObjectInfo,
    PartInfo,
)
from stowage.utils import from_iso8601, trim_quotes


logger = logging.getLogger(__name__)

S3_NAMESPACE = "http://s3.amazonaws.com/doc/2006-03-01/"

# Error codes used when the error body is missing or unparsable
_STATUS_CODES = {
    301: "PermanentRedirect",
    307: "TemporaryRedirect",
    400: "BadRequest",
    403: "Forbidden",
    404: "NotFound",
    405: "MethodNotAllowed",
    409: "Conflict",
    411: "MissingContentLength",
    412: "PreconditionFailed",
    416: "InvalidRange",
    429: "TooManyRequests",
    500: "InternalError",
    501: "NotImplemented",
    502: "BadGateway",
    503: "ServiceUnavailable",
    504: "GatewayTimeout",
}

Chunks = Iterable[bytes] | bytes


def _local(tag: str) -> str:
    """Strip a ``{namespace}`` prefix from an element tag."""
    return tag.rsplit("}", 1)[-1]


def _end_events(
    chunks: Chunks, root: str, *, status: int = 200
) -> Iterator[tuple[tuple[str, ...], str]]:
    """Yield (path below the root, text) for every closed element.

    Elements are cleared after they are read.  If the document root is
    ``<Error>`` instead of ``root`` the error is decoded and raised.

    Raises:
        S3ServiceError: If the body is an ``<Error>`` document.
        ProtocolError: If the body is not well-formed or has another root.
    """
    if isinstance(chunks, bytes):
        chunks = (chunks,)
    parser = ET.XMLPullParser(events=("start", "end"))
    path: list[str] = []
    root_elem: ET.Element | None = None
    error: dict[str, str] | None = None

    def drain() -> Iterator[tuple[tuple[str, ...], str]]:
        nonlocal root_elem, error
        for event, elem in parser.read_events():
            name = _local(elem.tag)
            if event == "start":
                if root_elem is None:
                    root_elem = elem
                    if name == "Error" and root != "Error":
                        error = {}
                    elif name != root:
                        raise ProtocolError(
                            f"expected <{root}> document, got <{name}>",
                            status=status,
                        )
                path.append(name)
                continue

            rel = tuple(path[1:])
            path.pop()
            if error is not None:
                if len(rel) == 1:
                    error[rel[0]] = elem.text or ""
            elif rel:
                yield rel, elem.text or ""
            if len(rel) == 1 and root_elem is not None:
                # Drop finished top-level records from the root
                root_elem.clear()

    try:
        for chunk in chunks:
            parser.feed(chunk)
            yield from drain()
        parser.close()
        yield from drain()
    except ET.ParseError as e:
        raise ProtocolError(
            f"malformed XML in <{root}> response: {e}", status=status
        ) from e

    if root_elem is None:
        raise ProtocolError(f"empty <{root}> response", status=status)
    if error is not None:
        raise _service_error(error, status, httpx.Headers())


def _to_int(value: str, default: int = 0) -> int:
    try:
        return int(value)
    except ValueError:
        return default


def _to_bool(value: str) -> bool:
    return value.strip().lower() == "true"


def _to_time(value: str) -> datetime | None:
    value = value.strip()
    if not value:
        return None
    try:
        return from_iso8601(value)
    except ValueError:
        logger.debug("Ignoring unparsable timestamp %r", value)
        return None


# ---------------------------------------------------------------------------
# Success documents
# ---------------------------------------------------------------------------


def decode_initiate_multipart_upload(
    chunks: Chunks,
) -> InitiateMultipartUploadResult:
    """Decode ``<InitiateMultipartUploadResult>``.

    Raises:
        ProtocolError: If the document carries no ``UploadId``.
    """
    fields: dict[str, str] = {}
    for path, text in _end_events(chunks, "InitiateMultipartUploadResult"):
        if len(path) == 1:
            fields[path[0]] = text
    upload_id = fields.get("UploadId", "").strip()
    if not upload_id:
        raise ProtocolError("InitiateMultipartUpload response has no UploadId")
    return InitiateMultipartUploadResult(
        bucket=fields.get("Bucket", ""),
        key=fields.get("Key", ""),
        upload_id=upload_id,
    )


def decode_list_parts(chunks: Chunks) -> ListPartsResult:
    """Decode one ``<ListPartsResult>`` page."""
    fields: dict[str, str] = {}
    parts: list[PartInfo] = []
    current: dict[str, str] = {}
    for path, text in _end_events(chunks, "ListPartsResult"):
        if len(path) == 2 and path[0] == "Part":
            current[path[1]] = text
        elif path == ("Part",):
            parts.append(
                PartInfo(
                    part_number=_to_int(current.get("PartNumber", "")),
                    etag=trim_quotes(current.get("ETag", "")),
                    size=_to_int(current.get("Size", "")),
                    last_modified=_to_time(current.get("LastModified", "")),
                )
            )
            current = {}
        elif len(path) == 1:
            fields[path[0]] = text
    return ListPartsResult(
        bucket=fields.get("Bucket", ""),
        key=fields.get("Key", ""),
        upload_id=fields.get("UploadId", ""),
        parts=tuple(parts),
        is_truncated=_to_bool(fields.get("IsTruncated", "")),
        next_part_number_marker=_to_int(
            fields.get("NextPartNumberMarker", "")
        ),
        max_parts=_to_int(fields.get("MaxParts", "")),
    )


def decode_list_objects_v2(chunks: Chunks) -> ListObjectsPage:
    """Decode one ``<ListBucketResult>`` page (ListObjectsV2)."""
    fields: dict[str, str] = {}
    objects: list[ObjectInfo] = []
    prefixes: list[str] = []
    current: dict[str, str] = {}
    for path, text in _end_events(chunks, "ListBucketResult"):
        if len(path) == 2 and path[0] == "Contents":
            current[path[1]] = text
        elif path == ("Contents",):
            objects.append(
                ObjectInfo(
                    key=current.get("Key", ""),
                    size=_to_int(current.get("Size", "")),
                    etag=trim_quotes(current.get("ETag", "")),
                    last_modified=_to_time(current.get("LastModified", "")),
                    storage_class=current.get("StorageClass", ""),
                )
            )
            current = {}
        elif path == ("CommonPrefixes", "Prefix"):
            prefixes.append(text)
        elif len(path) == 1:
            fields[path[0]] = text
    return ListObjectsPage(
        bucket=fields.get("Name", ""),
        prefix=fields.get("Prefix", ""),
        objects=tuple(objects),
        common_prefixes=tuple(prefixes),
        is_truncated=_to_bool(fields.get("IsTruncated", "")),
        next_continuation_token=fields.get("NextContinuationToken", ""),
        key_count=_to_int(fields.get("KeyCount", ""), len(objects)),
    )


def decode_complete_multipart_upload(
    chunks: Chunks, *, status: int = 200
) -> CompleteMultipartUploadResult:
    """Decode ``<CompleteMultipartUploadResult>``.

    The service can report a failed completion inside a 200 response;
    such an ``<Error>`` document is raised as ``S3ServiceError``.
    """
    fields: dict[str, str] = {}
    for path, text in _end_events(
        chunks, "CompleteMultipartUploadResult", status=status
    ):
        if len(path) == 1:
            fields[path[0]] = text
    return CompleteMultipartUploadResult(
        location=fields.get("Location", ""),
        bucket=fields.get("Bucket", ""),
        key=fields.get("Key", ""),
        etag=trim_quotes(fields.get("ETag", "")),
    )


def decode_list_multipart_uploads(
    chunks: Chunks,
) -> ListMultipartUploadsResult:
    """Decode ``<ListMultipartUploadsResult>``."""
    fields: dict[str, str] = {}
    uploads: list[MultipartUploadInfo] = []
    current: dict[str, str] = {}
    for path, text in _end_events(chunks, "ListMultipartUploadsResult"):
        if len(path) == 2 and path[0] == "Upload":
            current[path[1]] = text
        elif path == ("Upload",):
            uploads.append(
                MultipartUploadInfo(
                    key=current.get("Key", ""),
                    upload_id=current.get("UploadId", ""),
                    initiated=_to_time(current.get("Initiated", "")),
                    storage_class=current.get("StorageClass", ""),
                )
            )
            current = {}
        elif len(path) == 1:
            fields[path[0]] = text
    return ListMultipartUploadsResult(
        bucket=fields.get("Bucket", ""),
        uploads=tuple(uploads),
        is_truncated=_to_bool(fields.get("IsTruncated", "")),
        next_key_marker=fields.get("NextKeyMarker", ""),
        next_upload_id_marker=fields.get("NextUploadIdMarker", ""),
    )


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


def _service_error(
    fields: Mapping[str, str], status: int, headers: httpx.Headers
) -> S3ServiceError:
    return S3ServiceError(
        fields.get("Code", "").strip() or _STATUS_CODES.get(status, "Unknown"),
        fields.get("Message", "").strip(),
        resource=fields.get("Resource", "").strip(),
        request_id=(
            fields.get("RequestId", "").strip()
            or headers.get("x-amz-request-id", "")
        ),
        host_id=(
            fields.get("HostId", "").strip() or headers.get("x-amz-id-2", "")
        ),
        status=status,
        bucket_name=fields.get("BucketName", "").strip(),
        key=fields.get("Key", "").strip(),
    )


def status_error(
    status: int, headers: httpx.Headers | Mapping[str, str], reason: str = ""
) -> ProtocolError:
    """Error synthesized from the HTTP status alone."""
    headers = httpx.Headers(headers)
    code = _STATUS_CODES.get(status, f"HTTP{status}")
    message = f"HTTP {status} {code}"
    if reason:
        message += f" ({reason})"
    return ProtocolError(
        message,
        status=status,
        code=code,
        request_id=headers.get("x-amz-request-id", ""),
        host_id=headers.get("x-amz-id-2", ""),
    )


def decode_error(
    status: int,
    headers: httpx.Headers | Mapping[str, str],
    body: bytes,
) -> S3ServiceError | ProtocolError:
    """Decode an error response into the exception to raise.

    Args:
        status: HTTP status code.
        headers: Response headers (request ids are taken from here when
            the body lacks them).
        body: Buffered (bounded) response body.

    Returns:
        S3ServiceError for an ``<Error>`` document; ProtocolError when
        the body is empty, unparsable, or some other document.
    """
    headers = httpx.Headers(headers)
    if not body.strip():
        return status_error(status, headers)
    fields: dict[str, str] = {}
    try:
        for path, text in _end_events(body, "Error", status=status):
            if len(path) == 1:
                fields[path[0]] = text
    except ProtocolError as e:
        logger.debug("Unparsable error body for HTTP %d: %s", status, e)
        return status_error(status, headers, "unparsable error body")
    if not fields.get("Code"):
        return status_error(status, headers, "error body has no Code")
    return _service_error(fields, status, headers)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


def encode_complete_multipart_upload(parts: Sequence[CompletedPart]) -> bytes:
    """Build the CompleteMultipartUpload request body.

    Parts are written in the order given; callers pass them sorted by
    part number.
    """
    root = ET.Element("CompleteMultipartUpload", xmlns=S3_NAMESPACE)
    for part in parts:
        elem = ET.SubElement(root, "Part")
        ET.SubElement(elem, "PartNumber").text = str(part.part_number)
        ET.SubElement(elem, "ETag").text = f'"{trim_quotes(part.etag)}"'
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)
