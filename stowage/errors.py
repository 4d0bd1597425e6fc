# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Exception hierarchy for the object-storage client.

Every failure raised by the client derives from ``StowageError``.  The
executor retries some of them (see ``stowage.retry.RetryPolicy``); once
retries are exhausted the original exception is raised unchanged, so
diagnostic fields (service error code, request id, HTTP status) survive
all the way to the caller.

Transfer-level context is attached to the original exception rather than
wrapping it: the orchestrator sets ``error.transfer`` to a
``TransferProgress`` and adds an exception note.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TransferProgress:
    """Where a multipart transfer was when it failed.

    Attributes:
        bucket: Target bucket.
        key: Target object key.
        upload_id: Multipart upload ID (empty for downloads).
        failed_part: Part (or range) number that failed, if known.
        parts_completed: Number of parts that finished successfully.
        bytes_completed: Sum of the sizes of completed parts.
        aborted: Whether the session was aborted after the failure.
    """

    bucket: str
    key: str
    upload_id: str = ""
    failed_part: int | None = None
    parts_completed: int = 0
    bytes_completed: int = 0
    aborted: bool = False

    def describe(self) -> str:
        """One-line summary used as an exception note."""
        where = f"s3://{self.bucket}/{self.key}"
        if self.upload_id:
            where += f" (upload {self.upload_id})"
        part = (
            f"part {self.failed_part}" if self.failed_part else "transfer"
        )
        state = "session aborted" if self.aborted else "session left as-is"
        if not self.upload_id:
            state = "no session"
        return (
            f"{where}: {part} failed after {self.parts_completed} part(s), "
            f"{self.bytes_completed} bytes completed; {state}"
        )


class StowageError(Exception):
    """Base exception for all client errors."""

    #: Set by the transfer orchestrator when the error ended a transfer.
    transfer: TransferProgress | None = None


class CredentialError(StowageError):
    """No usable credentials could be produced."""


class SignatureError(StowageError):
    """The request could not be canonicalized or signed."""


class TransportError(StowageError):
    """Connection-level or I/O failure while talking to the service."""


class RequestTimeoutError(StowageError):
    """The request exceeded its deadline."""


class CancellationError(StowageError):
    """The caller cancelled the operation."""


class ValidationError(StowageError):
    """Caller-supplied parameters violate protocol constraints.

    Always raised before any network call is made.
    """


class SessionStateError(ValidationError):
    """Illegal multipart upload session transition."""


class ProtocolError(StowageError):
    """The service response had an unexpected shape.

    Also used for error responses whose body is absent or unparsable; in
    that case ``code`` is synthesized from the HTTP status.

    Attributes:
        status: HTTP status code (0 when not applicable).
        code: Error code token (synthesized from the status if needed).
        request_id: Value of the ``x-amz-request-id`` response header.
        host_id: Value of the ``x-amz-id-2`` response header.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int = 0,
        code: str = "",
        request_id: str = "",
        host_id: str = "",
    ) -> None:
        self.message = message
        self.status = status
        self.code = code
        self.request_id = request_id
        self.host_id = host_id
        super().__init__(message)


class ChecksumMismatchError(ProtocolError):
    """Downloaded content does not match the checksum the service reported."""

    def __init__(self, algorithm: str, expected: str, actual: str) -> None:
        self.algorithm = algorithm
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{algorithm} mismatch: expected {expected}, got {actual}"
        )


class S3ServiceError(StowageError):
    """The service returned a structured ``<Error>`` document.

    Attributes:
        code: Error code token (e.g. ``AccessDenied``).
        message: Human-readable message from the service.
        resource: Resource path the error refers to.
        request_id: Service request ID.
        host_id: Service host ID.
        status: HTTP status code of the response.
        bucket_name: Bucket named in the error document, if any.
        key: Object key named in the error document, if any.
    """

    def __init__(
        self,
        code: str,
        message: str,
        *,
        resource: str = "",
        request_id: str = "",
        host_id: str = "",
        status: int = 0,
        bucket_name: str = "",
        key: str = "",
    ) -> None:
        self.code = code
        self.message = message
        self.resource = resource
        self.request_id = request_id
        self.host_id = host_id
        self.status = status
        self.bucket_name = bucket_name
        self.key = key
        super().__init__(self._format())

    def _format(self) -> str:
        parts = [f"{self.code}: {self.message}"]
        if self.resource:
            parts.append(f"resource={self.resource}")
        if self.request_id:
            parts.append(f"request_id={self.request_id}")
        if self.host_id:
            parts.append(f"host_id={self.host_id}")
        if self.status:
            parts.append(f"status={self.status}")
        return ", ".join(parts)


__all__ = [
    "CancellationError",
    "ChecksumMismatchError",
    "CredentialError",
    "ProtocolError",
    "RequestTimeoutError",
    "S3ServiceError",
    "SessionStateError",
    "SignatureError",
    "StowageError",
    "TransferProgress",
    "TransportError",
    "ValidationError",
]
