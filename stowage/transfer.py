# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Multipart uploads and ranged parallel downloads.

``TransferOrchestrator`` turns a single upload or download into many
requests and runs them on a per-transfer ``ThreadPoolExecutor``.  Each
request goes through the client's ``RequestExecutor``, so retries,
signing and cancellation apply per part or per range.

On failure the orchestrator stops submitting work, cancels the in-flight
requests through a child ``CancelToken`` and waits for them.  An upload
session is then aborted when ``abort_on_failure`` is set.  Caller
cancellation never aborts: the session stays registered for explicit
cleanup.  The original exception is re-raised with a ``TransferProgress``
attached as ``error.transfer`` and as an exception note.
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
from collections.abc import Callable, Iterable, Iterator, Mapping
from concurrent.futures import (
    FIRST_COMPLETED,
    Future,
    ThreadPoolExecutor,
    wait,
)
from functools import partial
from pathlib import Path
from typing import IO, TYPE_CHECKING

from stowage.cancel import CancelToken, check
from stowage.config import ClientConfig
from stowage.errors import (
    CancellationError,
    ChecksumMismatchError,
    ProtocolError,
    RequestTimeoutError,
    StowageError,
    TransferProgress,
    TransportError,
    ValidationError,
)
from stowage.models import (
    CompleteMultipartUploadResult,
    DownloadResult,
    ObjectStat,
    Payload,
    UploadResult,
)
from stowage.multipart import (
    MAX_PARTS,
    MultipartUploadSession,
    PartPlan,
    SessionState,
    plan_parts,
)
from stowage.utils import crc32_base64, crc32_of, trim_quotes


if TYPE_CHECKING:
    from stowage.client import Client


logger = logging.getLogger(__name__)

__all__ = ["Source", "TransferOrchestrator", "plan_parts"]

#: Anything ``upload`` accepts as its source.
Source = bytes | bytearray | memoryview | IO[bytes] | Path

#: Headers that must accompany every part of an SSE-C upload.
_SSE_C_PREFIX = "x-amz-server-side-encryption-customer-"

_PARTIAL_SUFFIX = ".stowage-partial"

# Longest the pool loop waits for a part before rechecking cancellation
_REAP_INTERVAL = 0.05


class _Tally:
    """Thread-safe progress counters for a download."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.completed = 0
        self.bytes = 0
        self.failed: int | None = None

    def add(self, size: int) -> None:
        with self._lock:
            self.completed += 1
            self.bytes += size

    def fail(self, number: int) -> None:
        with self._lock:
            if self.failed is None:
                self.failed = number


def _attach(error: StowageError, progress: TransferProgress) -> None:
    error.transfer = progress
    error.add_note(progress.describe())


def _read_exactly(fileobj: IO[bytes], size: int) -> bytes:
    """Read up to ``size`` bytes, stopping early only at end of stream."""
    buf = bytearray()
    try:
        while len(buf) < size:
            chunk = fileobj.read(size - len(buf))
            if not chunk:
                break
            buf += chunk
    except OSError as e:
        raise TransportError(f"error reading upload source: {e}") from e
    return bytes(buf)


def _file_chunks(path: Path, read_size: int = 1024 * 1024) -> Iterator[bytes]:
    with path.open("rb") as f:
        while chunk := f.read(read_size):
            yield chunk


def _plan_windows(size: int, range_size: int) -> list[PartPlan]:
    """Disjoint byte windows covering ``size`` bytes."""
    return [
        PartPlan(number, offset, min(range_size, size - offset))
        for number, offset in enumerate(range(0, size, range_size), start=1)
    ]


class TransferOrchestrator:
    """Runs uploads and downloads on behalf of a ``Client``.

    Args:
        client: Supplies the single-request operations (put, upload part,
            complete, abort, list parts, stat, get).
        config: Supplies part size, threshold, concurrency, range size,
            retry policy and ``abort_on_failure``.
    """

    def __init__(self, client: Client, config: ClientConfig) -> None:
        self._client = client
        self._config = config

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def upload(
        self,
        bucket: str,
        key: str,
        source: Source,
        *,
        size: int | None = None,
        headers: Mapping[str, str] | None = None,
        cancel: CancelToken | None = None,
    ) -> UploadResult:
        """Upload ``source`` as one object.

        Sources at or below ``multipart_threshold`` go up in a single PUT;
        larger or unknown-size sources use a multipart upload.

        Args:
            bucket: Target bucket.
            key: Target object key.
            source: Bytes, a binary file object or a ``Path``.
            size: Source size in bytes.  Determined automatically for bytes,
                paths and seekable file objects.
            headers: Extra object headers (content type, metadata, SSE).
            cancel: Token that stops the transfer.

        Returns:
            The final ETag, size and (for multipart) upload id.

        Raises:
            ValidationError: For bad sizes or parameters, before any I/O.
            CancellationError: If ``cancel`` fires.  The session is not
                aborted.
            StowageError: The first part failure, with ``error.transfer``
                describing the upload.
        """
        check(cancel)
        headers = dict(headers or {})
        if isinstance(source, (bytes, bytearray, memoryview)):
            data = bytes(source)
            if size is not None and size != len(data):
                raise ValidationError(
                    f"size {size} does not match the {len(data)} bytes given"
                )
            return self._upload_known(
                bucket, key, data, len(data), headers, cancel
            )
        if isinstance(source, Path):
            total = size if size is not None else source.stat().st_size
            return self._upload_known(
                bucket, key, source, total, headers, cancel
            )

        if size is None and source.seekable():
            start = source.tell()
            size = source.seek(0, os.SEEK_END) - start
            source.seek(start)
        if size is not None:
            return self._upload_known(
                bucket, key, source, size, headers, cancel
            )
        return self._upload_unknown(bucket, key, source, headers, cancel)

    def _upload_known(
        self,
        bucket: str,
        key: str,
        source: bytes | Path | IO[bytes],
        total: int,
        headers: dict[str, str],
        cancel: CancelToken | None,
    ) -> UploadResult:
        if total < 0:
            raise ValidationError(f"object size cannot be negative: {total}")
        if total <= self._config.multipart_threshold:
            if isinstance(source, bytes):
                payload = Payload.from_bytes(source)
            elif isinstance(source, Path):
                payload = Payload.from_file(source, 0, total)
            else:
                payload = Payload.from_fileobj(source, total)
            return self._put_single(bucket, key, payload, headers, cancel)

        plans = plan_parts(total, self._config.part_size)
        logger.debug(
            "Uploading %d bytes to s3://%s/%s in %d parts of %d bytes",
            total,
            bucket,
            key,
            len(plans),
            plans[0].size,
        )
        return self._upload_multipart(
            bucket, key, self._planned_parts(source, plans), headers, cancel
        )

    def _planned_parts(
        self, source: bytes | Path | IO[bytes], plans: list[PartPlan]
    ) -> Iterator[tuple[int, Payload]]:
        for plan in plans:
            if isinstance(source, bytes):
                end = plan.offset + plan.size
                payload = Payload.from_bytes(source[plan.offset:end])
            elif isinstance(source, Path):
                payload = Payload.from_file(source, plan.offset, plan.size)
            else:
                data = _read_exactly(source, plan.size)
                if len(data) != plan.size:
                    raise TransportError(
                        f"upload source ended {plan.size - len(data)} bytes "
                        f"early in part {plan.part_number}"
                    )
                payload = Payload.from_bytes(data)
            yield plan.part_number, payload

    def _upload_unknown(
        self,
        bucket: str,
        key: str,
        source: IO[bytes],
        headers: dict[str, str],
        cancel: CancelToken | None,
    ) -> UploadResult:
        part_size = self._config.part_size
        first = _read_exactly(source, part_size)
        if len(first) < part_size:
            return self._put_single(
                bucket, key, Payload.from_bytes(first), headers, cancel
            )

        def pieces() -> Iterator[tuple[int, Payload]]:
            yield 1, Payload.from_bytes(first)
            number = 1
            while data := _read_exactly(source, part_size):
                number += 1
                if number > MAX_PARTS:
                    raise ValidationError(
                        f"stream needs more than {MAX_PARTS} parts of "
                        f"{part_size} bytes; give its size or raise "
                        f"part_size"
                    )
                yield number, Payload.from_bytes(data)

        return self._upload_multipart(bucket, key, pieces(), headers, cancel)

    def _put_single(
        self,
        bucket: str,
        key: str,
        payload: Payload,
        headers: dict[str, str],
        cancel: CancelToken | None,
    ) -> UploadResult:
        result = self._client.put_object(
            bucket, key, payload, headers=headers, cancel=cancel
        )
        return UploadResult(
            bucket=bucket,
            key=key,
            etag=result.etag,
            size=payload.length or 0,
            version_id=result.version_id,
        )

    def _upload_multipart(
        self,
        bucket: str,
        key: str,
        parts: Iterable[tuple[int, Payload]],
        headers: dict[str, str],
        cancel: CancelToken | None,
    ) -> UploadResult:
        part_headers = {
            name: value
            for name, value in headers.items()
            if name.lower().startswith(_SSE_C_PREFIX)
        }
        session = self._client.create_multipart_upload(
            bucket, key, headers=headers, cancel=cancel
        )
        token = cancel.child() if cancel is not None else CancelToken()

        def on_failure(number: int, error: BaseException) -> None:
            session.record_failure(number)
            logger.warning(
                "Upload %s: part %d failed: %s",
                session.upload_id,
                number,
                error,
            )

        jobs = (
            (
                number,
                partial(
                    self._upload_part, session, number, payload, part_headers
                ),
            )
            for number, payload in parts
        )
        with self._client.sessions.claim(session.upload_id):
            try:
                count = self._run_bounded(jobs, token, on_failure)
                result = self.complete(
                    session, range(1, count + 1), cancel=cancel
                )
            except StowageError as e:
                aborted = False
                cancelled = isinstance(e, CancellationError) or (
                    cancel is not None and cancel.cancelled
                )
                if cancelled:
                    logger.info(
                        "Upload %s cancelled; session left open",
                        session.upload_id,
                    )
                elif self._config.abort_on_failure:
                    aborted = self._abort_after_failure(session)
                failed = session.failed_parts
                _attach(
                    e,
                    TransferProgress(
                        bucket=bucket,
                        key=key,
                        upload_id=session.upload_id,
                        failed_part=min(failed) if failed else None,
                        parts_completed=len(session.parts),
                        bytes_completed=session.bytes_uploaded,
                        aborted=aborted,
                    ),
                )
                raise

        return UploadResult(
            bucket=bucket,
            key=key,
            etag=result.etag,
            size=session.bytes_uploaded,
            version_id=result.version_id,
            upload_id=session.upload_id,
            parts=count,
        )

    def _upload_part(
        self,
        session: MultipartUploadSession,
        number: int,
        payload: Payload,
        headers: dict[str, str],
        token: CancelToken,
    ) -> None:
        part = self._client.upload_part(
            session.bucket,
            session.key,
            session.upload_id,
            number,
            payload,
            headers=headers,
            cancel=token,
        )
        session.record_part(part)

    def _abort_after_failure(self, session: MultipartUploadSession) -> bool:
        try:
            self.abort(session)
        except StowageError as e:
            logger.error(
                "Failed to abort upload %s after a failed transfer: %s",
                session.upload_id,
                e,
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Session completion
    # ------------------------------------------------------------------

    def complete(
        self,
        session: MultipartUploadSession,
        expected_parts: Iterable[int] | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> CompleteMultipartUploadResult:
        """Send CompleteMultipartUpload for ``session``.

        The request itself is never retried by the executor.  With
        ``retry_complete_multipart`` enabled a retryable failure is retried
        only once ListParts shows the upload still exists, which proves the
        failed attempt did not complete it.

        Raises:
            ValidationError: If parts are missing or undersized (before any
                request is sent).
            SessionStateError: If the session is not open.
        """
        session.check_complete(expected_parts)
        policy = self._config.retry
        attempt = 0
        while True:
            attempt += 1
            session.transition(SessionState.COMPLETING)
            try:
                result = self._client.complete_multipart_upload(
                    session.bucket,
                    session.key,
                    session.upload_id,
                    session.parts,
                    cancel=cancel,
                )
                break
            except StowageError as e:
                session.transition(SessionState.INITIATED)
                if attempt >= policy.max_attempts or not self._still_open(
                    session, e, cancel
                ):
                    raise
                delay = policy.delay(attempt)
                logger.warning(
                    "Completing upload %s failed (%s); upload still open, "
                    "retrying in %.2fs",
                    session.upload_id,
                    e,
                    delay,
                )
                (cancel or CancelToken()).wait(delay)
                check(cancel)

        session.transition(SessionState.COMPLETED)
        logger.info(
            "Completed upload %s to s3://%s/%s (%d parts)",
            session.upload_id,
            session.bucket,
            session.key,
            len(session.parts),
        )
        return result

    def _still_open(
        self,
        session: MultipartUploadSession,
        error: StowageError,
        cancel: CancelToken | None,
    ) -> bool:
        policy = self._config.retry
        if not policy.retry_complete_multipart:
            return False
        if not policy.is_retryable_error(error):
            return False
        try:
            self._client.list_parts(
                session.bucket, session.key, session.upload_id, cancel=cancel
            )
        except StowageError as e:
            logger.warning(
                "Cannot confirm upload %s is still open (%s); not retrying "
                "completion",
                session.upload_id,
                e,
            )
            return False
        return True

    def abort(
        self,
        session: MultipartUploadSession,
        *,
        cancel: CancelToken | None = None,
    ) -> None:
        """Abort ``session`` on the service.

        A failed abort returns the session to INITIATED so it can be
        retried.
        """
        session.transition(SessionState.ABORTING)
        try:
            self._client.abort_multipart_upload(
                session.bucket, session.key, session.upload_id, cancel=cancel
            )
        except StowageError:
            session.transition(SessionState.INITIATED)
            raise
        session.transition(SessionState.ABORTED)
        logger.info(
            "Aborted upload %s to s3://%s/%s",
            session.upload_id,
            session.bucket,
            session.key,
        )

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def download(
        self,
        bucket: str,
        key: str,
        destination: Path | IO[bytes],
        *,
        range_size: int | None = None,
        version_id: str | None = None,
        cancel: CancelToken | None = None,
    ) -> DownloadResult:
        """Download an object, fetching large ones as parallel ranges.

        A ``Path`` destination is written through a sibling temporary file
        that replaces it only after the size and checksums check out.  A
        file object receives the ranges in order.

        Raises:
            ProtocolError: If a range or the whole object has the wrong
                length.
            ChecksumMismatchError: If the MD5 ETag or full-object CRC32 does
                not match the downloaded bytes.
            CancellationError: If ``cancel`` fires.
        """
        range_size = range_size or self._config.download_range_size
        if range_size <= 0:
            raise ValidationError(f"range size must be positive: {range_size}")
        stat = self._client.stat_object(
            bucket,
            key,
            version_id=version_id,
            checksum_mode=True,
            cancel=cancel,
        )
        windows = _plan_windows(stat.size, range_size)
        tally = _Tally()
        try:
            if isinstance(destination, Path):
                verified = self._download_to_path(
                    stat, windows, destination, tally, cancel
                )
            else:
                verified = self._download_to_stream(
                    stat, windows, destination, tally, cancel
                )
        except StowageError as e:
            _attach(
                e,
                TransferProgress(
                    bucket=bucket,
                    key=key,
                    failed_part=tally.failed,
                    parts_completed=tally.completed,
                    bytes_completed=tally.bytes,
                ),
            )
            raise

        logger.debug(
            "Downloaded s3://%s/%s (%d bytes, %d range(s), verified=%s)",
            bucket,
            key,
            stat.size,
            len(windows),
            verified or "none",
        )
        return DownloadResult(
            bucket=bucket,
            key=key,
            size=stat.size,
            etag=stat.etag,
            ranges=len(windows),
            verified=verified,
            version_id=stat.version_id,
        )

    def _download_to_path(
        self,
        stat: ObjectStat,
        windows: list[PartPlan],
        destination: Path,
        tally: _Tally,
        cancel: CancelToken | None,
    ) -> str:
        partial_path = destination.with_name(
            destination.name + _PARTIAL_SUFFIX
        )
        ranged = len(windows) > 1

        def write_window(window: PartPlan, token: CancelToken) -> None:
            with partial_path.open("r+b") as f:
                f.seek(window.offset)
                self._fetch_window(
                    stat,
                    window,
                    ranged,
                    f.write,
                    partial(f.seek, window.offset),
                    token,
                )
            tally.add(window.size)

        def on_failure(number: int, error: BaseException) -> None:
            tally.fail(number)
            logger.warning(
                "Download of s3://%s/%s: range %d failed: %s",
                stat.bucket,
                stat.key,
                number,
                error,
            )

        token = cancel.child() if cancel is not None else CancelToken()
        try:
            with partial_path.open("wb") as f:
                f.truncate(stat.size)
            self._run_bounded(
                ((w.part_number, partial(write_window, w)) for w in windows),
                token,
                on_failure,
            )
            written = partial_path.stat().st_size
            if written != stat.size:
                raise ProtocolError(
                    f"downloaded {written} bytes, expected {stat.size}"
                )
            verified = self._verify(stat, _file_chunks(partial_path))
            os.replace(partial_path, destination)
        except BaseException:
            partial_path.unlink(missing_ok=True)
            raise
        return verified

    def _download_to_stream(
        self,
        stat: ObjectStat,
        windows: list[PartPlan],
        destination: IO[bytes],
        tally: _Tally,
        cancel: CancelToken | None,
    ) -> str:
        ranged = len(windows) > 1
        chunks: list[bytes] = []
        md5 = hashlib.md5(usedforsecurity=False)
        crc = 0
        total = 0
        for window in windows:
            check(cancel)
            chunks.clear()
            try:
                self._fetch_window(
                    stat, window, ranged, chunks.append, chunks.clear, cancel
                )
            except StowageError:
                tally.fail(window.part_number)
                raise
            for chunk in chunks:
                destination.write(chunk)
                md5.update(chunk)
                crc = crc32_of(chunk, crc)
                total += len(chunk)
            tally.add(window.size)
        if total != stat.size:
            raise ProtocolError(
                f"downloaded {total} bytes, expected {stat.size}"
            )
        return self._compare(stat, md5.hexdigest(), crc32_base64(crc))

    def _fetch_window(
        self,
        stat: ObjectStat,
        window: PartPlan,
        ranged: bool,
        write: Callable[[bytes], object],
        rewind: Callable[[], object],
        cancel: CancelToken | None,
    ) -> None:
        """GET one window and hand its bytes to ``write``.

        Body-read failures (after the response started) are retried here
        per the retry policy, calling ``rewind`` to discard the partial
        window first.  Request-level retries happen in the executor.
        """
        policy = self._config.retry
        attempt = 0
        while True:
            attempt += 1
            try:
                received = self._stream_window(
                    stat, window, ranged, write, cancel
                )
            except (TransportError, RequestTimeoutError) as e:
                if not policy.should_retry(e, attempt, idempotent=True):
                    raise
                logger.warning(
                    "Range %d of s3://%s/%s interrupted (attempt %d/%d): %s",
                    window.part_number,
                    stat.bucket,
                    stat.key,
                    attempt,
                    policy.max_attempts,
                    e,
                )
                (cancel or CancelToken()).wait(policy.delay(attempt))
                check(cancel)
                rewind()
                continue
            if received != window.size:
                raise ProtocolError(
                    f"range {window.part_number}: expected {window.size} "
                    f"bytes, received {received}"
                )
            return

    def _stream_window(
        self,
        stat: ObjectStat,
        window: PartPlan,
        ranged: bool,
        write: Callable[[bytes], object],
        cancel: CancelToken | None,
    ) -> int:
        response = self._client.get_object(
            stat.bucket,
            stat.key,
            offset=window.offset if ranged else 0,
            length=window.size if ranged else None,
            version_id=stat.version_id or None,
            headers={"If-Match": f'"{stat.etag}"'},
            cancel=cancel,
        )
        received = 0
        with response:
            for chunk in response.iter_bytes():
                received += len(chunk)
                if received > window.size:
                    raise ProtocolError(
                        f"range {window.part_number}: service sent more "
                        f"than {window.size} bytes"
                    )
                write(chunk)
        return received

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
        """Fetch ``length`` bytes starting at ``offset`` into memory.

        Raises:
            ValidationError: If the window is empty or negative.
            ProtocolError: If the service returns a different length.
        """
        if offset < 0 or length <= 0:
            raise ValidationError(
                f"invalid range: offset={offset}, length={length}"
            )
        with self._client.get_object(
            bucket,
            key,
            offset=offset,
            length=length,
            version_id=version_id,
            cancel=cancel,
        ) as response:
            data = response.read()
        if len(data) != length:
            raise ProtocolError(
                f"range {offset}+{length} of s3://{bucket}/{key}: received "
                f"{len(data)} bytes"
            )
        return data

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def _verify(self, stat: ObjectStat, chunks: Iterable[bytes]) -> str:
        if not stat.has_plain_md5_etag and not stat.full_object_crc32:
            return ""
        md5 = hashlib.md5(usedforsecurity=False)
        crc = 0
        for chunk in chunks:
            md5.update(chunk)
            crc = crc32_of(chunk, crc)
        return self._compare(stat, md5.hexdigest(), crc32_base64(crc))

    @staticmethod
    def _compare(stat: ObjectStat, md5_hex: str, crc32_b64: str) -> str:
        verified: list[str] = []
        if stat.has_plain_md5_etag:
            expected = trim_quotes(stat.etag).lower()
            if md5_hex != expected:
                raise ChecksumMismatchError("md5", expected, md5_hex)
            verified.append("md5")
        if expected_crc := stat.full_object_crc32:
            if crc32_b64 != expected_crc:
                raise ChecksumMismatchError("crc32", expected_crc, crc32_b64)
            verified.append("crc32")
        return "+".join(verified)

    # ------------------------------------------------------------------
    # Bounded worker pool
    # ------------------------------------------------------------------

    def _run_bounded(
        self,
        jobs: Iterable[tuple[int, Callable[[CancelToken], None]]],
        token: CancelToken,
        on_failure: Callable[[int, BaseException], None],
    ) -> int:
        """Run ``jobs`` with at most ``concurrency`` in flight.

        ``jobs`` is consumed lazily on the calling thread, so a generator
        that reads the source only holds ``concurrency`` pieces in memory.
        The first failure cancels ``token``, drains the pool and is
        re-raised.  A cancellation is raised as soon as it is seen; parts
        still blocked in the transport are left to finish on their own.

        Returns:
            The number of jobs run.
        """
        limit = self._config.concurrency
        in_flight: dict[Future[None], int] = {}
        submitted = 0
        pool = ThreadPoolExecutor(
            max_workers=limit, thread_name_prefix="stowage-transfer"
        )
        try:
            for number, job in jobs:
                token.raise_if_cancelled()
                while len(in_flight) >= limit:
                    self._reap(in_flight, token, on_failure)
                token.raise_if_cancelled()
                in_flight[pool.submit(job, token)] = number
                submitted += 1
            while in_flight:
                self._reap(in_flight, token, on_failure)
        except BaseException as e:
            token.cancel("transfer stopped")
            for future in in_flight:
                future.cancel()
            if not isinstance(e, CancellationError):
                # Parts still sending must settle before an abort
                wait(in_flight)
            raise
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return submitted

    @staticmethod
    def _reap(
        in_flight: dict[Future[None], int],
        token: CancelToken,
        on_failure: Callable[[int, BaseException], None],
    ) -> None:
        while True:
            done, _ = wait(
                in_flight, timeout=_REAP_INTERVAL, return_when=FIRST_COMPLETED
            )
            if done:
                break
            token.raise_if_cancelled()
        for future in sorted(done, key=in_flight.__getitem__):
            number = in_flight.pop(future)
            error = future.exception()
            if error is not None:
                on_failure(number, error)
                raise error
