# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for stowage/transfer.py against the in-memory service."""

import io
import threading
import time
import xml.etree.ElementTree as ET
from dataclasses import replace
from pathlib import Path

import pytest

from stowage.cancel import CancelToken
from stowage.client import Client
from stowage.config import ClientConfig
from stowage.errors import (
    CancellationError,
    ChecksumMismatchError,
    ProtocolError,
    S3ServiceError,
    ValidationError,
)
from stowage.multipart import MiB
from stowage.retry import RetryPolicy
from stowage.transport import RawResponse

from tests.fakes import (
    S3_NS,
    FakeS3,
    FakeTransport,
    RecordedRequest,
    error_response,
    md5_hex,
)


DATA = bytes(range(256)) * (12 * MiB // 256)


class _Unseekable(io.BytesIO):
    def seekable(self) -> bool:
        return False


def _part_puts(transport: FakeTransport) -> list[RecordedRequest]:
    return transport.matching("PUT", "partNumber")


def _completed_numbers(request: RecordedRequest) -> list[int]:
    root = ET.fromstring(request.body)
    return [
        int(p.findtext(f"{{{S3_NS}}}PartNumber") or 0)
        for p in root.findall(f"{{{S3_NS}}}Part")
    ]


class TestUpload:
    """Tests for single and multipart uploads."""

    def test_small_object_single_put(
        self, client: Client, transport: FakeTransport, fake_s3: FakeS3
    ) -> None:
        result = client.upload_object("bucket", "small", b"hello")
        assert result.upload_id == ""
        assert result.parts == 0
        assert result.size == 5
        assert result.etag == md5_hex(b"hello")
        assert fake_s3.objects["bucket", "small"] == b"hello"
        assert transport.matching("POST") == []

    def test_threshold_is_inclusive(
        self, client: Client, transport: FakeTransport
    ) -> None:
        result = client.upload_object("bucket", "edge", DATA[: 5 * MiB])
        assert result.parts == 0
        assert transport.matching("POST") == []

    def test_bytes_multipart(
        self, client: Client, transport: FakeTransport, fake_s3: FakeS3
    ) -> None:
        result = client.upload_object(
            "bucket", "big", DATA, metadata={"color": "blue"}
        )
        assert result.parts == 3
        assert result.size == len(DATA)
        assert result.etag.endswith("-3")
        assert fake_s3.objects["bucket", "big"] == DATA
        sizes = sorted(
            (int(r.query["partNumber"]), len(r.decoded_body))
            for r in _part_puts(transport)
        )
        assert sizes == [(1, 5 * MiB), (2, 5 * MiB), (3, 2 * MiB)]
        initiate = transport.matching("POST", "uploads")[0]
        assert initiate.headers["x-amz-meta-color"] == "blue"
        assert len(client.sessions) == 0

    def test_path_source_streams_parts(
        self,
        client: Client,
        transport: FakeTransport,
        fake_s3: FakeS3,
        tmp_path: Path,
    ) -> None:
        path = tmp_path / "source.bin"
        path.write_bytes(DATA[: 11 * MiB])
        result = client.upload_file("bucket", "file", path)
        assert result.parts == 3
        assert fake_s3.objects["bucket", "file"] == DATA[: 11 * MiB]
        for request in _part_puts(transport):
            assert "aws-chunked" in request.headers["content-encoding"]

    def test_unseekable_stream_of_unknown_size(
        self, client: Client, transport: FakeTransport, fake_s3: FakeS3
    ) -> None:
        result = client.upload_object("bucket", "stream", _Unseekable(DATA))
        assert result.parts == 3
        assert result.size == len(DATA)
        assert fake_s3.objects["bucket", "stream"] == DATA
        sizes = sorted(
            (int(r.query["partNumber"]), len(r.decoded_body))
            for r in _part_puts(transport)
        )
        assert sizes == [(1, 5 * MiB), (2, 5 * MiB), (3, 2 * MiB)]

    def test_short_unknown_stream_uses_single_put(
        self, client: Client, transport: FakeTransport
    ) -> None:
        result = client.upload_object("bucket", "s", _Unseekable(b"tiny"))
        assert result.parts == 0
        assert transport.matching("POST") == []

    def test_seekable_stream_sized_from_position(
        self, client: Client, fake_s3: FakeS3
    ) -> None:
        source = io.BytesIO(b"skip" + b"payload")
        source.seek(4)
        result = client.upload_object("bucket", "pos", source)
        assert result.size == 7
        assert fake_s3.objects["bucket", "pos"] == b"payload"

    def test_size_mismatch(self, client: Client) -> None:
        with pytest.raises(ValidationError, match="does not match"):
            client.upload_object("bucket", "k", b"abc", size=4)

    def test_parts_completed_out_of_order(
        self, client: Client, transport: FakeTransport, fake_s3: FakeS3
    ) -> None:
        third_started = threading.Event()
        finished: list[int] = []

        def handler(request: RecordedRequest) -> RawResponse:
            number = request.query.get("partNumber")
            if number == "1":
                # Part 3 can only start once part 2 has finished
                assert third_started.wait(10)
            elif number == "3":
                third_started.set()
            reply = fake_s3(request)
            if number:
                finished.append(int(number))
            return reply

        transport.handler = handler
        result = client.upload_object("bucket", "ooo", DATA)
        assert finished[0] == 2
        assert sorted(finished) == [1, 2, 3]
        complete = transport.matching("POST", "uploadId")[0]
        assert _completed_numbers(complete) == [1, 2, 3]
        assert result.parts == 3
        assert fake_s3.objects["bucket", "ooo"] == DATA

    def test_part_failure_aborts_upload(
        self, client: Client, transport: FakeTransport, fake_s3: FakeS3
    ) -> None:
        def fail(request: RecordedRequest) -> RawResponse | None:
            if request.query.get("partNumber") == "2":
                return error_response(500, "InternalError")
            return None

        fake_s3.fail = fail
        with pytest.raises(S3ServiceError) as excinfo:
            client.upload_object("bucket", "broken", DATA)
        error = excinfo.value
        part_two = [
            r for r in _part_puts(transport) if r.query["partNumber"] == "2"
        ]
        assert len(part_two) == 3
        progress = error.transfer
        assert progress is not None
        assert progress.failed_part == 2
        assert progress.aborted is True
        assert progress.upload_id == "upload-1"
        assert "part 2 failed" in "\n".join(error.__notes__)
        assert len(transport.matching("DELETE", "uploadId")) == 1
        assert fake_s3.uploads == {}
        assert transport.matching("POST", "uploadId") == []
        assert len(client.sessions) == 0

    def test_part_failure_without_abort(
        self,
        config: ClientConfig,
        transport: FakeTransport,
        fake_s3: FakeS3,
    ) -> None:
        client = Client(
            replace(config, abort_on_failure=False), transport=transport
        )
        fake_s3.fail = lambda r: (
            error_response(403, "AccessDenied")
            if r.query.get("partNumber") == "1"
            else None
        )
        with pytest.raises(S3ServiceError) as excinfo:
            client.upload_object("bucket", "kept", DATA)
        assert excinfo.value.transfer is not None
        assert excinfo.value.transfer.aborted is False
        assert transport.matching("DELETE", "uploadId") == []
        assert "upload-1" in fake_s3.uploads
        assert "upload-1" in client.sessions

    def test_cancellation_leaves_session_open(
        self,
        config: ClientConfig,
        transport: FakeTransport,
        fake_s3: FakeS3,
    ) -> None:
        client = Client(replace(config, concurrency=1), transport=transport)
        token = CancelToken()

        def cancel_on_first_part(request: RecordedRequest) -> None:
            if request.query.get("partNumber") == "1":
                token.cancel("stop")

        transport.on_send = cancel_on_first_part
        with pytest.raises(CancellationError) as excinfo:
            client.upload_object("bucket", "cancelled", DATA, cancel=token)
        numbers = [r.query["partNumber"] for r in _part_puts(transport)]
        assert numbers == ["1"]
        assert transport.matching("DELETE", "uploadId") == []
        assert transport.matching("POST", "uploadId") == []
        assert excinfo.value.transfer is not None
        assert excinfo.value.transfer.aborted is False
        assert "upload-1" in client.sessions
        assert "upload-1" in fake_s3.uploads

    def test_cancellation_does_not_wait_for_blocked_parts(
        self, client: Client, transport: FakeTransport
    ) -> None:
        token = CancelToken()
        release = threading.Event()

        def block_parts(request: RecordedRequest) -> None:
            if "partNumber" in request.query:
                token.cancel("stop")
                release.wait(10)

        transport.on_send = block_parts
        started = time.monotonic()
        try:
            with pytest.raises(CancellationError) as excinfo:
                client.upload_object("bucket", "slow", DATA, cancel=token)
            elapsed = time.monotonic() - started
            assert not release.is_set()
            assert elapsed < 2.0
            assert transport.matching("DELETE", "uploadId") == []
            assert transport.matching("POST", "uploadId") == []
            assert excinfo.value.transfer is not None
            assert excinfo.value.transfer.aborted is False
        finally:
            release.set()

    def test_cancelled_before_start(
        self, client: Client, transport: FakeTransport
    ) -> None:
        token = CancelToken()
        token.cancel()
        with pytest.raises(CancellationError):
            client.upload_object("bucket", "k", DATA, cancel=token)
        assert transport.requests == []


class TestComplete:
    """Tests for completion retry."""

    @staticmethod
    def _fail_first_complete(fake_s3: FakeS3) -> None:
        calls = {"n": 0}

        def fail(request: RecordedRequest) -> RawResponse | None:
            if request.method == "POST" and "uploadId" in request.query:
                calls["n"] += 1
                if calls["n"] == 1:
                    return error_response(500, "InternalError")
            return None

        fake_s3.fail = fail

    def test_retried_when_upload_still_open(
        self,
        config: ClientConfig,
        transport: FakeTransport,
        fake_s3: FakeS3,
    ) -> None:
        policy = RetryPolicy(
            max_attempts=3,
            base_delay=0.0,
            max_delay=0.0,
            retry_complete_multipart=True,
        )
        client = Client(replace(config, retry=policy), transport=transport)
        self._fail_first_complete(fake_s3)
        result = client.upload_object("bucket", "retry", DATA)
        assert result.parts == 3
        assert len(transport.matching("POST", "uploadId")) == 2
        assert len(transport.matching("GET", "uploadId")) == 1
        assert fake_s3.objects["bucket", "retry"] == DATA

    def test_not_retried_by_default(
        self, client: Client, transport: FakeTransport, fake_s3: FakeS3
    ) -> None:
        self._fail_first_complete(fake_s3)
        with pytest.raises(S3ServiceError) as excinfo:
            client.upload_object("bucket", "once", DATA)
        assert len(transport.matching("POST", "uploadId")) == 1
        assert transport.matching("GET", "uploadId") == []
        assert excinfo.value.transfer is not None
        assert excinfo.value.transfer.aborted is True
        assert excinfo.value.transfer.parts_completed == 3


class TestDownload:
    """Tests for ranged parallel downloads."""

    def test_ranged_download_to_path(
        self,
        client: Client,
        transport: FakeTransport,
        fake_s3: FakeS3,
        tmp_path: Path,
    ) -> None:
        fake_s3.put("bucket", "data", b"0123456789ab")
        target = tmp_path / "out.bin"
        result = client.download_file(
            "bucket", "data", target, range_size=5
        )
        assert target.read_bytes() == b"0123456789ab"
        assert result.size == 12
        assert result.ranges == 3
        assert result.verified == "md5"
        ranges = sorted(
            r.headers["range"] for r in transport.matching("GET")
        )
        assert ranges == ["bytes=0-4", "bytes=10-11", "bytes=5-9"]
        etag = md5_hex(b"0123456789ab")
        for request in transport.matching("GET"):
            assert request.headers["if-match"] == f'"{etag}"'
        assert not (tmp_path / "out.bin.stowage-partial").exists()

    def test_single_window_has_no_range(
        self,
        client: Client,
        transport: FakeTransport,
        fake_s3: FakeS3,
        tmp_path: Path,
    ) -> None:
        fake_s3.put("bucket", "data", b"small")
        result = client.download_file("bucket", "data", tmp_path / "out")
        assert result.ranges == 1
        assert "range" not in transport.matching("GET")[0].headers

    def test_empty_object(
        self, client: Client, fake_s3: FakeS3, tmp_path: Path
    ) -> None:
        fake_s3.put("bucket", "empty", b"")
        target = tmp_path / "empty"
        result = client.download_file("bucket", "empty", target)
        assert target.read_bytes() == b""
        assert result.ranges == 0

    def test_checksum_mismatch_discards_file(
        self, client: Client, fake_s3: FakeS3, tmp_path: Path
    ) -> None:
        fake_s3.put("bucket", "bad", b"0123456789ab", etag=md5_hex(b"other"))
        target = tmp_path / "bad.bin"
        with pytest.raises(ChecksumMismatchError) as excinfo:
            client.download_file("bucket", "bad", target, range_size=5)
        assert excinfo.value.algorithm == "md5"
        assert excinfo.value.transfer is not None
        assert not target.exists()
        assert not (tmp_path / "bad.bin.stowage-partial").exists()

    def test_multipart_etag_is_not_verified(
        self, client: Client, fake_s3: FakeS3, tmp_path: Path
    ) -> None:
        fake_s3.put("bucket", "mp", b"abc", etag=f"{md5_hex(b'x')}-2")
        result = client.download_file("bucket", "mp", tmp_path / "mp")
        assert result.verified == ""

    def test_download_to_stream(
        self, client: Client, fake_s3: FakeS3
    ) -> None:
        fake_s3.put("bucket", "data", b"0123456789ab")
        sink = io.BytesIO()
        result = client.transfer.download(
            "bucket", "data", sink, range_size=4
        )
        assert sink.getvalue() == b"0123456789ab"
        assert result.ranges == 3
        assert result.verified == "md5"

    def test_missing_object(
        self, client: Client, tmp_path: Path
    ) -> None:
        with pytest.raises(ProtocolError) as excinfo:
            client.download_file("bucket", "missing", tmp_path / "x")
        assert excinfo.value.code == "NotFound"
        assert not (tmp_path / "x").exists()

    def test_object_replaced_mid_download(
        self,
        client: Client,
        transport: FakeTransport,
        fake_s3: FakeS3,
        tmp_path: Path,
    ) -> None:
        fake_s3.put("bucket", "data", b"0123456789ab")

        def replace_before_get(request: RecordedRequest) -> None:
            if request.method == "GET":
                fake_s3.put("bucket", "data", b"ABCDEFGHIJKL")

        transport.on_send = replace_before_get
        with pytest.raises(S3ServiceError) as excinfo:
            client.download_file(
                "bucket", "data", tmp_path / "out", range_size=5
            )
        assert excinfo.value.code == "PreconditionFailed"
        assert not (tmp_path / "out").exists()

    def test_download_range(self, client: Client, fake_s3: FakeS3) -> None:
        fake_s3.put("bucket", "data", b"0123456789ab")
        assert client.download_range("bucket", "data", 3, 4) == b"3456"

    def test_download_range_short(
        self, client: Client, fake_s3: FakeS3
    ) -> None:
        fake_s3.put("bucket", "data", b"0123")
        with pytest.raises(ProtocolError, match="received 2 bytes"):
            client.download_range("bucket", "data", 2, 10)

    @pytest.mark.parametrize(("offset", "length"), [(-1, 4), (0, 0)])
    def test_download_range_invalid(
        self, client: Client, offset: int, length: int
    ) -> None:
        with pytest.raises(ValidationError):
            client.download_range("bucket", "data", offset, length)
