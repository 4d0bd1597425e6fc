# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for stowage/decoder.py."""

import xml.etree.ElementTree as ET
from datetime import UTC, datetime

import pytest

from stowage.decoder import (
    S3_NAMESPACE,
    decode_complete_multipart_upload,
    decode_error,
    decode_initiate_multipart_upload,
    decode_list_multipart_uploads,
    decode_list_objects_v2,
    decode_list_parts,
    encode_complete_multipart_upload,
    status_error,
)
from stowage.errors import ProtocolError, S3ServiceError
from stowage.models import CompletedPart


LIST_OBJECTS = f"""<?xml version="1.0" encoding="UTF-8"?>
<ListBucketResult xmlns="{S3_NAMESPACE}">
  <Name>examplebucket</Name>
  <Prefix>photos/</Prefix>
  <KeyCount>2</KeyCount>
  <MaxKeys>2</MaxKeys>
  <IsTruncated>true</IsTruncated>
  <NextContinuationToken>1ueGcxLPRx1Tr/XYExHnhb=</NextContinuationToken>
  <Contents>
    <Key>photos/2006/January/sample.jpg</Key>
    <LastModified>2011-02-26T01:56:20.000Z</LastModified>
    <ETag>&quot;bf1d737a4d46a19f3bced6905cc8b902&quot;</ETag>
    <Size>142863</Size>
    <StorageClass>STANDARD</StorageClass>
    <Owner><ID>owner</ID></Owner>
  </Contents>
  <Contents>
    <Key>photos/b.jpg</Key>
    <Size>7</Size>
  </Contents>
  <CommonPrefixes><Prefix>photos/2006/</Prefix></CommonPrefixes>
  <CommonPrefixes><Prefix>photos/2007/</Prefix></CommonPrefixes>
</ListBucketResult>
""".encode()


def _chunked(data: bytes, size: int = 7) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


class TestListObjects:
    """Tests for decode_list_objects_v2."""

    def test_full_page(self) -> None:
        page = decode_list_objects_v2(LIST_OBJECTS)
        assert page.bucket == "examplebucket"
        assert page.prefix == "photos/"
        assert page.is_truncated is True
        assert page.next_continuation_token.startswith("1ueGcxLPRx1Tr")
        assert page.key_count == 2
        assert [o.key for o in page.objects] == [
            "photos/2006/January/sample.jpg",
            "photos/b.jpg",
        ]
        first = page.objects[0]
        assert first.etag == "bf1d737a4d46a19f3bced6905cc8b902"
        assert first.size == 142863
        assert first.storage_class == "STANDARD"
        assert first.last_modified == datetime(
            2011, 2, 26, 1, 56, 20, tzinfo=UTC
        )
        assert page.common_prefixes == ("photos/2006/", "photos/2007/")

    def test_small_chunks_decode_identically(self) -> None:
        whole = decode_list_objects_v2(LIST_OBJECTS)
        streamed = decode_list_objects_v2(iter(_chunked(LIST_OBJECTS)))
        assert streamed == whole

    def test_empty_listing(self) -> None:
        page = decode_list_objects_v2(
            b"<ListBucketResult><Name>b</Name>"
            b"<IsTruncated>false</IsTruncated></ListBucketResult>"
        )
        assert page.objects == ()
        assert page.key_count == 0
        assert not page.is_truncated

    def test_unknown_elements_ignored(self) -> None:
        page = decode_list_objects_v2(
            b"<ListBucketResult><Name>b</Name><Future>x</Future>"
            b"<Contents><Key>k</Key><Size>1</Size><New>y</New></Contents>"
            b"</ListBucketResult>"
        )
        assert [o.key for o in page.objects] == ["k"]

    def test_wrong_root(self) -> None:
        with pytest.raises(ProtocolError, match="ListBucketResult"):
            decode_list_objects_v2(b"<Other/>")

    def test_malformed(self) -> None:
        with pytest.raises(ProtocolError, match="malformed"):
            decode_list_objects_v2(b"<ListBucketResult><Name>")

    def test_empty_body(self) -> None:
        with pytest.raises(ProtocolError, match="ListBucketResult"):
            decode_list_objects_v2(b"")


class TestMultipartDocuments:
    """Tests for the multipart response decoders."""

    def test_initiate(self) -> None:
        result = decode_initiate_multipart_upload(
            f'<InitiateMultipartUploadResult xmlns="{S3_NAMESPACE}">'
            "<Bucket>b</Bucket><Key>k</Key><UploadId>VXBsb2FkIElE</UploadId>"
            "</InitiateMultipartUploadResult>".encode()
        )
        assert result.upload_id == "VXBsb2FkIElE"
        assert result.bucket == "b"
        assert result.key == "k"

    def test_initiate_without_upload_id(self) -> None:
        with pytest.raises(ProtocolError, match="UploadId"):
            decode_initiate_multipart_upload(
                b"<InitiateMultipartUploadResult><Bucket>b</Bucket>"
                b"</InitiateMultipartUploadResult>"
            )

    def test_list_parts(self) -> None:
        result = decode_list_parts(
            b"<ListPartsResult><Bucket>b</Bucket><Key>k</Key>"
            b"<UploadId>u</UploadId><IsTruncated>true</IsTruncated>"
            b"<NextPartNumberMarker>2</NextPartNumberMarker>"
            b"<MaxParts>2</MaxParts>"
            b"<Part><PartNumber>1</PartNumber><ETag>&quot;e1&quot;</ETag>"
            b"<Size>5242880</Size>"
            b"<LastModified>2010-11-10T20:48:34.000Z</LastModified></Part>"
            b"<Part><PartNumber>2</PartNumber><ETag>\"e2\"</ETag>"
            b"<Size>10</Size></Part>"
            b"</ListPartsResult>"
        )
        assert [(p.part_number, p.etag, p.size) for p in result.parts] == [
            (1, "e1", 5242880),
            (2, "e2", 10),
        ]
        assert result.parts[0].last_modified is not None
        assert result.is_truncated
        assert result.next_part_number_marker == 2
        assert result.max_parts == 2

    def test_complete(self) -> None:
        result = decode_complete_multipart_upload(
            b"<CompleteMultipartUploadResult>"
            b"<Location>http://b.s3/k</Location><Bucket>b</Bucket>"
            b"<Key>k</Key><ETag>&quot;3858f62230ac3c915f300c664312c11f-9"
            b"&quot;</ETag></CompleteMultipartUploadResult>"
        )
        assert result.etag == "3858f62230ac3c915f300c664312c11f-9"
        assert result.location == "http://b.s3/k"

    def test_complete_error_inside_200(self) -> None:
        with pytest.raises(S3ServiceError) as excinfo:
            decode_complete_multipart_upload(
                b"<Error><Code>InternalError</Code>"
                b"<Message>We encountered an internal error.</Message>"
                b"<RequestId>656c76696e6727732072657175657374</RequestId>"
                b"</Error>",
                status=200,
            )
        assert excinfo.value.code == "InternalError"
        assert excinfo.value.status == 200
        assert excinfo.value.request_id == "656c76696e6727732072657175657374"

    def test_list_multipart_uploads(self) -> None:
        result = decode_list_multipart_uploads(
            b"<ListMultipartUploadsResult><Bucket>b</Bucket>"
            b"<NextKeyMarker>my-movie.m2ts</NextKeyMarker>"
            b"<NextUploadIdMarker>YW55IGlkZWE</NextUploadIdMarker>"
            b"<IsTruncated>true</IsTruncated>"
            b"<Upload><Key>my-divisor</Key><UploadId>XMgbGlrZSBl</UploadId>"
            b"<StorageClass>STANDARD</StorageClass>"
            b"<Initiated>2010-11-10T20:48:33.000Z</Initiated></Upload>"
            b"</ListMultipartUploadsResult>"
        )
        assert result.bucket == "b"
        assert result.is_truncated
        assert result.next_key_marker == "my-movie.m2ts"
        assert result.next_upload_id_marker == "YW55IGlkZWE"
        assert len(result.uploads) == 1
        upload = result.uploads[0]
        assert upload.key == "my-divisor"
        assert upload.upload_id == "XMgbGlrZSBl"
        assert upload.initiated == datetime(
            2010, 11, 10, 20, 48, 33, tzinfo=UTC
        )


class TestDecodeError:
    """Tests for decode_error and status_error."""

    def test_service_error(self) -> None:
        error = decode_error(
            404,
            {},
            b'<?xml version="1.0" encoding="UTF-8"?>'
            b"<Error><Code>NoSuchKey</Code>"
            b"<Message>The resource you requested does not exist</Message>"
            b"<Resource>/mybucket/myfoto.jpg</Resource>"
            b"<RequestId>4442587FB7D0A2F9</RequestId>"
            b"<Key>myfoto.jpg</Key></Error>",
        )
        assert isinstance(error, S3ServiceError)
        assert error.code == "NoSuchKey"
        assert error.resource == "/mybucket/myfoto.jpg"
        assert error.request_id == "4442587FB7D0A2F9"
        assert error.key == "myfoto.jpg"
        assert error.status == 404
        assert "NoSuchKey" in str(error)

    def test_request_id_from_headers(self) -> None:
        error = decode_error(
            403,
            {"x-amz-request-id": "HDR1", "x-amz-id-2": "HOST2"},
            b"<Error><Code>AccessDenied</Code></Error>",
        )
        assert isinstance(error, S3ServiceError)
        assert error.request_id == "HDR1"
        assert error.host_id == "HOST2"

    def test_empty_body_synthesizes_code(self) -> None:
        error = decode_error(503, {}, b"")
        assert isinstance(error, ProtocolError)
        assert error.code == "ServiceUnavailable"
        assert error.status == 503

    def test_unparsable_body(self) -> None:
        error = decode_error(502, {}, b"<html>Bad Gateway")
        assert isinstance(error, ProtocolError)
        assert error.code == "BadGateway"

    def test_error_without_code(self) -> None:
        error = decode_error(400, {}, b"<Error><Message>x</Message></Error>")
        assert isinstance(error, ProtocolError)
        assert error.code == "BadRequest"

    def test_unknown_status(self) -> None:
        assert status_error(418, {}).code == "HTTP418"


class TestEncodeComplete:
    """Tests for encode_complete_multipart_upload."""

    def test_parts_in_given_order_with_quoted_etags(self) -> None:
        body = encode_complete_multipart_upload(
            [CompletedPart(1, "e1"), CompletedPart(2, '"e2"')]
        )
        root = ET.fromstring(body)
        ns = {"s3": S3_NAMESPACE}
        assert root.tag == f"{{{S3_NAMESPACE}}}CompleteMultipartUpload"
        numbers = [
            p.findtext("s3:PartNumber", namespaces=ns)
            for p in root.findall("s3:Part", ns)
        ]
        etags = [
            p.findtext("s3:ETag", namespaces=ns)
            for p in root.findall("s3:Part", ns)
        ]
        assert numbers == ["1", "2"]
        assert etags == ['"e1"', '"e2"']
