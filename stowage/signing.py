# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""AWS SigV4/SigV4A request signing for S3.

Supports:

- SigV4 header signing (HMAC-SHA256)
- SigV4A header signing (ECDSA P-256) for multi-region endpoints
- aws-chunked streaming signatures, optionally with a signed CRC32 trailer
- Presigned URLs

No boto3/botocore dependency; uses only stdlib + cryptography.
"""

from __future__ import annotations

import functools
import hashlib
import hmac
import urllib.parse
from collections.abc import Callable, Iterable, Iterator
from datetime import datetime

import httpx
from cryptography.hazmat.primitives.asymmetric.ec import (
    EllipticCurvePrivateKey,
)

from stowage.credentials import Credentials
from stowage.errors import SignatureError, ValidationError
from stowage.models import (
    ALGORITHM_SIGV4,
    ALGORITHM_SIGV4A,
    CanonicalRequest,
    PayloadKind,
    PendingRequest,
    Signature,
    SignedRequest,
    SigningContext,
)
from stowage.utils import (
    EMPTY_SHA256,
    crc32_base64,
    crc32_of,
    from_amz_date,
    utc_now,
)


# P-256 curve order for SigV4A key derivation
_P256_ORDER = int(
    "FFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551", 16
)

_AWS_UNRESERVED = frozenset(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_.~"
)

UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"

# Streaming content-sha256 values that indicate chunked signing
STREAMING_PAYLOAD_SIGV4 = "STREAMING-AWS4-HMAC-SHA256-PAYLOAD"
STREAMING_PAYLOAD_SIGV4_TRAILER = "STREAMING-AWS4-HMAC-SHA256-PAYLOAD-TRAILER"
STREAMING_PAYLOAD_SIGV4A = "STREAMING-AWS4-ECDSA-P256-SHA256-PAYLOAD"
STREAMING_PAYLOAD_SIGV4A_TRAILER = (
    "STREAMING-AWS4-ECDSA-P256-SHA256-PAYLOAD-TRAILER"
)

#: Trailer carrying the whole-body CRC32 in streaming uploads.
CHECKSUM_TRAILER = "x-amz-checksum-crc32"

#: Headers that proxies and HTTP stacks rewrite; never signed.
UNSIGNED_HEADERS = frozenset(
    {
        "authorization",
        "user-agent",
        "expect",
        "accept-encoding",
        "connection",
        "transfer-encoding",
        "x-amzn-trace-id",
    }
)

#: Longest presigned URL lifetime the service accepts (7 days).
MAX_PRESIGN_EXPIRES = 7 * 24 * 3600

#: Default aws-chunked frame size.
DEFAULT_CHUNK_SIZE = 64 * 1024

# Hex signature widths (HMAC-SHA256 and fixed-width r||s)
_SIGNATURE_LENGTHS = {ALGORITHM_SIGV4: 64, ALGORITHM_SIGV4A: 128}

_CHUNK_SIG_PREFIX = ";chunk-signature="
_TRAILER_SIG_PREFIX = "x-amz-trailer-signature:"


# ---------------------------------------------------------------------------
# URI encoding (AWS-specific RFC 3986 subset)
# ---------------------------------------------------------------------------


def uri_encode(value: str, *, encode_slash: bool = True) -> str:
    """URI-encode a value using AWS's specific rules.

    - Unreserved characters are not encoded: A-Z, a-z, 0-9, -, _, ., ~
    - All other characters are percent-encoded as %XX (uppercase hex) of
      their UTF-8 bytes
    - Forward slashes (/) are optionally preserved

    Args:
        value: String to encode.
        encode_slash: If True, encode '/'; if False, preserve '/'.

    Returns:
        URI-encoded string.
    """
    result: list[str] = []
    for ch in value:
        if ch in _AWS_UNRESERVED:
            result.append(ch)
        elif ch == "/" and not encode_slash:
            result.append("/")
        else:
            result.extend(f"%{b:02X}" for b in ch.encode("utf-8"))
    return "".join(result)


# ---------------------------------------------------------------------------
# Canonical request construction
# ---------------------------------------------------------------------------


def canonical_uri(path: str) -> str:
    """Build the canonical URI for an S3 request path.

    S3 single-encodes: any existing percent-encoding is decoded first and
    the path is then encoded once, so ``%3A`` stays ``%3A``.  Double
    slashes and ``.``/``..`` segments are preserved.

    Args:
        path: Request path, possibly already percent-encoded.

    Returns:
        URI-encoded canonical path.
    """
    if not path:
        return "/"

    # Strip query string if present
    path = path.split("?")[0]
    path = urllib.parse.unquote(path)
    return uri_encode(path, encode_slash=False) or "/"


def canonical_query_string(params: Iterable[tuple[str, str]]) -> str:
    """Build canonical query string.

    Args:
        params: (name, value) pairs; duplicate names are allowed.

    Returns:
        Canonical query string (encoded, sorted by name then value).
    """
    # URI-encode names and values, sort by encoded name then value
    encoded = [(uri_encode(k), uri_encode(v)) for k, v in params]
    encoded.sort()
    return "&".join(f"{k}={v}" for k, v in encoded)


def canonical_headers(
    headers: httpx.Headers,
) -> tuple[str, tuple[str, ...]]:
    """Build the canonical header block and the signed header names.

    Header names are lower-cased; values are trimmed with inner whitespace
    runs collapsed; repeated headers are joined with ``,``.  Headers in
    ``UNSIGNED_HEADERS`` are left out.

    Returns:
        Tuple of (canonical header block, sorted signed header names).
    """
    values: dict[str, list[str]] = {}
    for name, value in headers.multi_items():
        lower = name.lower()
        if lower in UNSIGNED_HEADERS:
            continue
        values.setdefault(lower, []).append(" ".join(value.split()))

    names = tuple(sorted(values))
    block = "".join(f"{name}:{','.join(values[name])}\n" for name in names)
    return block, names


def build_canonical_request(
    method: str,
    path: str,
    query: Iterable[tuple[str, str]],
    headers: httpx.Headers,
    payload_hash: str,
) -> CanonicalRequest:
    """Build the canonical request.

    Args:
        method: HTTP method.
        path: Request path.
        query: Query parameters.
        headers: Request headers to sign.
        payload_hash: Hex payload hash or one of the sentinel values.

    Returns:
        Immutable canonical request.
    """
    block, signed = canonical_headers(headers)
    return CanonicalRequest(
        method=method.upper(),
        path=canonical_uri(path),
        query=canonical_query_string(query),
        headers=block,
        signed_headers=signed,
        payload_hash=payload_hash,
    )


# ---------------------------------------------------------------------------
# SigV4 signing
# ---------------------------------------------------------------------------


def _hmac_sha256(key: bytes, msg: str | bytes) -> bytes:
    """HMAC-SHA256 helper."""
    if isinstance(msg, str):
        msg = msg.encode("utf-8")
    return hmac.new(key, msg, hashlib.sha256).digest()


def derive_sigv4_signing_key(
    secret_key: str, date: str, region: str, service: str
) -> bytes:
    """Derive the SigV4 signing key.

    Args:
        secret_key: Secret access key.
        date: Date string (YYYYMMDD).
        region: Region.
        service: Service name.

    Returns:
        Derived signing key bytes.
    """
    k_date = _hmac_sha256(("AWS4" + secret_key).encode("utf-8"), date)
    k_region = _hmac_sha256(k_date, region)
    k_service = _hmac_sha256(k_region, service)
    k_signing = _hmac_sha256(k_service, "aws4_request")
    return k_signing


def sigv4_sign(signing_key: bytes, string_to_sign: str) -> str:
    """Compute SigV4 signature.

    Args:
        signing_key: Derived signing key.
        string_to_sign: The string to sign.

    Returns:
        Hex-encoded signature.
    """
    return hmac.new(
        signing_key, string_to_sign.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def build_string_to_sign(
    algorithm: str, timestamp: str, scope: str, canonical_request: str
) -> str:
    """Build the string to sign for either algorithm.

    Args:
        algorithm: ``AWS4-HMAC-SHA256`` or ``AWS4-ECDSA-P256-SHA256``.
        timestamp: ISO8601 basic timestamp (x-amz-date).
        scope: Credential scope.
        canonical_request: The canonical request string.

    Returns:
        String to sign.
    """
    return "\n".join(
        [
            algorithm,
            timestamp,
            scope,
            hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
        ]
    )


# ---------------------------------------------------------------------------
# SigV4A signing (ECDSA P-256)
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=8)
def derive_sigv4a_key(
    secret_key: str, access_key_id: str
) -> EllipticCurvePrivateKey:
    """Derive the ECDSA P-256 private key for SigV4A.

    Uses the AWS key derivation algorithm:
    1. input_key = "AWS4A" + secret_access_key
    2. Counter starts at 0x01
    3. HMAC-SHA256(input_key, label || 0x00 || access_key_id || counter)
    4. Interpret as integer c; if c <= n-2, private_key = c + 1

    Args:
        secret_key: Secret access key.
        access_key_id: Access key ID.

    Returns:
        cryptography EllipticCurvePrivateKey object.

    Raises:
        SignatureError: If key derivation fails after 254 iterations.
    """
    from cryptography.hazmat.primitives.asymmetric.ec import (
        SECP256R1,
        derive_private_key,
    )

    input_key = ("AWS4A" + secret_key).encode("utf-8")
    label = b"AWS4-ECDSA-P256-SHA256"

    for counter in range(1, 255):
        msg = (
            label
            + b"\x00"
            + access_key_id.encode("utf-8")
            + bytes([counter])
        )
        kdf_output = _hmac_sha256(input_key, msg)
        c = int.from_bytes(kdf_output, "big")
        if c <= _P256_ORDER - 2:
            private_key_int = c + 1
            return derive_private_key(private_key_int, SECP256R1())

    raise SignatureError("SigV4A key derivation failed after 254 iterations")


def sigv4a_sign(
    private_key: EllipticCurvePrivateKey, string_to_sign: str
) -> str:
    """Compute SigV4A ECDSA signature.

    Args:
        private_key: ECDSA P-256 private key.
        string_to_sign: The string to sign.

    Returns:
        Hex-encoded fixed-width r||s signature.
    """
    from cryptography.hazmat.primitives.asymmetric.ec import ECDSA
    from cryptography.hazmat.primitives.asymmetric.utils import (
        decode_dss_signature,
    )
    from cryptography.hazmat.primitives.hashes import SHA256

    sig_der = private_key.sign(string_to_sign.encode("utf-8"), ECDSA(SHA256()))
    r, s = decode_dss_signature(sig_der)

    # Encode r and s as fixed-width 32-byte big-endian, concatenated
    return (r.to_bytes(32, "big") + s.to_bytes(32, "big")).hex()


# ---------------------------------------------------------------------------
# Chunk signing
# ---------------------------------------------------------------------------


def chunk_string_to_sign(
    algorithm: str,
    timestamp: str,
    scope: str,
    previous_signature: str,
    chunk_data: bytes,
) -> str:
    """Build the string to sign for one aws-chunked data chunk.

    Args:
        algorithm: Request signing algorithm.
        timestamp: ISO8601 timestamp.
        scope: Credential scope.
        previous_signature: Previous chunk's (or seed) signature.
        chunk_data: Raw chunk data bytes.

    Returns:
        String to sign for this chunk.
    """
    return "\n".join(
        [
            f"{algorithm}-PAYLOAD",
            timestamp,
            scope,
            previous_signature,
            EMPTY_SHA256,
            hashlib.sha256(chunk_data).hexdigest(),
        ]
    )


def trailer_string_to_sign(
    algorithm: str,
    timestamp: str,
    scope: str,
    previous_signature: str,
    trailing_headers: bytes,
) -> str:
    """Build the string to sign for the trailing header signature.

    Args:
        algorithm: Request signing algorithm.
        timestamp: ISO8601 timestamp.
        scope: Credential scope.
        previous_signature: Terminal chunk's signature.
        trailing_headers: Canonical trailers (``name:value\\n`` lines).

    Returns:
        String to sign for the trailer.
    """
    return "\n".join(
        [
            f"{algorithm}-TRAILER",
            timestamp,
            scope,
            previous_signature,
            hashlib.sha256(trailing_headers).hexdigest(),
        ]
    )


def encoded_length(
    decoded_length: int,
    chunk_size: int,
    *,
    algorithm: str = ALGORITHM_SIGV4,
    trailer: bool = False,
) -> int:
    """Exact aws-chunked body length for a payload of ``decoded_length``.

    Args:
        decoded_length: Raw payload length.
        chunk_size: Frame size used by ``ChunkedPayloadSigner``.
        algorithm: Determines the signature width.
        trailer: Whether a signed CRC32 trailer follows the final chunk.

    Returns:
        Number of bytes the encoder will produce.
    """
    sig_len = _SIGNATURE_LENGTHS[algorithm]

    def frame(size: int) -> int:
        header = len(f"{size:x}") + len(_CHUNK_SIG_PREFIX) + sig_len + 2
        return header + size + 2

    full, rest = divmod(decoded_length, chunk_size)
    total = full * frame(chunk_size)
    if rest:
        total += frame(rest)
    # Final zero-length chunk header
    total += 1 + len(_CHUNK_SIG_PREFIX) + sig_len + 2
    if trailer:
        # CRC32 is 4 bytes, 8 characters of base64
        total += len(CHECKSUM_TRAILER) + 1 + 8 + 2
        total += len(_TRAILER_SIG_PREFIX) + sig_len + 2
    return total + 2


class ChunkedPayloadSigner:
    """Frames a body as aws-chunked with chained chunk signatures.

    Each frame is ``hex(size);chunk-signature=<sig>\\r\\n<data>\\r\\n``.
    The first chunk chains from the seed (request) signature; each later
    chunk chains from the one before it.  A zero-length chunk closes the
    body, optionally followed by a CRC32 trailer and its signature.
    """

    def __init__(
        self,
        *,
        sign: Callable[[str], str],
        context: SigningContext,
        seed_signature: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        trailer: bool = False,
    ) -> None:
        """Initialize the signer.

        Args:
            sign: Signs a string-to-sign with the request's key.
            context: Signing context of the request.
            seed_signature: Signature from the Authorization header.
            chunk_size: Frame size for all but the last data chunk.
            trailer: Whether to append a signed CRC32 trailer.
        """
        self._sign = sign
        self._algorithm = context.algorithm
        self._timestamp = context.amz_date
        self._scope = context.credential_scope
        self._current_sig = seed_signature
        self._chunk_size = chunk_size
        self._trailer = trailer

    @property
    def last_signature(self) -> str:
        return self._current_sig

    def _frame(self, data: bytes) -> bytes:
        string_to_sign = chunk_string_to_sign(
            self._algorithm,
            self._timestamp,
            self._scope,
            self._current_sig,
            data,
        )
        self._current_sig = self._sign(string_to_sign)
        header = f"{len(data):x}{_CHUNK_SIG_PREFIX}{self._current_sig}\r\n"
        if not data:
            return header.encode("ascii")
        return header.encode("ascii") + data + b"\r\n"

    def _trailer_block(self, crc: int) -> bytes:
        line = f"{CHECKSUM_TRAILER}:{crc32_base64(crc)}"
        string_to_sign = trailer_string_to_sign(
            self._algorithm,
            self._timestamp,
            self._scope,
            self._current_sig,
            (line + "\n").encode("ascii"),
        )
        self._current_sig = self._sign(string_to_sign)
        return (
            f"{line}\r\n{_TRAILER_SIG_PREFIX}{self._current_sig}\r\n\r\n"
        ).encode("ascii")

    def encode(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        """Re-frame ``chunks`` into signed aws-chunked frames.

        Input chunks of any size are re-buffered into ``chunk_size``
        frames so ``encoded_length`` stays exact.
        """
        buffer = bytearray()
        crc = 0
        for data in chunks:
            buffer += data
            while len(buffer) >= self._chunk_size:
                piece = bytes(buffer[: self._chunk_size])
                del buffer[: self._chunk_size]
                crc = crc32_of(piece, crc)
                yield self._frame(piece)
        if buffer:
            piece = bytes(buffer)
            crc = crc32_of(piece, crc)
            yield self._frame(piece)

        final = self._frame(b"")
        if self._trailer:
            yield final + self._trailer_block(crc)
        else:
            yield final + b"\r\n"


# ---------------------------------------------------------------------------
# Signer
# ---------------------------------------------------------------------------


class Signer:
    """Signs ``PendingRequest`` objects and builds presigned URLs.

    Signing is CPU-only and never blocks on I/O.  The same request signed
    with the same credentials at the same timestamp always produces the
    same signature (SigV4A signatures are randomized by ECDSA and are
    only verifiable, not reproducible).
    """

    def __init__(
        self,
        region: str,
        *,
        service: str = "s3",
        algorithm: str = ALGORITHM_SIGV4,
        clock: Callable[[], datetime] = utc_now,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        streaming_signature: bool = True,
        checksum_trailer: bool = False,
    ) -> None:
        if algorithm not in _SIGNATURE_LENGTHS:
            raise ValidationError(f"unsupported signing algorithm {algorithm}")
        if chunk_size < 8 * 1024:
            raise ValidationError(
                f"chunk size must be at least 8 KiB, got {chunk_size}"
            )
        self.region = region
        self.service = service
        self.algorithm = algorithm
        self._clock = clock
        self.chunk_size = chunk_size
        self.streaming_signature = streaming_signature
        self.checksum_trailer = checksum_trailer

    def context(self, timestamp: datetime | None = None) -> SigningContext:
        """Signing context for ``timestamp`` (defaults to the clock).

        Raises:
            SignatureError: If the clock cannot be read.
        """
        if timestamp is None:
            try:
                timestamp = self._clock()
            except Exception as e:
                raise SignatureError(f"cannot read the clock: {e}") from e
        return SigningContext(
            timestamp=timestamp,
            region=self.region,
            service=self.service,
            algorithm=self.algorithm,
        )

    def _signer_for(
        self, ctx: SigningContext, creds: Credentials
    ) -> Callable[[str], str]:
        if ctx.algorithm == ALGORITHM_SIGV4A:
            private_key = derive_sigv4a_key(creds.secret_key, creds.access_key)
            return functools.partial(sigv4a_sign, private_key)
        signing_key = derive_sigv4_signing_key(
            creds.secret_key, ctx.date_stamp, ctx.region, ctx.service
        )
        return functools.partial(sigv4_sign, signing_key)

    def _payload_hash(self, request: PendingRequest) -> str:
        payload = request.payload
        if payload.kind is PayloadKind.EMPTY:
            return EMPTY_SHA256
        if payload.kind is PayloadKind.BYTES:
            return hashlib.sha256(payload.data).hexdigest()
        if payload.kind is PayloadKind.SIZED_STREAM and (
            self.streaming_signature
        ):
            return _streaming_sentinel(self.algorithm, self.checksum_trailer)
        return UNSIGNED_PAYLOAD

    def sign(
        self,
        request: PendingRequest,
        credentials: Credentials,
        *,
        timestamp: datetime | None = None,
    ) -> SignedRequest:
        """Sign a request with header authentication.

        Args:
            request: The request to sign.
            credentials: One consistent credential snapshot.
            timestamp: Fixed signing time (defaults to the clock).

        Returns:
            SignedRequest with Authorization and x-amz-* headers set and a
            body ready for the transport.

        Raises:
            SignatureError: If credentials are malformed or the clock
                cannot be read.
        """
        _check_credentials(credentials)
        ctx = self.context(timestamp)
        payload = request.payload

        headers = httpx.Headers(request.headers)
        headers["host"] = request.host
        headers["x-amz-date"] = ctx.amz_date
        if credentials.session_token:
            headers["x-amz-security-token"] = credentials.session_token
        if ctx.algorithm == ALGORITHM_SIGV4A:
            headers["x-amz-region-set"] = self.region

        payload_hash = self._payload_hash(request)
        headers["x-amz-content-sha256"] = payload_hash
        chunked = payload_hash.startswith("STREAMING-")

        if chunked:
            assert payload.length is not None
            existing = headers.get("content-encoding")
            headers["content-encoding"] = (
                f"aws-chunked,{existing}" if existing else "aws-chunked"
            )
            headers["x-amz-decoded-content-length"] = str(payload.length)
            headers["content-length"] = str(
                encoded_length(
                    payload.length,
                    self.chunk_size,
                    algorithm=ctx.algorithm,
                    trailer=self.checksum_trailer,
                )
            )
            if self.checksum_trailer:
                headers["x-amz-trailer"] = CHECKSUM_TRAILER
        elif payload.kind in (PayloadKind.BYTES, PayloadKind.SIZED_STREAM):
            headers["content-length"] = str(payload.length)

        creq = build_canonical_request(
            request.method, request.path, request.query, headers, payload_hash
        )
        sign = self._signer_for(ctx, credentials)
        string_to_sign = build_string_to_sign(
            ctx.algorithm, ctx.amz_date, ctx.credential_scope, creq.text
        )
        value = sign(string_to_sign)

        headers["authorization"] = (
            f"{ctx.algorithm} "
            f"Credential={credentials.access_key}/{ctx.credential_scope}, "
            f"SignedHeaders={creq.signed_headers_str}, "
            f"Signature={value}"
        )

        body: bytes | Iterable[bytes] | None
        if payload.kind is PayloadKind.EMPTY:
            body = None
        elif payload.kind is PayloadKind.BYTES:
            body = payload.data
        elif chunked:
            body = ChunkedPayloadSigner(
                sign=sign,
                context=ctx,
                seed_signature=value,
                chunk_size=self.chunk_size,
                trailer=self.checksum_trailer,
            ).encode(payload.open())
        else:
            body = payload.open()

        return SignedRequest(
            method=request.method,
            url=_build_url(request.scheme, request.host, creq),
            headers=headers,
            body=body,
            signature=Signature(
                algorithm=ctx.algorithm,
                value=value,
                signed_headers=creq.signed_headers,
                credential_scope=ctx.credential_scope,
                timestamp=ctx.timestamp,
            ),
            canonical_request=creq,
        )

    def presign(
        self,
        method: str,
        host: str,
        path: str,
        credentials: Credentials,
        *,
        expires: int,
        query: Iterable[tuple[str, str]] = (),
        headers: httpx.Headers | dict[str, str] | None = None,
        timestamp: datetime | None = None,
        scheme: str = "https",
        max_expires: int = MAX_PRESIGN_EXPIRES,
    ) -> str:
        """Build a presigned URL.

        Args:
            method: HTTP method the URL is valid for.
            host: Request host.
            path: Request path, already URI-escaped.
            credentials: Credential snapshot.
            expires: Lifetime in seconds, 1 to ``max_expires``.
            query: Extra query parameters to include and sign.
            headers: Extra headers the user of the URL must send.
            timestamp: Fixed signing time (defaults to the clock).
            scheme: URL scheme.
            max_expires: Upper bound on ``expires``.

        Returns:
            The full presigned URL.

        Raises:
            ValidationError: If ``expires`` is out of range.
            SignatureError: If credentials are malformed or the clock
                cannot be read.
        """
        check_presign_expiry(expires, max_expires)
        _check_credentials(credentials)
        ctx = self.context(timestamp)

        sign_headers = httpx.Headers(headers or {})
        sign_headers["host"] = host
        _, signed = canonical_headers(sign_headers)

        params = list(query)
        params += [
            ("X-Amz-Algorithm", ctx.algorithm),
            (
                "X-Amz-Credential",
                f"{credentials.access_key}/{ctx.credential_scope}",
            ),
            ("X-Amz-Date", ctx.amz_date),
            ("X-Amz-Expires", str(expires)),
            ("X-Amz-SignedHeaders", ";".join(signed)),
        ]
        if credentials.session_token:
            params.append(("X-Amz-Security-Token", credentials.session_token))
        if ctx.algorithm == ALGORITHM_SIGV4A:
            params.append(("X-Amz-Region-Set", self.region))

        creq = build_canonical_request(
            method, path, params, sign_headers, UNSIGNED_PAYLOAD
        )
        string_to_sign = build_string_to_sign(
            ctx.algorithm, ctx.amz_date, ctx.credential_scope, creq.text
        )
        signature = self._signer_for(ctx, credentials)(string_to_sign)
        return (
            f"{_build_url(scheme, host, creq)}"
            f"&X-Amz-Signature={signature}"
        )


def _streaming_sentinel(algorithm: str, trailer: bool) -> str:
    if algorithm == ALGORITHM_SIGV4A:
        return (
            STREAMING_PAYLOAD_SIGV4A_TRAILER
            if trailer
            else STREAMING_PAYLOAD_SIGV4A
        )
    return (
        STREAMING_PAYLOAD_SIGV4_TRAILER if trailer else STREAMING_PAYLOAD_SIGV4
    )


def check_presign_expiry(
    expires: int, max_expires: int = MAX_PRESIGN_EXPIRES
) -> None:
    """Raise ``ValidationError`` unless ``expires`` is a valid lifetime."""
    limit = min(max_expires, MAX_PRESIGN_EXPIRES)
    if not 1 <= expires <= limit:
        raise ValidationError(
            f"presigned URL expiry must be between 1 and {limit} "
            f"seconds, got {expires}"
        )


def _check_credentials(credentials: Credentials | None) -> None:
    if credentials is None:
        raise SignatureError("no credentials to sign with")
    if not credentials.access_key or not credentials.secret_key:
        raise SignatureError("credentials are missing an access or secret key")


def _build_url(scheme: str, host: str, creq: CanonicalRequest) -> str:
    url = f"{scheme}://{host}{creq.path}"
    return f"{url}?{creq.query}" if creq.query else url


# ---------------------------------------------------------------------------
# Clock skew detection
# ---------------------------------------------------------------------------


def check_clock_skew(
    amz_date: str, now: datetime | None = None
) -> tuple[bool, int]:
    """Check if an x-amz-date differs significantly from local time.

    Args:
        amz_date: ISO8601 basic timestamp (``YYYYMMDDTHHMMSSZ``), e.g. the
            service's ``Date`` converted, or the request's own date.
        now: Reference time (defaults to the current time).

    Returns:
        Tuple of (is_skewed, drift_minutes).  is_skewed is True if the
        drift exceeds the signing skew tolerance (15 minutes).
    """
    try:
        request_time = from_amz_date(amz_date)
    except (ValueError, TypeError):
        return False, 0
    now = now or utc_now()
    drift = abs((now - request_time).total_seconds())
    drift_minutes = int(drift / 60)
    limit = int(SigningContext.max_skew.total_seconds() / 60)
    return drift_minutes >= limit, drift_minutes
