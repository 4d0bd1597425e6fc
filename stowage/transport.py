# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""HTTP transport capability and its httpx implementation.

The core only needs "send headers + stream body, receive headers + stream
body".  ``Transport`` is that capability; ``HttpxTransport`` is the
production implementation and the test suite injects a fake.

Transports translate their own exceptions into ``TransportError`` and
``RequestTimeoutError`` so nothing above this module sees httpx types.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from typing import Protocol, Self

import httpx

from stowage.cancel import CancelToken
from stowage.errors import RequestTimeoutError, TransportError
from stowage.models import SignedRequest


logger = logging.getLogger(__name__)

#: Default per-request timeout in seconds.
DEFAULT_TIMEOUT = 60.0


class RawResponse:
    """Status, headers and a streaming body.

    The body is consumed at most once, either through ``iter_bytes`` or
    ``read``.  Always close the response (or use it as a context manager)
    so the underlying connection returns to the pool.
    """

    def __init__(
        self,
        status: int,
        headers: httpx.Headers | dict[str, str] | None = None,
        stream: Iterable[bytes] | None = None,
        *,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self.status = status
        self.headers = httpx.Headers(headers or {})
        self._stream = stream if stream is not None else ()
        self._on_close = on_close
        self._cancel: CancelToken | None = None
        self._consumed = False
        self._closed = False

    def __repr__(self) -> str:
        return f"RawResponse(status={self.status})"

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def bind_cancel(self, token: CancelToken | None) -> None:
        """Make body iteration raise ``CancellationError`` once cancelled."""
        self._cancel = token

    def iter_bytes(self) -> Iterator[bytes]:
        """Yield the body in transport-sized chunks."""
        if self._consumed:
            raise TransportError("response body already consumed")
        self._consumed = True
        try:
            for chunk in self._stream:
                if self._cancel is not None:
                    self._cancel.raise_if_cancelled()
                if chunk:
                    yield chunk
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"timed out reading body: {e}") from e
        except (httpx.TransportError, httpx.StreamError, OSError) as e:
            raise TransportError(f"error reading body: {e}") from e

    def read(self, limit: int | None = None) -> bytes:
        """Read the body, stopping once ``limit`` bytes are buffered."""
        data = bytearray()
        for chunk in self.iter_bytes():
            data += chunk
            if limit is not None and len(data) >= limit:
                del data[limit:]
                break
        return bytes(data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class Transport(Protocol):
    """Sends one signed request and returns the streaming response."""

    def send(
        self, request: SignedRequest, *, timeout: float | None = None
    ) -> RawResponse:
        """Send ``request``.

        Raises:
            TransportError: On connection-level failure.
            RequestTimeoutError: If the request exceeds ``timeout``.
        """
        ...

    def close(self) -> None: ...


class HttpxTransport:
    """Transport backed by a pooled ``httpx.Client``.

    ``httpx.Client`` is thread-safe, so one instance serves every worker
    of a transfer.
    """

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        max_connections: int = 32,
        verify: bool | str = True,
        client: httpx.Client | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=timeout,
            verify=verify,
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_connections,
            ),
        )

    def send(
        self, request: SignedRequest, *, timeout: float | None = None
    ) -> RawResponse:
        httpx_request = self._client.build_request(
            request.method,
            request.url,
            headers=request.headers,
            content=request.body,
            timeout=(
                timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT
            ),
        )
        try:
            response = self._client.send(httpx_request, stream=True)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(
                f"{request.method} {request.url}: timed out: {e}"
            ) from e
        except (httpx.TransportError, OSError) as e:
            raise TransportError(
                f"{request.method} {request.url}: {type(e).__name__}: {e}"
            ) from e

        # iter_raw: object bytes exactly as stored, never content-decoded
        return RawResponse(
            response.status_code,
            response.headers,
            response.iter_raw(),
            on_close=response.close,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
