# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Signed request execution with retry, backoff and cancellation.

Every attempt takes a fresh credential snapshot and a fresh signature, so
a retry after a long backoff never reuses a stale timestamp.  Once retries
are exhausted the last error is raised unchanged.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Iterable, Iterator
from dataclasses import replace
from typing import TypeVar

from stowage.cancel import CancelToken, check
from stowage.credentials import CredentialSource
from stowage.decoder import decode_error
from stowage.errors import S3ServiceError, StowageError, TransportError
from stowage.models import PendingRequest
from stowage.retry import RetryPolicy
from stowage.signing import Signer, check_clock_skew
from stowage.transport import RawResponse, Transport
from stowage.utils import from_http_date, to_amz_date, utc_now


logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Error bodies are small; anything past this is not buffered.
MAX_ERROR_BODY = 1024 * 1024

#: In-memory bodies are handed to the transport in slices of this size.
BODY_SLICE_SIZE = 64 * 1024


def _cancellable(
    body: bytes | Iterable[bytes], cancel: CancelToken
) -> Iterator[bytes]:
    """Check the cancel token before handing each chunk to the transport."""
    if isinstance(body, bytes):
        body = (
            body[i : i + BODY_SLICE_SIZE]
            for i in range(0, len(body), BODY_SLICE_SIZE)
        )
    for chunk in body:
        cancel.raise_if_cancelled()
        yield chunk


class RequestExecutor:
    """Signs, sends and retries requests.

    Thread-safe: a single executor is shared by all workers of a transfer.
    """

    def __init__(
        self,
        transport: Transport,
        signer: Signer,
        credentials: CredentialSource,
        retry_policy: RetryPolicy | None = None,
        *,
        timeout: float | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.transport = transport
        self.signer = signer
        self.credentials = credentials
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self._rng = rng or random.Random()

    def execute(
        self,
        request: PendingRequest,
        *,
        cancel: CancelToken | None = None,
        retry: bool = True,
    ) -> RawResponse:
        """Send ``request``, retrying per policy.

        Args:
            request: The unsigned request.
            cancel: Token that aborts the request (and any backoff wait).
            retry: When False, make exactly one attempt regardless of the
                policy (used for requests that must be sent at most once).

        Returns:
            The 2xx response, body unread.  The caller must close it.

        Raises:
            CancellationError: If ``cancel`` fires.
            CredentialError: If no credentials are available.
            S3ServiceError: For structured service errors.
            ProtocolError: For error responses without a usable body.
            TransportError: For connection failures.
            RequestTimeoutError: If a request exceeds the timeout.
        """
        policy = self.retry_policy
        attempt = 0
        while True:
            attempt += 1
            check(cancel)
            try:
                return self._attempt(request, cancel)
            except StowageError as e:
                if not retry or not policy.should_retry(
                    e,
                    attempt,
                    idempotent=request.idempotent,
                    replayable=request.payload.replayable,
                ):
                    if attempt > 1:
                        logger.error(
                            "%s %s failed after %d attempts: %s",
                            request.operation,
                            request.path,
                            attempt,
                            e,
                        )
                    raise
                delay = policy.delay(attempt, self._rng)
                logger.warning(
                    "%s %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    request.operation,
                    request.path,
                    attempt,
                    policy.max_attempts,
                    delay,
                    e,
                )
                self._backoff(delay, cancel)

    def execute_xml(
        self,
        request: PendingRequest,
        decode: Callable[[Iterable[bytes]], T],
        *,
        cancel: CancelToken | None = None,
        retry: bool = True,
    ) -> T:
        """Execute ``request`` and stream its body into ``decode``."""
        with self.execute(request, cancel=cancel, retry=retry) as response:
            return decode(response.iter_bytes())

    def _backoff(self, delay: float, cancel: CancelToken | None) -> None:
        token = cancel or CancelToken()
        token.wait(delay)
        check(cancel)

    def _attempt(
        self, request: PendingRequest, cancel: CancelToken | None
    ) -> RawResponse:
        creds = self.credentials.current()
        signed = self.signer.sign(request, creds)
        if cancel is not None and signed.body is not None:
            signed = replace(signed, body=_cancellable(signed.body, cancel))

        logger.debug(
            "%s %s %s", request.operation, signed.method, signed.url
        )
        response = self.transport.send(signed, timeout=self.timeout)
        if response.ok:
            response.bind_cancel(cancel)
            return response

        with response:
            try:
                body = response.read(MAX_ERROR_BODY)
            except TransportError as e:
                logger.debug("Could not read error body: %s", e)
                body = b""
        error = decode_error(response.status, response.headers, body)
        if isinstance(error, S3ServiceError) and (
            error.code == "RequestTimeTooSkewed"
        ):
            self._log_skew(response.headers.get("date", ""))
        raise error

    def _log_skew(self, server_date: str) -> None:
        try:
            server_time = from_http_date(server_date)
        except (TypeError, ValueError):
            logger.warning(
                "Service rejected the request timestamp as skewed; check "
                "the local clock"
            )
            return
        skewed, drift = check_clock_skew(to_amz_date(server_time), utc_now())
        logger.warning(
            "Service rejected the request timestamp as skewed: local clock "
            "differs from the service by %d minute(s)%s",
            drift,
            "" if skewed else " (within tolerance; check signer clock)",
        )

