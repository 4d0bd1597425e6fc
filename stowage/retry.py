# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Retry policy for the request executor."""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from stowage.errors import (
    ChecksumMismatchError,
    ProtocolError,
    RequestTimeoutError,
    S3ServiceError,
    TransportError,
    ValidationError,
)


#: HTTP statuses that indicate a transient service condition.
DEFAULT_RETRYABLE_STATUSES: frozenset[int] = frozenset(
    {429, 500, 502, 503, 504}
)

_RNG = random.Random()

#: Service error codes that indicate throttling or an internal failure.
DEFAULT_RETRYABLE_CODES: frozenset[str] = frozenset(
    {
        "InternalError",
        "SlowDown",
        "ServiceUnavailable",
        "RequestTimeout",
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "TooManyRequests",
    }
)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter, bounded by an attempt count.

    Attributes:
        max_attempts: Total attempts including the first one.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound on the un-jittered delay.
        jitter: Multiplier range applied to each delay.
        retryable_statuses: HTTP statuses worth retrying.
        retryable_codes: Service error codes worth retrying.
        retry_non_idempotent: Also retry requests that are not idempotent.
        retry_complete_multipart: Allow CompleteMultipartUpload to be
            retried once ListParts shows the upload is still open.  A
            completion the service applied but whose response was lost
            leaves no open upload, so it is not retried; a service that
            keeps the upload listable after completing it could still
            see the request twice.
    """

    max_attempts: int = 3
    base_delay: float = 0.2
    max_delay: float = 20.0
    jitter: tuple[float, float] = (0.5, 1.0)
    retryable_statuses: frozenset[int] = field(
        default=DEFAULT_RETRYABLE_STATUSES
    )
    retryable_codes: frozenset[str] = field(default=DEFAULT_RETRYABLE_CODES)
    retry_non_idempotent: bool = False
    retry_complete_multipart: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValidationError(
                f"max_attempts must be >= 1, got {self.max_attempts}"
            )
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValidationError("retry delays must be non-negative")
        low, high = self.jitter
        if low < 0 or high < low:
            raise ValidationError(
                f"jitter must satisfy 0 <= min <= max, got {self.jitter}"
            )

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        """Policy that makes exactly one attempt."""
        return cls(max_attempts=1)

    def is_retryable_error(self, error: BaseException) -> bool:
        """Whether ``error`` is transient, ignoring attempt count."""
        if isinstance(error, (TransportError, RequestTimeoutError)):
            return True
        if isinstance(error, ChecksumMismatchError):
            return False
        if isinstance(error, S3ServiceError):
            return (
                error.code in self.retryable_codes
                or error.status in self.retryable_statuses
            )
        if isinstance(error, ProtocolError):
            return error.status in self.retryable_statuses
        return False

    def should_retry(
        self,
        error: BaseException,
        attempt: int,
        *,
        idempotent: bool,
        replayable: bool = True,
    ) -> bool:
        """Decide whether to make another attempt after ``error``.

        Args:
            error: The failure of attempt number ``attempt``.
            attempt: 1-based number of the attempt that just failed.
            idempotent: Whether repeating the request is side-effect free.
            replayable: Whether the request body can be sent again.

        Returns:
            True if the executor should back off and try again.
        """
        if attempt >= self.max_attempts:
            return False
        if not replayable:
            return False
        if not idempotent and not self.retry_non_idempotent:
            return False
        return self.is_retryable_error(error)

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Backoff before the retry following attempt number ``attempt``."""
        rng = rng or _RNG
        raw = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return raw * rng.uniform(*self.jitter)
