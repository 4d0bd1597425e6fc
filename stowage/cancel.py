# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Cooperative cancellation for requests and transfers.

A ``CancelToken`` wraps a ``threading.Event``.  Child tokens observe their
parent, so a transfer can cancel its own in-flight parts (child token)
while still honouring a cancel issued by the caller (parent token).
"""

from __future__ import annotations

import threading
import time

from stowage.errors import CancellationError


# Upper bound on a single Event.wait() while a parent is being watched
_POLL_INTERVAL = 0.05


class CancelToken:
    """Thread-safe cancellation flag with optional parent linkage."""

    def __init__(self, parent: CancelToken | None = None) -> None:
        self._event = threading.Event()
        self._parent = parent
        self._reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation.  Idempotent."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        """True if this token or any ancestor was cancelled."""
        token: CancelToken | None = self
        while token is not None:
            if token._event.is_set():
                return True
            token = token._parent
        return False

    @property
    def reason(self) -> str:
        """Reason given by the nearest cancelled token, if any."""
        token: CancelToken | None = self
        while token is not None:
            if token._event.is_set():
                return token._reason
            token = token._parent
        return ""

    def raise_if_cancelled(self) -> None:
        """Raise ``CancellationError`` if cancellation was requested."""
        if self.cancelled:
            raise CancellationError(self.reason or "cancelled")

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds, waking early on cancellation.

        Returns:
            True if cancelled, False if the full timeout elapsed.
        """
        if self._parent is None:
            return self._event.wait(timeout)

        deadline = time.monotonic() + timeout
        while not self.cancelled:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._event.wait(min(remaining, _POLL_INTERVAL))
        return True

    def child(self) -> CancelToken:
        """Create a token that is cancelled whenever this one is."""
        return CancelToken(parent=self)


def check(token: CancelToken | None) -> None:
    """Raise ``CancellationError`` if ``token`` is set.  None is a no-op."""
    if token is not None:
        token.raise_if_cancelled()
