# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Credential snapshots and the sources that produce them.

A signing operation always works from one immutable ``Credentials``
snapshot, taken once per attempt.  Sources may swap snapshots at any
time; readers see either the old or the new one, never a mix.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from stowage.errors import CredentialError
from stowage.logging import SecretFilter
from stowage.utils import utc_now


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    """Immutable credential snapshot.

    Attributes:
        access_key: Access key ID.
        secret_key: Secret access key.
        session_token: Temporary session token, if any.
        expiration: When temporary credentials stop being valid.
    """

    access_key: str
    secret_key: str
    session_token: str | None = None
    expiration: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"Credentials(access_key={self.access_key!r}, "
            f"secret_key='***', "
            f"session_token={'***' if self.session_token else None}, "
            f"expiration={self.expiration!r})"
        )

    def is_expired(
        self,
        now: datetime | None = None,
        margin: timedelta = timedelta(0),
    ) -> bool:
        """True if the snapshot expires within ``margin`` of ``now``."""
        if self.expiration is None:
            return False
        now = now or utc_now()
        return self.expiration - margin <= now


class CredentialSource(Protocol):
    """Anything that can hand out a credential snapshot."""

    def current(self) -> Credentials:
        """Return a snapshot valid for at least one signing+send.

        Raises:
            CredentialError: If no valid credentials can be produced.
        """
        ...


def _register(creds: Credentials) -> Credentials:
    SecretFilter.register_secrets(
        [creds.access_key, creds.secret_key, creds.session_token]
    )
    return creds


def _retire(old: Credentials, new: Credentials) -> None:
    """Drop the secrets of a replaced snapshot from the redaction registry."""
    kept = {new.access_key, new.secret_key, new.session_token}
    SecretFilter.unregister_secrets(
        s
        for s in (old.access_key, old.secret_key, old.session_token)
        if s not in kept
    )


class StaticCredentials:
    """Fixed credentials.  Never blocks."""

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        session_token: str | None = None,
    ) -> None:
        if not access_key or not secret_key:
            raise CredentialError(
                "static credentials require an access key and a secret key"
            )
        self._creds = _register(
            Credentials(access_key, secret_key, session_token or None)
        )

    def current(self) -> Credentials:
        return self._creds


class RefreshingCredentials:
    """Credentials fetched lazily and refreshed before they expire.

    ``fetch`` is called under a lock, so concurrent callers never trigger
    more than one refresh at a time.  If a refresh fails while the
    previous snapshot is still valid, that snapshot is returned and the
    failure is logged.
    """

    def __init__(
        self,
        fetch: Callable[[], Credentials],
        *,
        refresh_margin: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._fetch = fetch
        self._refresh_margin = refresh_margin
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshot: Credentials | None = None

    def _needs_refresh(self, snapshot: Credentials | None) -> bool:
        return snapshot is None or snapshot.is_expired(
            self._clock(), self._refresh_margin
        )

    def current(self) -> Credentials:
        snapshot = self._snapshot
        if not self._needs_refresh(snapshot):
            assert snapshot is not None
            return snapshot

        with self._lock:
            # Another thread may have refreshed while we waited
            snapshot = self._snapshot
            if not self._needs_refresh(snapshot):
                assert snapshot is not None
                return snapshot

            try:
                fresh = self._fetch()
            except Exception as e:
                if snapshot is not None and not snapshot.is_expired(
                    self._clock()
                ):
                    logger.warning(
                        "Credential refresh failed, using current "
                        "credentials until they expire: %s",
                        e,
                    )
                    return snapshot
                raise CredentialError(f"credential refresh failed: {e}") from e

            if not fresh.access_key or not fresh.secret_key:
                raise CredentialError("credential refresh returned empty keys")

            self._snapshot = _register(fresh)
            if snapshot is not None:
                _retire(snapshot, fresh)
            logger.debug(
                "Refreshed credentials (expiration=%s)", fresh.expiration
            )
            return fresh


class ChainCredentials:
    """Try several sources in order; the first that succeeds wins."""

    def __init__(self, *sources: CredentialSource) -> None:
        if not sources:
            raise CredentialError("credential chain is empty")
        self._sources = sources

    def current(self) -> Credentials:
        failures: list[str] = []
        for source in self._sources:
            try:
                return source.current()
            except CredentialError as e:
                failures.append(f"{type(source).__name__}: {e}")
        raise CredentialError(
            "no credential source produced credentials ("
            + "; ".join(failures)
            + ")"
        )
