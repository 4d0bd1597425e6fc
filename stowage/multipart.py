# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Multipart upload sessions, part planning and the session registry.

Session state machine::

    INITIATED ──(part uploaded)*──> COMPLETING ──> COMPLETED
        │  ^                            │
        │  └────────(complete failed)───┘
        │
        └──> ABORTING ──> ABORTED

COMPLETED and ABORTED are terminal.  Any transition from a terminal state
(or any other transition not drawn above) raises ``SessionStateError``.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from stowage.errors import SessionStateError, ValidationError
from stowage.models import CompletedPart


logger = logging.getLogger(__name__)

MiB = 1024 * 1024
GiB = 1024 * MiB
TiB = 1024 * GiB

#: Smallest part the service accepts (except for the last part).
MIN_PART_SIZE = 5 * MiB

#: Largest part the service accepts.
MAX_PART_SIZE = 5 * GiB

#: Highest part number.
MAX_PARTS = 10000

#: Largest object a multipart upload can produce.
MAX_OBJECT_SIZE = 5 * TiB

#: Default part size before doubling.
DEFAULT_PART_SIZE = 5 * MiB


class SessionState(enum.Enum):
    INITIATED = "initiated"
    COMPLETING = "completing"
    COMPLETED = "completed"
    ABORTING = "aborting"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.ABORTED)


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.INITIATED: frozenset(
        {SessionState.COMPLETING, SessionState.ABORTING}
    ),
    SessionState.COMPLETING: frozenset(
        {SessionState.COMPLETED, SessionState.INITIATED}
    ),
    SessionState.ABORTING: frozenset(
        {SessionState.ABORTED, SessionState.INITIATED}
    ),
    SessionState.COMPLETED: frozenset(),
    SessionState.ABORTED: frozenset(),
}


# ---------------------------------------------------------------------------
# Part planning
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PartPlan:
    """A byte window of the source that becomes one part."""

    part_number: int
    offset: int
    size: int


def choose_part_size(total: int, part_size: int = DEFAULT_PART_SIZE) -> int:
    """Smallest doubling of ``part_size`` that fits ``total`` in 10000 parts.

    Raises:
        ValidationError: If the object is too large or the configured part
            size is outside the service limits.
    """
    if total < 0:
        raise ValidationError(f"object size cannot be negative: {total}")
    if total > MAX_OBJECT_SIZE:
        raise ValidationError(
            f"object size {total} exceeds the maximum of {MAX_OBJECT_SIZE}"
        )
    check_part_size(part_size)
    while part_size * MAX_PARTS < total:
        part_size *= 2
    check_part_size(part_size)
    return part_size


def check_part_size(part_size: int) -> None:
    """Reject a configured part size outside ``[5 MiB, 5 GiB]``."""
    if part_size < MIN_PART_SIZE:
        raise ValidationError(
            f"part size {part_size} is below the minimum of {MIN_PART_SIZE}"
        )
    if part_size > MAX_PART_SIZE:
        raise ValidationError(
            f"part size {part_size} exceeds the maximum of {MAX_PART_SIZE}"
        )


def plan_parts(
    total: int, part_size: int = DEFAULT_PART_SIZE
) -> list[PartPlan]:
    """Split ``total`` bytes into parts.

    Every part is ``part_size`` bytes (doubled as needed to stay within
    10000 parts) except the last, which carries the remainder.

    Example:
        >>> [p.size // MiB for p in plan_parts(12 * MiB)]
        [5, 5, 2]
    """
    size = choose_part_size(total, part_size)
    plans: list[PartPlan] = []
    offset = 0
    number = 1
    while offset < total:
        length = min(size, total - offset)
        plans.append(PartPlan(number, offset, length))
        offset += length
        number += 1
    if len(plans) > MAX_PARTS:
        raise ValidationError(
            f"object of {total} bytes needs more than {MAX_PARTS} parts"
        )
    return plans


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class MultipartUploadSession:
    """Client-side view of one multipart upload.

    Parts may be recorded from several worker threads; the part map is
    guarded by a lock and each part number can be written only once.
    """

    def __init__(self, bucket: str, key: str, upload_id: str) -> None:
        self.bucket = bucket
        self.key = key
        self.upload_id = upload_id
        self._state = SessionState.INITIATED
        self._parts: dict[int, CompletedPart] = {}
        self._failed: set[int] = set()
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return (
            f"MultipartUploadSession(bucket={self.bucket!r}, "
            f"key={self.key!r}, upload_id={self.upload_id!r}, "
            f"state={self._state.name}, parts={len(self._parts)})"
        )

    @property
    def state(self) -> SessionState:
        return self._state

    def transition(self, new_state: SessionState) -> None:
        """Move to ``new_state``.

        Raises:
            SessionStateError: If the transition is not allowed.
        """
        with self._lock:
            if new_state not in _TRANSITIONS[self._state]:
                raise SessionStateError(
                    f"upload {self.upload_id}: illegal transition "
                    f"{self._state.name} -> {new_state.name}"
                )
            logger.debug(
                "Upload %s: %s -> %s",
                self.upload_id,
                self._state.name,
                new_state.name,
            )
            self._state = new_state

    def record_part(self, part: CompletedPart) -> None:
        """Record a part the service acknowledged.

        Raises:
            SessionStateError: If the session is not accepting parts.
            ValidationError: If the part number is out of range or was
                already recorded.
        """
        if not 1 <= part.part_number <= MAX_PARTS:
            raise ValidationError(
                f"part number {part.part_number} outside [1, {MAX_PARTS}]"
            )
        with self._lock:
            if self._state is not SessionState.INITIATED:
                raise SessionStateError(
                    f"upload {self.upload_id}: cannot record part "
                    f"{part.part_number} in state {self._state.name}"
                )
            if part.part_number in self._parts:
                raise ValidationError(
                    f"part {part.part_number} already recorded for "
                    f"upload {self.upload_id}"
                )
            self._parts[part.part_number] = part
            self._failed.discard(part.part_number)

    def record_failure(self, part_number: int) -> None:
        with self._lock:
            self._failed.add(part_number)

    @property
    def failed_parts(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._failed)

    @property
    def parts(self) -> list[CompletedPart]:
        """Recorded parts ordered by part number."""
        with self._lock:
            return [self._parts[n] for n in sorted(self._parts)]

    @property
    def bytes_uploaded(self) -> int:
        with self._lock:
            return sum(p.size for p in self._parts.values())

    def check_complete(self, expected: Iterable[int] | None = None) -> None:
        """Validate the part list before CompleteMultipartUpload.

        Args:
            expected: Part numbers that must be present.  Defaults to a
                contiguous ``1..N`` for the highest recorded part.

        Raises:
            ValidationError: If the list is empty, a part is missing, or a
                non-final part is below the minimum part size.
        """
        parts = self.parts
        if not parts:
            raise ValidationError(
                f"upload {self.upload_id}: no parts to complete"
            )
        present = {p.part_number for p in parts}
        if expected is None:
            wanted = set(range(1, parts[-1].part_number + 1))
        else:
            wanted = set(expected)
        missing = sorted(wanted - present)
        if missing:
            raise ValidationError(
                f"upload {self.upload_id}: missing part(s) "
                f"{', '.join(str(n) for n in missing)}"
            )
        for part in parts[:-1]:
            # Sizes are unknown (0) for parts adopted from ListParts
            if 0 < part.size < MIN_PART_SIZE:
                raise ValidationError(
                    f"upload {self.upload_id}: part {part.part_number} is "
                    f"{part.size} bytes, below the minimum of "
                    f"{MIN_PART_SIZE} for a non-final part"
                )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class SessionRegistry:
    """Client-owned map of open upload sessions keyed by upload ID.

    A session is mutated by one owner at a time: ``claim`` hands out
    exclusive ownership until the matching ``release``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, MultipartUploadSession] = {}
        self._owned: set[str] = set()

    def add(self, session: MultipartUploadSession) -> None:
        with self._lock:
            if session.upload_id in self._sessions:
                raise ValidationError(
                    f"upload {session.upload_id} is already registered"
                )
            self._sessions[session.upload_id] = session

    def get(self, upload_id: str) -> MultipartUploadSession | None:
        with self._lock:
            return self._sessions.get(upload_id)

    def remove(self, upload_id: str) -> None:
        with self._lock:
            self._sessions.pop(upload_id, None)
            self._owned.discard(upload_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, upload_id: object) -> bool:
        with self._lock:
            return upload_id in self._sessions

    def open_sessions(self) -> list[MultipartUploadSession]:
        """Sessions that have not reached a terminal state."""
        with self._lock:
            return [
                s for s in self._sessions.values() if not s.state.terminal
            ]

    @contextmanager
    def claim(self, upload_id: str) -> Iterator[MultipartUploadSession]:
        """Take exclusive ownership of a session for the ``with`` block.

        Terminal sessions are dropped from the registry on release.

        Raises:
            ValidationError: If the session is unknown or already owned.
        """
        with self._lock:
            session = self._sessions.get(upload_id)
            if session is None:
                raise ValidationError(f"unknown upload {upload_id}")
            if upload_id in self._owned:
                raise SessionStateError(
                    f"upload {upload_id} is owned by another operation"
                )
            self._owned.add(upload_id)
        try:
            yield session
        finally:
            with self._lock:
                self._owned.discard(upload_id)
                if session.state.terminal:
                    self._sessions.pop(upload_id, None)
