import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Set

import anyio

from push_starlette.exceptions import PollCapacityError
from push_starlette.state import StateSnapshot, VersionedState, to_millis, utcnow

logger = logging.getLogger(__name__)

NO_KNOWN_VERSION = -1


@dataclass(frozen=True)
class PollResult:
    version: int
    payload: Any
    updated_at_ms: int
    timed_out: bool = False

    @classmethod
    def from_snapshot(cls, snapshot: StateSnapshot) -> "PollResult":
        return cls(snapshot.version, snapshot.payload, snapshot.timestamp)

    def as_dict(self) -> dict:
        if self.timed_out:
            message = "No update (timeout)"
        else:
            message = f"Data version {self.version}"
        return {
            "version": self.version,
            "timestamp": self.updated_at_ms,
            "message": message,
            "data": self.payload,
            "serverTime": to_millis(utcnow()),
            "timedOut": self.timed_out,
        }


@dataclass(eq=False)
class PendingPoll:
    """A held long-poll request waiting for a version newer than it knows."""

    client_known_version: int
    deadline: float
    resolved: bool = False
    result: Optional[PollResult] = None
    _event: anyio.Event = field(default_factory=anyio.Event, repr=False)

    def resolve(self, snapshot: StateSnapshot) -> bool:
        if self.resolved:
            return False
        self.resolved = True
        self.result = PollResult.from_snapshot(snapshot)
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()


def normalize_version(value: Optional[int]) -> int:
    if value is None or value < 0:
        return NO_KNOWN_VERSION
    return value


class PollResponder:
    """
    Answers pull requests against a VersionedState.

    Short polls (``timeout=None``) never block. Long polls return at once when
    the state is already newer than ``client_known_version``; otherwise they
    are parked as PendingPoll until a change or the deadline, whichever
    comes first. One state change resolves every pending poll that it
    satisfies.
    """

    def __init__(
        self,
        state: VersionedState,
        max_pending: int = 1000,
        max_timeout: float = 30.0,
    ) -> None:
        self.state = state
        self.max_pending = max_pending
        self.max_timeout = max_timeout
        self._pending: Set[PendingPoll] = set()
        self._lock = threading.Lock()
        state.add_observer(self._on_change)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def current(self) -> PollResult:
        """Short poll: the current state, whether or not it is new to the caller."""
        return PollResult.from_snapshot(self.state.snapshot())

    async def poll(
        self, client_known_version: Optional[int], timeout: Optional[float]
    ) -> PollResult:
        known = normalize_version(client_known_version)
        if timeout is None:
            return self.current()

        snapshot = self.state.snapshot()
        if snapshot.version > known:
            logger.debug("Immediate response - version: %d", snapshot.version)
            return PollResult.from_snapshot(snapshot)

        timeout = min(max(timeout, 0.0), self.max_timeout)
        pending = self._register(known, timeout)
        try:
            with anyio.move_on_after(timeout):
                await pending.wait()
        finally:
            self._discard(pending)

        if pending.result is not None:
            logger.debug("Long poll resolved - version: %d", pending.result.version)
            return pending.result

        pending.resolved = True
        snapshot = self.state.snapshot()
        logger.debug("Timeout response - client version: %d", known)
        return PollResult(snapshot.version, None, snapshot.timestamp, timed_out=True)

    def _register(self, known: int, timeout: float) -> PendingPoll:
        with self._lock:
            if len(self._pending) >= self.max_pending:
                raise PollCapacityError(
                    f"{len(self._pending)} long polls already pending"
                )
            pending = PendingPoll(
                client_known_version=known,
                deadline=anyio.current_time() + timeout,
            )
            self._pending.add(pending)
        # A change may have landed between the snapshot and the registration.
        snapshot = self.state.snapshot()
        if snapshot.version > known:
            pending.resolve(snapshot)
        logger.debug("Long poll registered - client version: %d", known)
        return pending

    def _discard(self, pending: PendingPoll) -> None:
        with self._lock:
            self._pending.discard(pending)

    def _on_change(self, snapshot: StateSnapshot) -> None:
        with self._lock:
            ready = [
                p
                for p in self._pending
                if p.client_known_version < snapshot.version
            ]
            for pending in ready:
                self._pending.discard(pending)
        resolved = sum(1 for pending in ready if pending.resolve(snapshot))
        if resolved:
            logger.debug(
                "Resolved %d pending polls with version %d", resolved, snapshot.version
            )
