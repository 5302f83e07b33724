import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from push_starlette.exceptions import VersionOverflowError

logger = logging.getLogger(__name__)

MAX_VERSION = 2**63 - 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


@dataclass(frozen=True)
class StateSnapshot:
    """A consistent (version, payload, updated_at) triple."""

    version: int
    payload: Any
    updated_at: datetime

    @property
    def timestamp(self) -> int:
        return to_millis(self.updated_at)


ChangeObserver = Callable[[StateSnapshot], None]


class VersionedState:
    """
    Monotonically versioned value observed by every transport.

    ``update`` increments the version by exactly one and notifies observers
    while still holding the lock, so the read-increment-notify sequence is a
    single critical section: no two notifications ever carry the same
    version and none is skipped.

    Observers run synchronously in registration order and must not block.
    """

    def __init__(self, payload: Any = None, max_version: int = MAX_VERSION) -> None:
        self._lock = threading.RLock()
        self._max_version = max_version
        self._snapshot = StateSnapshot(version=0, payload=payload, updated_at=utcnow())
        self._observers: List[ChangeObserver] = []

    @property
    def version(self) -> int:
        return self._snapshot.version

    def snapshot(self) -> StateSnapshot:
        with self._lock:
            return self._snapshot

    def add_observer(self, observer: ChangeObserver) -> None:
        with self._lock:
            self._observers.append(observer)

    def remove_observer(self, observer: ChangeObserver) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def update(self, payload: Any = None) -> StateSnapshot:
        with self._lock:
            current = self._snapshot
            if current.version >= self._max_version:
                raise VersionOverflowError(
                    f"version {current.version} reached the maximum of {self._max_version}"
                )
            snapshot = StateSnapshot(
                version=current.version + 1, payload=payload, updated_at=utcnow()
            )
            self._snapshot = snapshot
            logger.info("State updated - version: %d", snapshot.version)
            for observer in list(self._observers):
                observer(snapshot)
            return snapshot


class EventSequence:
    """Global event id counter shared by broadcasts and heartbeats."""

    def __init__(self, start: int = 0) -> None:
        self._lock = threading.Lock()
        self._value = start

    @property
    def current(self) -> int:
        with self._lock:
            return self._value

    def next(self) -> int:
        with self._lock:
            self._value += 1
            return self._value


def describe(snapshot: StateSnapshot, message: Optional[str] = None) -> dict:
    """JSON body shared by the pull endpoints."""
    return {
        "version": snapshot.version,
        "timestamp": snapshot.timestamp,
        "message": message or f"Data version {snapshot.version}",
        "data": snapshot.payload,
        "serverTime": to_millis(utcnow()),
    }
