import threading

import pytest

from push_starlette.exceptions import VersionOverflowError
from push_starlette.state import EventSequence, VersionedState, describe


def test_version_starts_at_zero():
    state = VersionedState(payload="initial")
    snapshot = state.snapshot()
    assert snapshot.version == 0
    assert snapshot.payload == "initial"


def test_update_increments_by_exactly_one():
    state = VersionedState()
    versions = [state.update(i).version for i in range(50)]
    assert versions == list(range(1, 51))
    assert state.snapshot().payload == 49


def test_snapshot_is_consistent_triple():
    state = VersionedState()
    before = state.snapshot()
    after = state.update({"a": 1})
    assert after.updated_at >= before.updated_at
    assert state.snapshot() == after
    assert after.timestamp == int(after.updated_at.timestamp() * 1000)


def test_observers_see_every_version_in_order():
    state = VersionedState()
    seen = []
    state.add_observer(lambda s: seen.append(s.version))
    for _ in range(5):
        state.update()
    assert seen == [1, 2, 3, 4, 5]


def test_removed_observer_is_not_called():
    state = VersionedState()
    seen = []

    def observer(snapshot):
        seen.append(snapshot.version)

    state.add_observer(observer)
    state.update()
    state.remove_observer(observer)
    state.update()
    assert seen == [1]


def test_concurrent_writers_never_repeat_or_skip():
    state = VersionedState()
    seen = []
    state.add_observer(lambda s: seen.append(s.version))

    def writer():
        for _ in range(250):
            state.update()

    threads = [threading.Thread(target=writer) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert state.version == 1000
    assert seen == list(range(1, 1001))


def test_overflow_is_fatal_and_leaves_state_untouched():
    state = VersionedState(max_version=2)
    state.update("one")
    state.update("two")
    with pytest.raises(VersionOverflowError):
        state.update("three")
    assert state.version == 2
    assert state.snapshot().payload == "two"


def test_event_sequence_is_monotonic():
    sequence = EventSequence()
    assert sequence.current == 0
    assert [sequence.next() for _ in range(3)] == [1, 2, 3]
    assert sequence.current == 3


def test_describe_reports_version_message():
    state = VersionedState()
    body = describe(state.update({"x": 1}))
    assert body["version"] == 1
    assert body["message"] == "Data version 1"
    assert body["data"] == {"x": 1}
