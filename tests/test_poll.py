import anyio
import pytest

from push_starlette.exceptions import PollCapacityError
from push_starlette.poll import PendingPoll, PollResponder
from push_starlette.state import VersionedState


@pytest.fixture
def state():
    return VersionedState()


@pytest.fixture
def responder(state):
    return PollResponder(state, max_pending=10, max_timeout=5.0)


@pytest.mark.anyio
async def test_short_poll_never_blocks(state, responder):
    with anyio.fail_after(0.5):
        result = await responder.poll(0, None)
    assert result.version == 0
    assert result.timed_out is False


@pytest.mark.anyio
@pytest.mark.parametrize("known", [None, -1, -42])
async def test_unknown_version_is_satisfied_immediately(responder, known):
    with anyio.fail_after(0.5):
        result = await responder.poll(known, 5.0)
    assert result.version == 0
    assert result.timed_out is False


@pytest.mark.anyio
async def test_newer_state_returns_immediately(state, responder):
    state.update("fresh")
    with anyio.fail_after(0.5):
        result = await responder.poll(0, 5.0)
    assert result.version == 1
    assert result.payload == "fresh"


@pytest.mark.anyio
async def test_long_poll_resolves_on_change_not_deadline(state, responder):
    async def change_later():
        await anyio.sleep(0.5)
        state.update("v1")

    start = anyio.current_time()
    async with anyio.create_task_group() as tg:
        tg.start_soon(change_later)
        result = await responder.poll(0, 2.0)
    elapsed = anyio.current_time() - start

    assert result.version == 1
    assert result.payload == "v1"
    assert result.timed_out is False
    assert 0.4 <= elapsed < 1.5


@pytest.mark.anyio
async def test_long_poll_times_out_without_change(state, responder):
    result = await responder.poll(0, 0.2)
    assert result.timed_out is True
    assert result.version == 0
    assert result.payload is None
    assert result.as_dict()["message"] == "No update (timeout)"
    assert responder.pending_count == 0


@pytest.mark.anyio
async def test_timeout_is_clamped(state):
    responder = PollResponder(state, max_timeout=0.1)
    with anyio.fail_after(1.0):
        result = await responder.poll(0, 60.0)
    assert result.timed_out is True


@pytest.mark.anyio
async def test_one_change_resolves_all_satisfied_polls(state, responder):
    state.update()  # version 1
    results = {}

    async def poll(name, known, timeout):
        results[name] = await responder.poll(known, timeout)

    async with anyio.create_task_group() as tg:
        tg.start_soon(poll, "a", 1, 2.0)
        tg.start_soon(poll, "b", 1, 2.0)
        tg.start_soon(poll, "ahead", 2, 0.5)
        await anyio.sleep(0.1)
        assert responder.pending_count == 3
        state.update("v2")

    assert results["a"].version == results["b"].version == 2
    assert not results["a"].timed_out and not results["b"].timed_out
    # knew version 2 already, so version 2 is not news
    assert results["ahead"].timed_out is True


@pytest.mark.anyio
async def test_pending_cap(state):
    responder = PollResponder(state, max_pending=1)
    async with anyio.create_task_group() as tg:
        tg.start_soon(responder.poll, 0, 1.0)
        await anyio.sleep(0.05)
        with pytest.raises(PollCapacityError):
            await responder.poll(0, 1.0)
        tg.cancel_scope.cancel()


@pytest.mark.anyio
async def test_cancelled_poll_is_discarded_quietly(state, responder):
    async with anyio.create_task_group() as tg:
        tg.start_soon(responder.poll, 0, 5.0)
        await anyio.sleep(0.05)
        assert responder.pending_count == 1
        tg.cancel_scope.cancel()

    assert responder.pending_count == 0
    # a later change has nothing left to resolve
    state.update()


@pytest.mark.anyio
async def test_pending_poll_resolves_once(state):
    pending = PendingPoll(client_known_version=0, deadline=0.0)
    first = state.update("one")
    second = state.update("two")
    assert pending.resolve(first) is True
    assert pending.resolve(second) is False
    assert pending.result.version == 1
