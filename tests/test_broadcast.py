import math

import anyio
import pytest

from push_starlette.broadcast import BroadcastDispatcher
from push_starlette.exceptions import SerializationError
from push_starlette.heartbeat import HeartbeatScheduler
from push_starlette.registry import Subscriber, SubscriberRegistry, Transport


@pytest.fixture
def registry():
    return SubscriberRegistry()


@pytest.fixture
def dispatcher(registry):
    return BroadcastDispatcher(registry)


def drain(subscriber):
    events = []
    while True:
        try:
            events.append(subscriber.receive_stream.receive_nowait())
        except anyio.WouldBlock:
            return events


def test_fan_out_reaches_every_subscriber_with_identical_event(registry, dispatcher):
    subscribers = [registry.register(Subscriber.create(Transport.SSE)) for _ in range(3)]

    result = dispatcher.broadcast("update", {"value": 7})

    assert result.attempted == 3
    assert result.delivered == 3
    received = [drain(s) for s in subscribers]
    assert all(len(events) == 1 for events in received)
    assert {events[0].id for events in received} == {result.event.id}
    assert all(events[0].data == {"value": 7} for events in received)


def test_heartbeats_and_data_share_one_sequence(registry, dispatcher):
    subscribers = [registry.register(Subscriber.create(Transport.SSE)) for _ in range(3)]
    heartbeat = HeartbeatScheduler(dispatcher, interval=30)

    heartbeat.tick()
    dispatcher.broadcast("update", {"n": 1})
    heartbeat.tick()

    for subscriber in subscribers:
        events = drain(subscriber)
        assert [e.type for e in events] == ["heartbeat", "update", "heartbeat"]
        assert [e.id for e in events] == [1, 2, 3]
        assert subscriber.last_delivered_event_id == 3


def test_failing_subscriber_is_dropped_without_affecting_others(registry, dispatcher):
    healthy = registry.register(Subscriber.create(Transport.SSE))
    slow = registry.register(Subscriber.create(Transport.WEBSOCKET, buffer_size=1))
    dispatcher.broadcast("update", 1)  # fills the slow channel

    result = dispatcher.broadcast("update", 2)

    assert result.dropped == (slow.id,)
    assert result.delivered == 1
    assert slow.id not in registry
    assert [e.data for e in drain(healthy)] == [1, 2]


def test_closed_subscriber_is_unregistered(registry, dispatcher):
    gone = registry.register(Subscriber.create(Transport.SSE))
    gone.receive_stream.close()

    result = dispatcher.broadcast("update", {})

    assert result.dropped == (gone.id,)
    assert len(registry) == 0


def test_unserializable_payload_is_rejected_before_numbering(registry, dispatcher):
    subscriber = registry.register(Subscriber.create(Transport.SSE))

    with pytest.raises(SerializationError):
        dispatcher.broadcast("update", {"bad": object()})
    with pytest.raises(SerializationError):
        dispatcher.broadcast("update", {"nan": math.nan})

    assert registry.sequence.current == 0
    assert drain(subscriber) == []
    assert subscriber.id in registry


def test_exclude_skips_sender(registry, dispatcher):
    sender = registry.register(Subscriber.create(Transport.WEBSOCKET))
    other = registry.register(Subscriber.create(Transport.WEBSOCKET))

    result = dispatcher.broadcast("broadcast", {"message": "hi"}, exclude={sender.id})

    assert result.delivered == 1
    assert drain(sender) == []
    assert [e.type for e in drain(other)] == ["broadcast"]


def test_send_to_uses_global_sequence(registry, dispatcher):
    a = registry.register(Subscriber.create(Transport.SSE))
    b = registry.register(Subscriber.create(Transport.SSE))

    assert dispatcher.send_to(a.id, "connection", {}) is True
    dispatcher.broadcast("update", {})

    assert [e.id for e in drain(a)] == [1, 2]
    assert [e.id for e in drain(b)] == [2]


def test_send_to_unknown_subscriber(dispatcher):
    assert dispatcher.send_to("client-missing", "connection", {}) is False
