import anyio
import pytest

from push_starlette.exceptions import DeliveryError
from push_starlette.event import PushEvent
from push_starlette.registry import Subscriber, SubscriberRegistry, Transport
from push_starlette.state import EventSequence


def make_event(id: int) -> PushEvent:
    return PushEvent(id=id, type="update", data={}, timestamp=0, encoded_data="{}")


@pytest.fixture
def registry():
    return SubscriberRegistry(EventSequence())


class TestRegistration:
    def test_register_whenCalled_thenCursorIsCurrentSequence(self, registry):
        # Arrange
        registry.sequence.next()
        registry.sequence.next()

        # Act
        subscriber = registry.register(Subscriber.create(Transport.SSE))

        # Assert
        assert subscriber.id in registry
        assert subscriber.last_delivered_event_id == 2
        assert subscriber.missed_events == 0

    def test_register_whenResumingFromOldEventId_thenGapIsRecordedNotReplayed(self, registry):
        for _ in range(5):
            registry.sequence.next()

        subscriber = registry.register(Subscriber.create(Transport.SSE, last_event_id=3))

        assert subscriber.missed_events == 2
        with pytest.raises(anyio.WouldBlock):
            subscriber.receive_stream.receive_nowait()

    def test_unregister_whenCalledTwice_thenIdempotent(self, registry):
        subscriber = registry.register(Subscriber.create(Transport.WEBSOCKET))

        assert registry.unregister(subscriber.id) is True
        assert registry.unregister(subscriber.id) is False
        assert len(registry) == 0

    def test_unregister_whenCalled_thenChannelIsClosed(self, registry):
        subscriber = registry.register(Subscriber.create(Transport.SSE))
        registry.unregister(subscriber.id)

        with pytest.raises(DeliveryError):
            subscriber.deliver(make_event(1))


class TestDelivery:
    def test_deliver_whenChannelFull_thenRaisesDeliveryError(self):
        subscriber = Subscriber.create(Transport.SSE, buffer_size=1)
        subscriber.deliver(make_event(1))

        with pytest.raises(DeliveryError) as exc_info:
            subscriber.deliver(make_event(2))

        assert exc_info.value.reason == "channel full"
        assert subscriber.last_delivered_event_id == 1

    def test_deliver_whenReceiverClosed_thenRaisesDeliveryError(self):
        subscriber = Subscriber.create(Transport.SSE)
        subscriber.receive_stream.close()

        with pytest.raises(DeliveryError) as exc_info:
            subscriber.deliver(make_event(1))

        assert exc_info.value.reason == "channel closed"


class TestForEachActive:
    def test_forEachActive_whenSubscriberRemovedMidPass_thenSkipped(self, registry):
        a, b, c = (registry.register(Subscriber.create(Transport.SSE)) for _ in range(3))
        visited = []

        def fn(subscriber):
            visited.append(subscriber.id)
            if subscriber is a:
                registry.unregister(b.id)

        count = registry.for_each_active(fn)

        assert visited == [a.id, c.id]
        assert count == 2

    def test_forEachActive_whenEmpty_thenNoCalls(self, registry):
        assert registry.for_each_active(lambda s: pytest.fail("unexpected call")) == 0
