import logging
import threading
from dataclasses import dataclass
from typing import Any, Collection, Optional, Tuple

from push_starlette.event import PushEvent, encode_json
from push_starlette.exceptions import DeliveryError
from push_starlette.registry import Subscriber, SubscriberRegistry, Transport
from push_starlette.state import to_millis, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BroadcastResult:
    event: PushEvent
    attempted: int
    delivered: int
    dropped: Tuple[str, ...] = ()


class BroadcastDispatcher:
    """
    Fans events out to every active subscriber.

    Numbering and delivery happen under one lock and never await, so every
    subscriber sees events in global sequence order. Delivery is
    fire-and-forget; a subscriber whose write fails is unregistered without
    affecting the others.
    """

    def __init__(self, registry: SubscriberRegistry) -> None:
        self.registry = registry
        self.sequence = registry.sequence
        self._lock = threading.RLock()

    def broadcast(
        self,
        event_type: str,
        data: Any = None,
        exclude: Collection[str] = (),
        transport: Optional[Transport] = None,
    ) -> BroadcastResult:
        """
        Deliver one sequenced event to every active subscriber, or to those
        using ``transport`` only, skipping ids in ``exclude``.
        """
        encoded = encode_json(data)
        with self._lock:
            event = PushEvent(
                id=self.sequence.next(),
                type=event_type,
                data=data,
                timestamp=to_millis(utcnow()),
                encoded_data=encoded,
            )
            delivered = 0
            dropped = []

            def deliver(subscriber: Subscriber) -> None:
                nonlocal delivered
                if subscriber.id in exclude:
                    return
                if transport is not None and subscriber.transport is not transport:
                    return
                if self._deliver(subscriber, event):
                    delivered += 1
                else:
                    dropped.append(subscriber.id)

            self.registry.for_each_active(deliver)

        logger.debug(
            "Broadcast %s #%d to %d clients (%d dropped)",
            event_type,
            event.id,
            delivered,
            len(dropped),
        )
        return BroadcastResult(
            event=event,
            attempted=delivered + len(dropped),
            delivered=delivered,
            dropped=tuple(dropped),
        )

    def send_to(self, subscriber_id: str, event_type: str, data: Any = None) -> bool:
        """Deliver one sequenced event to a single subscriber."""
        encoded = encode_json(data)
        with self._lock:
            subscriber = self.registry.get(subscriber_id)
            if subscriber is None:
                return False
            event = PushEvent(
                id=self.sequence.next(),
                type=event_type,
                data=data,
                timestamp=to_millis(utcnow()),
                encoded_data=encoded,
            )
            return self._deliver(subscriber, event)

    def _deliver(self, subscriber: Subscriber, event: PushEvent) -> bool:
        try:
            subscriber.deliver(event)
        except DeliveryError as e:
            logger.warning("Error sending %s to %s: %s", event.type, subscriber.id, e.reason)
            self.registry.unregister(subscriber.id)
            return False
        return True
