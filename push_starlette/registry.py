import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from push_starlette.event import PushEvent
from push_starlette.exceptions import DeliveryError
from push_starlette.state import EventSequence, utcnow

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 100


class Transport(str, Enum):
    SSE = "sse"
    WEBSOCKET = "websocket"


def new_client_id() -> str:
    return f"client-{uuid.uuid4().hex[:12]}"


@dataclass(eq=False)
class Subscriber:
    """
    A connected push client.

    Events reach the transport through a bounded memory channel: the
    dispatcher writes with ``send_nowait`` and the connection handler drains
    ``receive_stream`` onto the socket. A full channel counts as a write
    failure.
    """

    id: str
    transport: Transport
    send_stream: MemoryObjectSendStream = field(repr=False)
    receive_stream: MemoryObjectReceiveStream = field(repr=False)
    connected_at: datetime = field(default_factory=utcnow)
    last_event_id: Optional[int] = None
    last_delivered_event_id: int = 0
    missed_events: int = 0

    @classmethod
    def create(
        cls,
        transport: Transport,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        last_event_id: Optional[int] = None,
        id: Optional[str] = None,
    ) -> "Subscriber":
        send_stream, receive_stream = anyio.create_memory_object_stream(buffer_size)
        return cls(
            id=id or new_client_id(),
            transport=transport,
            send_stream=send_stream,
            receive_stream=receive_stream,
            last_event_id=last_event_id,
        )

    def deliver(self, event: PushEvent) -> None:
        try:
            self.send_stream.send_nowait(event)
        except anyio.WouldBlock:
            raise DeliveryError(self.id, "channel full") from None
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            raise DeliveryError(self.id, "channel closed") from None
        self.last_delivered_event_id = event.id

    def close(self) -> None:
        self.send_stream.close()


class SubscriberRegistry:
    """
    The set of currently connected push subscribers.

    Missed events are not buffered: a client reconnecting with a
    ``Last-Event-ID`` older than the current cursor only gets the events
    emitted after it registers, and the gap is recorded on the subscriber.
    """

    def __init__(self, sequence: Optional[EventSequence] = None) -> None:
        self.sequence = sequence or EventSequence()
        self._subscribers: Dict[str, Subscriber] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def __contains__(self, subscriber_id: object) -> bool:
        with self._lock:
            return subscriber_id in self._subscribers

    def get(self, subscriber_id: str) -> Optional[Subscriber]:
        with self._lock:
            return self._subscribers.get(subscriber_id)

    def register(self, subscriber: Subscriber) -> Subscriber:
        with self._lock:
            cursor = self.sequence.current
            subscriber.last_delivered_event_id = cursor
            if subscriber.last_event_id is not None and subscriber.last_event_id < cursor:
                subscriber.missed_events = cursor - subscriber.last_event_id
            self._subscribers[subscriber.id] = subscriber
            total = len(self._subscribers)
        if subscriber.missed_events:
            logger.info(
                "Client %s resumed from event %d, %d events not replayed",
                subscriber.id,
                subscriber.last_event_id,
                subscriber.missed_events,
            )
        logger.info("Client connected: %s. Total clients: %d", subscriber.id, total)
        return subscriber

    def unregister(self, subscriber_id: str) -> bool:
        with self._lock:
            subscriber = self._subscribers.pop(subscriber_id, None)
            total = len(self._subscribers)
        if subscriber is None:
            return False
        subscriber.close()
        logger.info("Client disconnected: %s. Total clients: %d", subscriber_id, total)
        return True

    def active(self) -> List[Subscriber]:
        with self._lock:
            return list(self._subscribers.values())

    def for_each_active(self, fn: Callable[[Subscriber], None]) -> int:
        """
        Call ``fn`` for every registered subscriber.

        Iterates over a snapshot; a subscriber unregistered while the pass is
        running is skipped for the rest of it. Returns the number of calls.
        """
        visited = 0
        for subscriber in self.active():
            if subscriber.id not in self:
                continue
            fn(subscriber)
            visited += 1
        return visited
