import json
import logging
from typing import Any, Optional

import anyio
from starlette.websockets import WebSocket, WebSocketDisconnect

from push_starlette.broadcast import BroadcastDispatcher
from push_starlette.exceptions import SerializationError
from push_starlette.heartbeat import DEFAULT_HEARTBEAT_INTERVAL, HeartbeatScheduler
from push_starlette.registry import Subscriber, SubscriberRegistry, Transport

logger = logging.getLogger(__name__)

RELAYED_TYPES = frozenset({"chat", "message"})


class WebSocketSession:
    """
    One WebSocket connection registered as a push subscriber.

    All outbound frames, including replies to this client, go through the
    subscriber channel so they keep the global event order. A single writer
    task drains the channel while the reader handles inbound messages, and a
    heartbeat scheduler bound to this connection keeps it alive.
    """

    def __init__(
        self,
        websocket: WebSocket,
        dispatcher: BroadcastDispatcher,
        buffer_size: int = 100,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
    ) -> None:
        self.websocket = websocket
        self.dispatcher = dispatcher
        self.registry: SubscriberRegistry = dispatcher.registry
        self.buffer_size = buffer_size
        self.heartbeat_interval = heartbeat_interval
        self.subscriber: Optional[Subscriber] = None

    async def run(self) -> None:
        await self.websocket.accept()
        subscriber = self.registry.register(
            Subscriber.create(Transport.WEBSOCKET, self.buffer_size)
        )
        self.subscriber = subscriber
        self.dispatcher.send_to(
            subscriber.id,
            "connection",
            {"clientId": subscriber.id, "message": "Connected to WebSocket server"},
        )
        heartbeat = HeartbeatScheduler(
            self.dispatcher, self.heartbeat_interval, subscriber_id=subscriber.id
        )
        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._write_loop, subscriber, tg.cancel_scope)
                await tg.start(heartbeat.run)
                await self._read_loop(subscriber)
                tg.cancel_scope.cancel()
        finally:
            if self.registry.unregister(subscriber.id):
                self.dispatcher.broadcast(
                    "client-disconnected", {"clientId": subscriber.id}
                )

    async def _read_loop(self, subscriber: Subscriber) -> None:
        while True:
            message = await self.websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            if message.get("text") is not None:
                raw = message["text"]
            else:
                raw = (message.get("bytes") or b"").decode("utf-8", "replace")
            self.handle_message(subscriber.id, raw)

    async def _write_loop(
        self, subscriber: Subscriber, cancel_scope: anyio.CancelScope
    ) -> None:
        receive_stream = subscriber.receive_stream
        try:
            async with receive_stream:
                async for event in receive_stream:
                    await self.websocket.send_json(event.to_message())
            # Channel closed by the registry: this subscriber was dropped.
            await self.websocket.close()
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("Write to %s failed: %r", subscriber.id, e)
        cancel_scope.cancel()

    def handle_message(self, client_id: str, raw: str) -> None:
        try:
            data: Any = json.loads(raw)
        except ValueError:
            data = None
        if not isinstance(data, dict):
            logger.info("Invalid message from %s", client_id)
            self.dispatcher.send_to(
                client_id, "error", {"message": "Invalid message format"}
            )
            return

        logger.info("Received from %s: %s", client_id, data.get("type"))
        try:
            self.dispatcher.send_to(client_id, "echo", {"originalMessage": data})
            if data.get("type") in RELAYED_TYPES:
                self.dispatcher.broadcast(
                    "broadcast",
                    {"from": client_id, "message": data.get("message") or data.get("text")},
                    exclude={client_id},
                )
        except SerializationError as e:
            logger.warning("Cannot relay message from %s: %s", client_id, e)
            self.dispatcher.send_to(client_id, "error", {"message": str(e)})
