import logging
from typing import Optional

import anyio

from push_starlette.broadcast import BroadcastDispatcher
from push_starlette.registry import Transport
from push_starlette.state import to_millis, utcnow

logger = logging.getLogger(__name__)

HEARTBEAT_EVENT = "heartbeat"
DEFAULT_HEARTBEAT_INTERVAL = 30.0


class HeartbeatScheduler:
    """
    Emits ``heartbeat`` events on a fixed interval, independent of data.

    Heartbeats take the same dispatch path and sequence space as data
    events, so a failed keep-alive write unregisters the subscriber just like
    a failed broadcast. With ``transport`` set the global scheduler only
    reaches subscribers of that transport. With ``subscriber_id`` set it
    serves a single connection and stops once that subscriber is gone.
    """

    def __init__(
        self,
        dispatcher: BroadcastDispatcher,
        interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        subscriber_id: Optional[str] = None,
        transport: Optional[Transport] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("heartbeat interval must be greater than 0")
        self.dispatcher = dispatcher
        self.interval = interval
        self.subscriber_id = subscriber_id
        self.transport = transport
        self.ticks = 0
        self._cancel_scope: Optional[anyio.CancelScope] = None

    @property
    def running(self) -> bool:
        return self._cancel_scope is not None

    def tick(self) -> int:
        """Send one heartbeat; returns the number of subscribers reached."""
        self.ticks += 1
        data = {"timestamp": to_millis(utcnow())}
        if self.subscriber_id is not None:
            return int(self.dispatcher.send_to(self.subscriber_id, HEARTBEAT_EVENT, data))
        result = self.dispatcher.broadcast(HEARTBEAT_EVENT, data, transport=self.transport)
        return result.delivered

    async def run(self, *, task_status=anyio.TASK_STATUS_IGNORED) -> None:
        with anyio.CancelScope() as scope:
            self._cancel_scope = scope
            task_status.started()
            try:
                while True:
                    await anyio.sleep(self.interval)
                    if (
                        self.subscriber_id is not None
                        and self.subscriber_id not in self.dispatcher.registry
                    ):
                        logger.debug("Heartbeat for %s stopped", self.subscriber_id)
                        break
                    reached = self.tick()
                    logger.debug("Heartbeat #%d reached %d clients", self.ticks, reached)
            finally:
                self._cancel_scope = None

    def cancel(self) -> None:
        if self._cancel_scope is not None:
            self._cancel_scope.cancel()
