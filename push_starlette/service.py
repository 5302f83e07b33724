import logging
import random
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import anyio
import httpx
from anyio.abc import TaskGroup

from push_starlette.broadcast import BroadcastDispatcher
from push_starlette.config import PushSettings
from push_starlette.exceptions import PushError, SerializationError
from push_starlette.heartbeat import HeartbeatScheduler
from push_starlette.poll import PollResponder
from push_starlette.registry import SubscriberRegistry, Transport
from push_starlette.state import StateSnapshot, VersionedState, to_millis, utcnow
from push_starlette.webhook import (
    Delivery,
    DeliveryHistory,
    WebhookDispatcher,
    WebhookReceiver,
)

logger = logging.getLogger(__name__)

UPDATE_EVENT = "update"


class PushService:
    """
    Owns every piece of shared state: the versioned value, the subscriber
    registry and the webhook endpoints.

    Request handlers get the service through ``app.state.push`` instead of
    module globals, so each test can build a fresh one. ``running()`` starts
    the heartbeat and the change generator in a task group that also hosts
    background webhook retries.
    """

    def __init__(
        self,
        settings: Optional[PushSettings] = None,
        webhook_client: Optional[httpx.AsyncClient] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings or PushSettings()
        self.state = VersionedState()
        self.poller = PollResponder(
            self.state,
            max_pending=self.settings.poll_max_pending,
            max_timeout=self.settings.poll_max_timeout / 1000,
        )
        self.registry = SubscriberRegistry()
        self.dispatcher = BroadcastDispatcher(self.registry)
        self.heartbeat = HeartbeatScheduler(
            self.dispatcher,
            interval=self.settings.heartbeat_interval,
            transport=Transport.SSE,
        )
        self.webhooks = WebhookDispatcher(
            client=webhook_client,
            policy=self.settings.retry_policy,
            history=DeliveryHistory(self.settings.history_size),
            timeout=self.settings.webhook_timeout,
        )
        self.receiver = WebhookReceiver(
            secret=self.settings.webhook_secret,
            history_size=self.settings.history_size,
            tolerance=self.settings.webhook_tolerance,
        )
        self._rng = rng or random.Random()
        self._task_group: Optional[TaskGroup] = None
        self.state.add_observer(self._on_change)

    def change(self, payload: Any = None) -> StateSnapshot:
        """Increment the version, resolve long polls and broadcast ``update``."""
        return self.state.update(payload)

    def _on_change(self, snapshot: StateSnapshot) -> None:
        data = {
            "version": snapshot.version,
            "timestamp": snapshot.timestamp,
            "data": snapshot.payload,
        }
        try:
            self.dispatcher.broadcast(UPDATE_EVENT, data)
        except SerializationError as e:
            logger.warning("Version %d not broadcast: %s", snapshot.version, e)
            return
        if self._task_group is None:
            skipped = len(self.webhooks.subscribed(UPDATE_EVENT))
            if skipped:
                logger.warning("Service not running, %d webhook notifications skipped", skipped)
            return
        self.webhooks.publish(UPDATE_EVENT, data, self._task_group)

    @property
    def is_running(self) -> bool:
        return self._task_group is not None

    def start_delivery(self, delivery: Delivery) -> Delivery:
        """Run a webhook retry chain in the background."""
        if self._task_group is None:
            raise PushError("service is not running")
        self._task_group.start_soon(self.webhooks.run, delivery)
        return delivery

    def random_payload(self) -> dict:
        return {
            "type": "data-update",
            "value": self._rng.randint(0, 999),
            "timestamp": to_millis(utcnow()),
            "message": "Random data update",
        }

    async def generate_changes(self) -> None:
        """Simulated data source: change the state at random intervals."""
        low = self.settings.change_interval_min
        high = self.settings.change_interval_max
        while True:
            await anyio.sleep(self._rng.uniform(low, high))
            self.change(self.random_payload())

    def health(self) -> dict:
        return {
            "status": "ok",
            "timestamp": to_millis(utcnow()),
            "connectedClients": len(self.registry),
            "pendingRequests": self.poller.pending_count,
            "currentVersion": self.state.version,
            "lastEventId": self.registry.sequence.current,
            "webhookEndpoints": len(self.webhooks.endpoints),
            "webhookAttempts": len(self.webhooks.history),
            "webhooksReceived": len(self.receiver),
        }

    @asynccontextmanager
    async def running(self) -> AsyncIterator["PushService"]:
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            await tg.start(self.heartbeat.run)
            if self.settings.change_generator:
                tg.start_soon(self.generate_changes)
            logger.info("Push service started")
            try:
                yield self
            finally:
                self._task_group = None
                tg.cancel_scope.cancel()
                for subscriber in self.registry.active():
                    self.registry.unregister(subscriber.id)
        await self.webhooks.aclose()
        logger.info("Push service stopped")
