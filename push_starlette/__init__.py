from push_starlette.app import create_app
from push_starlette.broadcast import BroadcastDispatcher, BroadcastResult
from push_starlette.config import PushSettings
from push_starlette.event import PushEvent, ServerSentEvent
from push_starlette.heartbeat import HeartbeatScheduler
from push_starlette.poll import PendingPoll, PollResponder, PollResult
from push_starlette.registry import Subscriber, SubscriberRegistry, Transport
from push_starlette.service import PushService
from push_starlette.sse import EventSourceResponse
from push_starlette.state import EventSequence, StateSnapshot, VersionedState
from push_starlette.webhook import (
    DeliveryAttempt,
    DeliveryStatus,
    RetryPolicy,
    WebhookDispatcher,
    WebhookEndpoint,
    WebhookReceiver,
)

__version__ = "0.1.0"

__all__ = [
    "BroadcastDispatcher",
    "BroadcastResult",
    "DeliveryAttempt",
    "DeliveryStatus",
    "EventSequence",
    "EventSourceResponse",
    "HeartbeatScheduler",
    "PendingPoll",
    "PollResponder",
    "PollResult",
    "PushEvent",
    "PushService",
    "PushSettings",
    "RetryPolicy",
    "ServerSentEvent",
    "StateSnapshot",
    "Subscriber",
    "SubscriberRegistry",
    "Transport",
    "VersionedState",
    "WebhookDispatcher",
    "WebhookEndpoint",
    "WebhookReceiver",
    "create_app",
]
