"""
Signed, at-least-once webhook delivery.

Every attempt is signed on its own with HMAC-SHA256 over
``"<timestamp>.<event type>.<body>"`` and is appended to a bounded,
newest-first history. Transient failures (network errors, timeouts, 429 and
5xx) are retried with exponential backoff until the retry budget runs out;
other non-2xx answers end the chain immediately.

The body is an envelope ``{"id": <delivery id>, "type": ..., "data": ...}``.
The delivery id stays the same across retries so receivers can
deduplicate; exactly-once is not guaranteed.
"""
import hashlib
import hmac
import json
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, FrozenSet, Iterable, List, Mapping, Optional

import anyio
import httpx
from anyio.abc import TaskGroup

from push_starlette.event import encode_json
from push_starlette.exceptions import (
    PermanentDeliveryError,
    SerializationError,
    TransientDeliveryError,
    WebhookError,
)
from push_starlette.state import to_millis, utcnow

logger = logging.getLogger(__name__)

DEFAULT_SECRET = "your-webhook-secret-key-change-in-production"
DEFAULT_TOLERANCE = 300
DEFAULT_HISTORY_SIZE = 100

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_HEADER = "X-Webhook-Delivery"
ATTEMPT_HEADER = "X-Webhook-Attempt"
USER_AGENT = "Webhook-Sender/1.0"


def sign_payload(secret: str, event_type: str, body: bytes, timestamp: int) -> str:
    message = f"{timestamp}.{event_type}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str,
    event_type: str,
    body: bytes,
    timestamp: Optional[int],
    signature: Optional[str],
    tolerance: Optional[float] = DEFAULT_TOLERANCE,
    now: Optional[float] = None,
) -> bool:
    """
    Recompute the signature and compare in constant time.

    ``timestamp`` is in milliseconds. Signatures older (or further in the
    future) than ``tolerance`` seconds are rejected as stale.
    """
    if not signature or timestamp is None:
        return False
    if tolerance is not None:
        now = time.time() if now is None else now
        if abs(now - timestamp / 1000) > tolerance:
            return False
    expected = sign_payload(secret, event_type, body, timestamp)
    return hmac.compare_digest(expected, signature)


@dataclass(frozen=True)
class WebhookEndpoint:
    url: str
    secret: str = DEFAULT_SECRET
    event_types: FrozenSet[str] = frozenset()

    def accepts(self, event_type: str) -> bool:
        return not self.event_types or event_type in self.event_types


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    EXHAUSTED = "exhausted"

    @property
    def terminal(self) -> bool:
        return self is not DeliveryStatus.PENDING


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: the wait after attempt ``n`` is ``base_delay * factor**n``."""

    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must not be negative")

    def delay(self, attempt_number: int) -> float:
        return min(self.max_delay, self.base_delay * self.factor**attempt_number)


@dataclass
class DeliveryAttempt:
    delivery_id: str
    endpoint_url: str
    event_type: str
    payload: Any
    attempt_number: int
    status: DeliveryStatus
    signature: str
    timestamp: int
    status_code: Optional[int] = None
    error: Optional[str] = None
    # receiver's signature check, when its answer reports one
    verified: Optional[bool] = None

    def as_dict(self) -> dict:
        return {
            "deliveryId": self.delivery_id,
            "url": self.endpoint_url,
            "eventType": self.event_type,
            "payload": self.payload,
            "attempt": self.attempt_number,
            "status": self.status.value,
            "signature": self.signature,
            "timestamp": self.timestamp,
            "statusCode": self.status_code,
            "error": self.error,
            "verified": self.verified,
        }


class Delivery:
    """One event sent to one endpoint, across all of its attempts."""

    def __init__(self, endpoint: WebhookEndpoint, event_type: str, payload: Any) -> None:
        self.id = str(uuid.uuid4())
        self.endpoint = endpoint
        self.event_type = event_type
        self.payload = payload
        self.body = encode_json(
            {"id": self.id, "type": event_type, "data": payload}
        ).encode("utf-8")
        self.attempts: List[DeliveryAttempt] = []
        self.status = DeliveryStatus.PENDING
        self.error: Optional[str] = None
        self._first_attempt = anyio.Event()
        self._done = anyio.Event()

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def done(self) -> bool:
        return self.status.terminal

    @property
    def latest(self) -> Optional[DeliveryAttempt]:
        return self.attempts[-1] if self.attempts else None

    def _record(self, attempt: DeliveryAttempt) -> None:
        self.attempts.append(attempt)
        if attempt.status.terminal:
            self._finish(attempt.status, attempt.error)
        self._first_attempt.set()

    def _finish(self, status: DeliveryStatus, error: Optional[str] = None) -> None:
        self.status = status
        self.error = error
        self._first_attempt.set()
        self._done.set()

    async def wait_first(self) -> None:
        await self._first_attempt.wait()

    async def wait(self) -> None:
        await self._done.wait()

    def as_dict(self) -> dict:
        latest = self.latest
        return {
            "deliveryId": self.id,
            "url": self.endpoint.url,
            "eventType": self.event_type,
            "status": self.status.value,
            "attempts": self.attempt_count,
            "statusCode": latest.status_code if latest else None,
            "error": self.error if self.error else (latest.error if latest else None),
        }


class DeliveryHistory:
    """Bounded log of delivery attempts, newest first."""

    def __init__(self, maxlen: int = DEFAULT_HISTORY_SIZE) -> None:
        self._entries: Deque[DeliveryAttempt] = deque(maxlen=maxlen)

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, attempt: DeliveryAttempt) -> None:
        self._entries.appendleft(attempt)

    def recent(self, limit: Optional[int] = None) -> List[DeliveryAttempt]:
        entries = list(self._entries)
        return entries if limit is None else entries[: max(limit, 0)]

    def for_delivery(self, delivery_id: str) -> List[DeliveryAttempt]:
        return [a for a in self._entries if a.delivery_id == delivery_id]


def check_response(response: httpx.Response) -> None:
    code = response.status_code
    if 200 <= code < 300:
        return
    reason = f"HTTP {code}: {response.reason_phrase}"
    if code == 429 or code >= 500:
        raise TransientDeliveryError(reason, status_code=code)
    raise PermanentDeliveryError(reason, status_code=code)


def receiver_verdict(response: httpx.Response) -> Optional[bool]:
    """The ``verified`` flag of a JSON answer, as ``/webhook/receive`` gives."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("verified"), bool):
        return body["verified"]
    return None


class WebhookDispatcher:
    """
    Sends webhook deliveries and keeps the set of registered endpoints.

    Endpoints registered here receive ``publish``-ed events. A delivery
    chain whose endpoint is deregistered while it waits between attempts is
    aborted before the next attempt.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        policy: Optional[RetryPolicy] = None,
        history: Optional[DeliveryHistory] = None,
        timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = anyio.sleep,
    ) -> None:
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient()
        self.policy = policy or RetryPolicy()
        self.history = history if history is not None else DeliveryHistory()
        self.timeout = timeout
        self._sleep = sleep
        self._endpoints: Dict[str, WebhookEndpoint] = {}

    def register(self, endpoint: WebhookEndpoint) -> None:
        self._endpoints[endpoint.url] = endpoint
        logger.info("Webhook endpoint registered: %s", endpoint.url)

    def unregister(self, url: str) -> bool:
        removed = self._endpoints.pop(url, None) is not None
        if removed:
            logger.info("Webhook endpoint removed: %s", url)
        return removed

    def is_registered(self, url: str) -> bool:
        return url in self._endpoints

    @property
    def endpoints(self) -> List[WebhookEndpoint]:
        return list(self._endpoints.values())

    def subscribed(self, event_type: str) -> List[WebhookEndpoint]:
        return [e for e in self._endpoints.values() if e.accepts(event_type)]

    def create_delivery(
        self, endpoint: WebhookEndpoint, event_type: str, payload: Any
    ) -> Delivery:
        return Delivery(endpoint, event_type, payload)

    async def deliver(
        self, endpoint: WebhookEndpoint, event_type: str, payload: Any
    ) -> Delivery:
        delivery = self.create_delivery(endpoint, event_type, payload)
        await self.run(delivery)
        return delivery

    def publish(
        self, event_type: str, payload: Any, task_group: TaskGroup
    ) -> List[Delivery]:
        """
        Start a delivery to every registered endpoint subscribed to
        ``event_type`` in ``task_group``; retries continue in the background.
        """
        deliveries = [
            self.create_delivery(endpoint, event_type, payload)
            for endpoint in self.subscribed(event_type)
        ]
        for delivery in deliveries:
            task_group.start_soon(self.run, delivery)
        return deliveries

    async def run(self, delivery: Delivery) -> Delivery:
        try:
            await self._run(delivery)
        except anyio.get_cancelled_exc_class():
            if not delivery.done:
                self._abandon(delivery, "service stopped")
            raise
        return delivery

    async def _run(self, delivery: Delivery) -> None:
        url = delivery.endpoint.url
        registered = self.is_registered(url)
        max_attempts = self.policy.max_attempts
        for attempt_number in range(1, max_attempts + 1):
            if attempt_number > 1:
                delay = self.policy.delay(attempt_number - 1)
                logger.warning(
                    "Webhook %s to %s: retrying in %.2fs (attempt %d/%d)",
                    delivery.id,
                    url,
                    delay,
                    attempt_number,
                    max_attempts,
                )
                await self._sleep(delay)
                if registered and not self.is_registered(url):
                    self._abandon(delivery, "endpoint deregistered")
                    return

            attempt = await self._attempt(delivery, attempt_number)
            self.history.append(attempt)
            delivery._record(attempt)
            if attempt.status.terminal:
                break

        if delivery.status is DeliveryStatus.EXHAUSTED:
            logger.warning(
                "Webhook %s to %s exhausted after %d attempts: %s",
                delivery.id,
                url,
                delivery.attempt_count,
                delivery.error,
            )

    def _abandon(self, delivery: Delivery, reason: str) -> None:
        # The last recorded attempt was waiting for a retry that will not come.
        latest = delivery.latest
        if latest is not None and latest.status is DeliveryStatus.PENDING:
            latest.status = DeliveryStatus.FAILED
            latest.error = f"{latest.error}; retry abandoned: {reason}"
        delivery._finish(DeliveryStatus.FAILED, reason)
        logger.warning(
            "Webhook %s to %s abandoned after %d attempts: %s",
            delivery.id,
            delivery.endpoint.url,
            delivery.attempt_count,
            reason,
        )

    async def _attempt(self, delivery: Delivery, attempt_number: int) -> DeliveryAttempt:
        endpoint = delivery.endpoint
        timestamp = to_millis(utcnow())
        signature = sign_payload(
            endpoint.secret, delivery.event_type, delivery.body, timestamp
        )
        attempt = DeliveryAttempt(
            delivery_id=delivery.id,
            endpoint_url=endpoint.url,
            event_type=delivery.event_type,
            payload=delivery.payload,
            attempt_number=attempt_number,
            status=DeliveryStatus.PENDING,
            signature=signature,
            timestamp=timestamp,
        )
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: signature,
            TIMESTAMP_HEADER: str(timestamp),
            EVENT_HEADER: delivery.event_type,
            DELIVERY_HEADER: delivery.id,
            ATTEMPT_HEADER: str(attempt_number),
            "User-Agent": USER_AGENT,
        }
        try:
            try:
                response = await self.client.post(
                    endpoint.url,
                    content=delivery.body,
                    headers=headers,
                    timeout=self.timeout,
                )
            except (httpx.UnsupportedProtocol, httpx.InvalidURL) as e:
                raise PermanentDeliveryError(str(e)) from e
            except httpx.TransportError as e:
                raise TransientDeliveryError(str(e) or e.__class__.__name__) from e
            attempt.status_code = response.status_code
            attempt.verified = receiver_verdict(response)
            check_response(response)
        except PermanentDeliveryError as e:
            attempt.status = DeliveryStatus.FAILED
            attempt.error = str(e)
            logger.info("Webhook %s attempt %d failed permanently: %s", delivery.id, attempt_number, e)
        except WebhookError as e:
            last = attempt_number >= self.policy.max_attempts
            attempt.status = DeliveryStatus.EXHAUSTED if last else DeliveryStatus.PENDING
            attempt.error = str(e)
            logger.info("Webhook send attempt %d failed: %s", attempt_number, e)
        else:
            attempt.status = DeliveryStatus.SUCCESS
            logger.info("Webhook %s delivered to %s on attempt %d", delivery.id, endpoint.url, attempt_number)
        return attempt

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


@dataclass
class ReceivedWebhook:
    id: str
    event_type: str
    payload: Any
    received_at: str
    timestamp: int
    verified: bool
    delivery_id: Optional[str] = None
    duplicate: bool = False
    error: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "eventType": self.event_type,
            "payload": self.payload,
            "receivedAt": self.received_at,
            "timestamp": self.timestamp,
            "verified": self.verified,
            "deliveryId": self.delivery_id,
            "duplicate": self.duplicate,
            "error": self.error,
            "headers": self.headers,
        }


def _parse_timestamp(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class WebhookReceiver:
    """
    Receiving side: verifies signatures and keeps a bounded, newest-first log.

    Unverified webhooks are still recorded with ``verified=False`` and an
    error. Repeated delivery ids are flagged as duplicates.
    """

    def __init__(
        self,
        secret: str = DEFAULT_SECRET,
        history_size: int = DEFAULT_HISTORY_SIZE,
        tolerance: Optional[float] = DEFAULT_TOLERANCE,
    ) -> None:
        self.secret = secret
        self.tolerance = tolerance
        self._entries: Deque[ReceivedWebhook] = deque(maxlen=history_size)
        self._seen: Deque[str] = deque(maxlen=history_size * 10)

    def __len__(self) -> int:
        return len(self._entries)

    def receive(self, headers: Mapping[str, str], body: bytes) -> ReceivedWebhook:
        try:
            payload = json.loads(body) if body else None
        except ValueError as e:
            raise SerializationError(f"invalid JSON body: {e}") from e

        lowered = {k.lower(): v for k, v in headers.items()}
        event_type = lowered.get(EVENT_HEADER.lower(), "unknown")
        signature = lowered.get(SIGNATURE_HEADER.lower())
        timestamp = _parse_timestamp(lowered.get(TIMESTAMP_HEADER.lower()))

        delivery_id = lowered.get(DELIVERY_HEADER.lower())
        if delivery_id is None and isinstance(payload, dict):
            delivery_id = payload.get("id")

        now = utcnow()
        item = ReceivedWebhook(
            id=str(uuid.uuid4()),
            event_type=event_type,
            payload=payload,
            received_at=now.isoformat(),
            timestamp=to_millis(now),
            verified=False,
            delivery_id=delivery_id,
            headers=dict(lowered),
        )
        if not signature:
            item.error = "No signature provided"
        elif verify_signature(
            self.secret, event_type, body, timestamp, signature, self.tolerance
        ):
            item.verified = True
        else:
            item.error = "Invalid signature"

        if delivery_id is not None:
            item.duplicate = delivery_id in self._seen
            if not item.duplicate:
                self._seen.append(delivery_id)

        self._entries.appendleft(item)
        if item.verified:
            logger.info("Verified webhook %s: %s", item.id, event_type)
        else:
            logger.info("Rejected signature for webhook %s: %s", item.id, item.error)
        return item

    def recent(self, limit: Optional[int] = None) -> List[ReceivedWebhook]:
        entries = list(self._entries)
        return entries if limit is None else entries[: max(limit, 0)]

    def get(self, webhook_id: str) -> Optional[ReceivedWebhook]:
        for item in self._entries:
            if item.id == webhook_id:
                return item
        return None


def endpoint_from_dict(data: Mapping[str, Any], default_secret: str = DEFAULT_SECRET) -> WebhookEndpoint:
    event_types: Iterable[str] = data.get("eventTypes") or ()
    return WebhookEndpoint(
        url=data["url"],
        secret=data.get("secret") or default_secret,
        event_types=frozenset(event_types),
    )
