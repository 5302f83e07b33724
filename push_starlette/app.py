import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

import anyio
from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket

from push_starlette.appstatus import AppStatus
from push_starlette.config import PushSettings
from push_starlette.exceptions import PollCapacityError, SerializationError
from push_starlette.poll import PollResult
from push_starlette.registry import Subscriber, Transport
from push_starlette.service import PushService
from push_starlette.sse import EventSourceResponse, subscriber_events
from push_starlette.state import describe, to_millis, utcnow
from push_starlette.webhook import DeliveryStatus, WebhookEndpoint, endpoint_from_dict
from push_starlette.websocket import WebSocketSession

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50


def get_service(conn: Any) -> PushService:
    return conn.app.state.push


def _int_param(request: Request, name: str, default: Optional[int] = None) -> Optional[int]:
    value = request.query_params.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise HTTPException(400, f"{name} must be an integer") from None


def _limit(request: Request) -> int:
    try:
        return int(request.query_params.get("limit", DEFAULT_HISTORY_LIMIT))
    except ValueError:
        return DEFAULT_HISTORY_LIMIT


async def read_json(request: Request) -> dict:
    body = await request.body()
    if not body:
        return {}
    try:
        data = json.loads(body)
    except ValueError:
        raise HTTPException(400, "Invalid JSON body") from None
    if not isinstance(data, dict):
        raise HTTPException(400, "JSON body must be an object")
    return data


async def http_error(request: Request, exc: HTTPException) -> Response:
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


async def hold_long_poll(request: Request, version: int, timeout: float) -> Optional[PollResult]:
    """
    Wait for the long poll while watching the connection.

    Returns None when the client went away; the pending poll is discarded
    with it. On server shutdown the poll ends as a timeout.
    """
    poller = get_service(request).poller
    result: Optional[PollResult] = None
    capacity_error: Optional[PollCapacityError] = None
    disconnected = False

    async with anyio.create_task_group() as tg:

        async def run_poll() -> None:
            nonlocal result, capacity_error
            try:
                result = await poller.poll(version, timeout)
            except PollCapacityError as e:
                capacity_error = e
            tg.cancel_scope.cancel()

        async def watch_disconnect() -> None:
            nonlocal disconnected
            while True:
                message = await request.receive()
                if message["type"] == "http.disconnect":
                    disconnected = True
                    logger.debug("Long poll client disconnected")
                    tg.cancel_scope.cancel()
                    return

        async def watch_exit() -> None:
            await AppStatus.wait_for_exit()
            tg.cancel_scope.cancel()

        tg.start_soon(run_poll)
        tg.start_soon(watch_disconnect)
        tg.start_soon(watch_exit)

    if capacity_error is not None:
        raise HTTPException(503, str(capacity_error))
    if disconnected:
        return None
    if result is None:
        snapshot = poller.state.snapshot()
        result = PollResult(snapshot.version, None, snapshot.timestamp, timed_out=True)
    return result


async def get_data(request: Request) -> Response:
    service = get_service(request)
    settings = service.settings
    version = _int_param(request, "version", -1)

    if settings.poll_mode == "short":
        result = service.poller.current()
        body = result.as_dict()
        body["hasUpdate"] = result.version > (version if version is not None else -1)
        logger.debug("GET /api/data - returning version %d", result.version)
        return JSONResponse(body)

    timeout_ms = _int_param(request, "timeout")
    if timeout_ms is None:
        timeout_ms = settings.poll_default_timeout
    logger.debug("Long poll request - client version: %s", version)
    result = await hold_long_poll(request, version, timeout_ms / 1000)
    if result is None:
        return Response(status_code=204)
    return JSONResponse(result.as_dict())


async def post_data(request: Request) -> Response:
    service = get_service(request)
    body = await read_json(request)
    payload = body.get("payload", body.get("data"))
    snapshot = service.change(payload)
    return JSONResponse(describe(snapshot))


async def events(request: Request) -> Response:
    service = get_service(request)
    last_event_id = request.headers.get("last-event-id")
    try:
        resume_from = int(last_event_id) if last_event_id else None
    except ValueError:
        resume_from = None

    subscriber = service.registry.register(
        Subscriber.create(
            Transport.SSE, service.settings.subscriber_buffer, last_event_id=resume_from
        )
    )
    service.dispatcher.send_to(
        subscriber.id,
        "connection",
        {
            "message": "Connected to SSE stream",
            "clientId": subscriber.id,
            "timestamp": to_millis(utcnow()),
        },
    )

    async def on_close(message: Any) -> None:
        service.registry.unregister(subscriber.id)

    return EventSourceResponse(
        subscriber_events(subscriber),
        send_timeout=service.settings.send_timeout,
        client_close_handler_callable=on_close,
    )


async def trigger(request: Request) -> Response:
    service = get_service(request)
    body = await read_json(request)
    event_type = body.get("eventType")
    if not event_type or not isinstance(event_type, str):
        raise HTTPException(400, "eventType is required")
    data = body.get("data") or {
        "message": "Custom event",
        "timestamp": to_millis(utcnow()),
    }
    try:
        result = service.dispatcher.broadcast(event_type, data)
    except SerializationError as e:
        logger.warning("Trigger rejected: %s", e)
        raise HTTPException(400, str(e)) from None
    return JSONResponse(
        {
            "success": True,
            "message": "Event broadcasted",
            "id": result.event.id,
            "clients": result.delivered,
        }
    )


async def server_broadcast(request: Request) -> Response:
    service = get_service(request)
    body = await read_json(request)
    message = body.get("message") or "Server broadcast message"
    try:
        result = service.dispatcher.broadcast("server-broadcast", {"message": message})
    except SerializationError as e:
        raise HTTPException(400, str(e)) from None
    return JSONResponse(
        {"success": True, "message": "Broadcast sent", "clients": result.delivered}
    )


async def ws_endpoint(websocket: WebSocket) -> None:
    service = get_service(websocket)
    session = WebSocketSession(
        websocket,
        service.dispatcher,
        buffer_size=service.settings.subscriber_buffer,
        heartbeat_interval=service.settings.heartbeat_interval,
    )
    await session.run()


async def webhook_send(request: Request) -> Response:
    service = get_service(request)
    body = await read_json(request)
    url = body.get("url")
    if not url:
        raise HTTPException(400, "URL is required")
    if not isinstance(url, str) or not url.startswith(("http://", "https://")):
        raise HTTPException(400, "URL must be an http(s) URL")

    event_type = body.get("eventType") or "test-event"
    payload = body.get("payload") or {
        "event": event_type,
        "data": {"message": "Test webhook payload", "timestamp": to_millis(utcnow())},
    }
    endpoint = WebhookEndpoint(url=url, secret=body.get("secret") or service.settings.webhook_secret)
    try:
        delivery = service.webhooks.create_delivery(endpoint, event_type, payload)
    except SerializationError as e:
        raise HTTPException(400, str(e)) from None

    wait = request.query_params.get("wait", "").lower() in ("1", "true", "yes")
    if wait or not service.is_running:
        await service.webhooks.run(delivery)
    else:
        service.start_delivery(delivery)
        await delivery.wait_first()

    result = delivery.as_dict()
    if delivery.status is DeliveryStatus.SUCCESS:
        return JSONResponse(
            {"success": True, "message": "Webhook sent successfully", "result": result}
        )
    if delivery.status is DeliveryStatus.PENDING:
        return JSONResponse(
            {"success": False, "pending": True, "message": "Delivery will be retried", "result": result},
            status_code=202,
        )
    return JSONResponse(
        {"success": False, "error": delivery.error, "result": result}, status_code=502
    )


async def webhook_receive(request: Request) -> Response:
    service = get_service(request)
    body = await request.body()
    try:
        item = service.receiver.receive(request.headers, body)
    except SerializationError as e:
        raise HTTPException(400, str(e)) from None
    return JSONResponse(
        {
            "success": True,
            "id": item.id,
            "message": "Webhook received",
            "verified": item.verified,
            "timestamp": to_millis(utcnow()),
        }
    )


async def webhook_history(request: Request) -> Response:
    service = get_service(request)
    attempts = service.webhooks.history.recent(_limit(request))
    return JSONResponse(
        {
            "total": len(service.webhooks.history),
            "attempts": [a.as_dict() for a in attempts],
        }
    )


async def webhook_received(request: Request) -> Response:
    service = get_service(request)
    items = service.receiver.recent(_limit(request))
    return JSONResponse(
        {"total": len(service.receiver), "webhooks": [i.as_dict() for i in items]}
    )


async def webhook_detail(request: Request) -> Response:
    service = get_service(request)
    item = service.receiver.get(request.path_params["webhook_id"])
    if item is None:
        raise HTTPException(404, "Webhook not found")
    return JSONResponse(item.as_dict())


async def webhook_endpoints(request: Request) -> Response:
    service = get_service(request)
    if request.method == "POST":
        body = await read_json(request)
        url = body.get("url")
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise HTTPException(400, "URL must be an http(s) URL")
        endpoint = endpoint_from_dict(body, service.settings.webhook_secret)
        service.webhooks.register(endpoint)
        return JSONResponse(
            {"url": endpoint.url, "eventTypes": sorted(endpoint.event_types)},
            status_code=201,
        )
    if request.method == "DELETE":
        url = request.query_params.get("url")
        if not url or not service.webhooks.unregister(url):
            raise HTTPException(404, "Endpoint not registered")
        return JSONResponse({"removed": url})
    return JSONResponse(
        {
            "endpoints": [
                {"url": e.url, "eventTypes": sorted(e.event_types)}
                for e in service.webhooks.endpoints
            ]
        }
    )


async def health(request: Request) -> Response:
    return JSONResponse(get_service(request).health())


routes = [
    Route("/api/data", endpoint=get_data, methods=["GET"]),
    Route("/api/data", endpoint=post_data, methods=["POST"]),
    Route("/events", endpoint=events),
    Route("/trigger", endpoint=trigger, methods=["POST"]),
    Route("/broadcast", endpoint=server_broadcast, methods=["POST"]),
    WebSocketRoute("/ws", endpoint=ws_endpoint),
    Route("/webhook/send", endpoint=webhook_send, methods=["POST"]),
    Route("/webhook/receive", endpoint=webhook_receive, methods=["POST"]),
    Route("/webhook/history", endpoint=webhook_history),
    Route("/webhook/received", endpoint=webhook_received),
    Route("/webhook/endpoints", endpoint=webhook_endpoints, methods=["GET", "POST", "DELETE"]),
    Route("/webhook/{webhook_id}", endpoint=webhook_detail),
    Route("/health", endpoint=health),
    Route("/status", endpoint=health),
]


def create_app(
    settings: Optional[PushSettings] = None,
    service: Optional[PushService] = None,
    debug: bool = False,
) -> Starlette:
    service = service or PushService(settings or PushSettings.from_config())

    @asynccontextmanager
    async def lifespan(app: Starlette):
        async with service.running():
            yield

    app = Starlette(
        debug=debug,
        routes=routes,
        lifespan=lifespan,
        exception_handlers={HTTPException: http_error},
    )
    app.state.push = service
    return app
