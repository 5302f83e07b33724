import logging
from typing import Any, AsyncIterable, Awaitable, Callable, Mapping, Optional

import anyio
from starlette.background import BackgroundTask
from starlette.datastructures import MutableHeaders
from starlette.responses import Response
from starlette.types import Message, Receive, Scope, Send

from push_starlette.appstatus import AppStatus
from push_starlette.event import ServerSentEvent, ensure_bytes
from push_starlette.exceptions import SendTimeoutError
from push_starlette.registry import Subscriber

logger = logging.getLogger(__name__)


async def subscriber_events(subscriber: Subscriber) -> AsyncIterable[Any]:
    """Drain a subscriber's channel; ends when the registry closes it."""
    async with subscriber.receive_stream:
        async for event in subscriber.receive_stream:
            yield event


class EventSourceResponse(Response):
    """
    Streaming response that sends data conforming to the SSE (Server-Sent Events) specification.

    Keep-alives are not generated here: heartbeats arrive through the content
    stream like any other event, so they share its ordering.
    """

    DEFAULT_SEPARATOR = ServerSentEvent.DEFAULT_SEPARATOR

    def __init__(
        self,
        content: AsyncIterable[Any],
        status_code: int = 200,
        headers: Optional[Mapping[str, str]] = None,
        media_type: str = "text/event-stream",
        background: Optional[BackgroundTask] = None,
        sep: Optional[str] = None,
        send_timeout: Optional[float] = None,
        client_close_handler_callable: Optional[
            Callable[[Message], Awaitable[None]]
        ] = None,
    ) -> None:
        if sep not in (None, "\r\n", "\r", "\n"):
            raise ValueError(f"sep must be one of: \\r\\n, \\r, \\n, got: {sep}")
        self.sep = sep or self.DEFAULT_SEPARATOR
        self.body_iterator = content
        self.status_code = status_code
        self.media_type = self.media_type if media_type is None else media_type
        self.background = background
        self.send_timeout = send_timeout

        _headers = MutableHeaders()
        if headers is not None:
            _headers.update(headers)
        _headers.setdefault("Cache-Control", "no-store")
        _headers["Connection"] = "keep-alive"
        _headers["X-Accel-Buffering"] = "no"
        self.init_headers(_headers)

        self.client_close_handler_callable = client_close_handler_callable
        self.active = True

    async def _stream_response(self, send: Send) -> None:
        """Send out SSE data to the client as it becomes available in the iterator."""
        await send(
            {
                "type": "http.response.start",
                "status": self.status_code,
                "headers": self.raw_headers,
            }
        )

        async for data in self.body_iterator:
            chunk = ensure_bytes(data, self.sep)
            logger.debug("chunk: %s", chunk)
            with anyio.move_on_after(self.send_timeout) as cancel_scope:
                await send(
                    {"type": "http.response.body", "body": chunk, "more_body": True}
                )

            if cancel_scope and cancel_scope.cancel_called:
                if hasattr(self.body_iterator, "aclose"):
                    await self.body_iterator.aclose()
                raise SendTimeoutError()

        self.active = False
        await send({"type": "http.response.body", "body": b"", "more_body": False})

    async def _listen_for_disconnect(self, receive: Receive) -> None:
        """Watch for a disconnect message from the client."""
        while self.active:
            message = await receive()
            if message["type"] == "http.disconnect":
                self.active = False
                logger.debug("Got event: http.disconnect. Stop streaming.")
                break

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Run the stream, the disconnect listener and the shutdown listener;
        whichever finishes first cancels the others."""
        try:
            async with anyio.create_task_group() as task_group:

                async def cancel_on_finish(coro: Callable[[], Awaitable[None]]):
                    await coro()
                    task_group.cancel_scope.cancel()

                task_group.start_soon(cancel_on_finish, lambda: self._stream_response(send))
                task_group.start_soon(cancel_on_finish, AppStatus.wait_for_exit)
                task_group.start_soon(
                    cancel_on_finish, lambda: self._listen_for_disconnect(receive)
                )
        finally:
            if self.client_close_handler_callable:
                with anyio.CancelScope(shield=True):
                    await self.client_close_handler_callable(
                        {"type": "http.disconnect"}
                    )

        if self.background is not None:
            await self.background()
