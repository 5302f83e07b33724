import io
import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from push_starlette.exceptions import SerializationError


def encode_json(data: Any) -> str:
    try:
        return json.dumps(data, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"payload is not JSON serializable: {e}") from e


@dataclass(frozen=True)
class PushEvent:
    """
    Transport-agnostic event: sequence id, type, payload and timestamp.

    ``encoded_data`` is produced once when the event is built, so a payload
    that cannot be encoded is rejected before it reaches any subscriber.
    """

    id: int
    type: str
    data: Any
    timestamp: int
    encoded_data: str

    def to_sse(self, sep: Optional[str] = None) -> "ServerSentEvent":
        return ServerSentEvent(
            self.encoded_data, event=self.type, id=str(self.id), sep=sep
        )

    def to_message(self) -> dict:
        """WebSocket frame body."""
        return {
            "type": self.type,
            "id": self.id,
            "data": self.data,
            "timestamp": self.timestamp,
        }


class ServerSentEvent:
    """
    Helper class to format string data for Server-Sent Events (SSE).
    """

    _LINE_SEP_EXPR = re.compile(r"\r\n|\r|\n")
    DEFAULT_SEPARATOR = "\n"

    TAG_COMMENT = ": "
    TAG_ID = "id: "
    TAG_EVENT = "event: "
    TAG_DATA = "data: "
    TAG_RETRY = "retry: "

    def __init__(
        self,
        data: Optional[Any] = None,
        *,
        event: Optional[str] = None,
        id: Optional[str] = None,
        retry: Optional[int] = None,
        comment: Optional[str] = None,
        sep: Optional[str] = None,
    ) -> None:
        self.data = str(data) if data is not None else None
        self.event = event
        self.id = id
        self.retry = retry
        self.comment = comment
        self._sep = sep if sep is not None else self.DEFAULT_SEPARATOR

    def _encode_impl(self, write_fn: Callable[[str], Any]) -> None:
        if self.comment is not None:
            for chunk in self._LINE_SEP_EXPR.split(self.comment):
                write_fn(f"{self.TAG_COMMENT}{chunk}{self._sep}")

        if self.id is not None:
            # Clean newlines in the event id
            clean_id = self._LINE_SEP_EXPR.sub("", self.id)
            write_fn(f"{self.TAG_ID}{clean_id}{self._sep}")

        if self.event is not None:
            # Clean newlines in the event name
            clean_event = self._LINE_SEP_EXPR.sub("", self.event)
            write_fn(f"{self.TAG_EVENT}{clean_event}{self._sep}")

        if self.data is not None:
            # Break multi-line data into multiple data: lines
            for chunk in self._LINE_SEP_EXPR.split(self.data):
                write_fn(f"{self.TAG_DATA}{chunk}{self._sep}")

        if self.retry is not None:
            if not isinstance(self.retry, int):
                raise TypeError("retry argument must be int")
            write_fn(f"{self.TAG_RETRY}{self.retry}{self._sep}")

        write_fn(self._sep)

    def encode(self) -> bytes:
        buffer = io.StringIO()
        self._encode_impl(buffer.write)
        return buffer.getvalue().encode("utf-8")


def ensure_bytes(data: Union[bytes, PushEvent, ServerSentEvent, Any], sep: str) -> bytes:
    if isinstance(data, bytes):
        return data
    if isinstance(data, ServerSentEvent):
        return data.encode()
    if isinstance(data, PushEvent):
        return data.to_sse(sep).encode()
    return ServerSentEvent(data, sep=sep).encode()
