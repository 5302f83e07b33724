from typing import Optional


class PushError(Exception):
    """Base error for all push_starlette operations."""


class ConfigError(PushError):
    """Invalid or missing configuration."""


class SerializationError(PushError):
    """Event payload cannot be encoded for delivery."""


class DeliveryError(PushError):
    """Writing an event to a single subscriber failed."""

    def __init__(self, subscriber_id: str, reason: str) -> None:
        super().__init__(f"delivery to {subscriber_id} failed: {reason}")
        self.subscriber_id = subscriber_id
        self.reason = reason


class PollCapacityError(PushError):
    """Too many long polls are pending."""


class VersionOverflowError(PushError):
    """The version counter cannot be incremented any further."""


class SendTimeoutError(TimeoutError):
    pass


class WebhookError(PushError):
    """A single webhook attempt did not succeed."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientDeliveryError(WebhookError):
    """Network error, timeout, 429 or 5xx: eligible for retry."""


class PermanentDeliveryError(WebhookError):
    """4xx response: retrying would not help."""
