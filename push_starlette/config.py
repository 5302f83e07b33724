"""
Runtime settings.

Values come from environment variables (and an optional ``.env`` file)
through ``starlette.config.Config``. All keys carry the ``PUSH_`` prefix.
"""
from dataclasses import dataclass
from typing import Optional

from starlette.config import Config

from push_starlette.exceptions import ConfigError
from push_starlette.webhook import DEFAULT_SECRET, RetryPolicy

POLL_MODES = ("long", "short")


@dataclass(frozen=True)
class PushSettings:
    """
    Attributes:
        heartbeat_interval: Seconds between heartbeat events.
        change_generator: Run the simulated change generator.
        change_interval_min: Lower bound of the random change interval (seconds).
        change_interval_max: Upper bound of the random change interval (seconds).
        poll_mode: ``long`` holds pull requests, ``short`` always answers at once.
        poll_default_timeout: Long-poll timeout (ms) when the caller gives none.
        poll_max_timeout: Clamp for caller-supplied long-poll timeouts (ms).
        poll_max_pending: Cap on concurrently held long polls.
        subscriber_buffer: Size of each subscriber's bounded channel.
        send_timeout: Seconds an SSE write may block before the client is dropped.
        webhook_secret: Default signing secret.
        webhook_max_attempts: Retry budget per delivery.
        webhook_base_delay: Backoff base in seconds.
        webhook_max_delay: Backoff cap in seconds.
        webhook_timeout: Per-attempt HTTP timeout in seconds.
        webhook_tolerance: Max signature age accepted by the receiver (seconds).
        history_size: Bound of the delivery and receive logs.
    """

    heartbeat_interval: float = 30.0
    change_generator: bool = True
    change_interval_min: float = 5.0
    change_interval_max: float = 10.0
    poll_mode: str = "long"
    poll_default_timeout: int = 30000
    poll_max_timeout: int = 30000
    poll_max_pending: int = 1000
    subscriber_buffer: int = 100
    send_timeout: Optional[float] = 10.0
    webhook_secret: str = DEFAULT_SECRET
    webhook_max_attempts: int = 3
    webhook_base_delay: float = 1.0
    webhook_max_delay: float = 30.0
    webhook_timeout: float = 10.0
    webhook_tolerance: float = 300.0
    history_size: int = 100

    def __post_init__(self) -> None:
        if self.heartbeat_interval <= 0:
            raise ConfigError("heartbeat_interval must be greater than 0")
        if self.change_interval_min < 0 or self.change_interval_max < self.change_interval_min:
            raise ConfigError("change interval bounds must satisfy 0 <= min <= max")
        if self.poll_mode not in POLL_MODES:
            raise ConfigError(f"poll_mode must be one of {POLL_MODES}, got {self.poll_mode!r}")
        if self.poll_default_timeout < 0 or self.poll_max_timeout < 0:
            raise ConfigError("poll timeouts must not be negative")
        if self.poll_max_pending < 1 or self.subscriber_buffer < 1 or self.history_size < 1:
            raise ConfigError("poll_max_pending, subscriber_buffer and history_size must be positive")
        if self.webhook_max_attempts < 1:
            raise ConfigError("webhook_max_attempts must be at least 1")

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.webhook_max_attempts,
            base_delay=self.webhook_base_delay,
            max_delay=self.webhook_max_delay,
        )

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "PushSettings":
        config = config or Config()
        try:
            return cls(
                heartbeat_interval=config("PUSH_HEARTBEAT_INTERVAL", cast=float, default=30.0),
                change_generator=config("PUSH_CHANGE_GENERATOR", cast=bool, default=True),
                change_interval_min=config("PUSH_CHANGE_INTERVAL_MIN", cast=float, default=5.0),
                change_interval_max=config("PUSH_CHANGE_INTERVAL_MAX", cast=float, default=10.0),
                poll_mode=config("PUSH_POLL_MODE", default="long"),
                poll_default_timeout=config("PUSH_POLL_DEFAULT_TIMEOUT", cast=int, default=30000),
                poll_max_timeout=config("PUSH_POLL_MAX_TIMEOUT", cast=int, default=30000),
                poll_max_pending=config("PUSH_POLL_MAX_PENDING", cast=int, default=1000),
                subscriber_buffer=config("PUSH_SUBSCRIBER_BUFFER", cast=int, default=100),
                send_timeout=config("PUSH_SEND_TIMEOUT", cast=float, default=10.0),
                webhook_secret=config("PUSH_WEBHOOK_SECRET", default=DEFAULT_SECRET),
                webhook_max_attempts=config("PUSH_WEBHOOK_MAX_ATTEMPTS", cast=int, default=3),
                webhook_base_delay=config("PUSH_WEBHOOK_BASE_DELAY", cast=float, default=1.0),
                webhook_max_delay=config("PUSH_WEBHOOK_MAX_DELAY", cast=float, default=30.0),
                webhook_timeout=config("PUSH_WEBHOOK_TIMEOUT", cast=float, default=10.0),
                webhook_tolerance=config("PUSH_WEBHOOK_TOLERANCE", cast=float, default=300.0),
                history_size=config("PUSH_HISTORY_SIZE", cast=int, default=100),
            )
        except ValueError as e:
            raise ConfigError(str(e)) from e
