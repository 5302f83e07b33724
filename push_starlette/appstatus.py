import logging
import threading
from typing import Callable, Optional, Set

import anyio

logger = logging.getLogger(__name__)


class AppStatus:
    """Process-wide shutdown flag so open streams and held polls can finish on exit."""

    should_exit = False
    original_handler: Optional[Callable] = None
    _waiters: Set[Callable[[], None]] = set()
    _lock = threading.RLock()

    @staticmethod
    def handle_exit(*args, **kwargs) -> None:
        logger.debug("AppStatus.handle_exit called")
        AppStatus.should_exit = True
        with AppStatus._lock:
            waiters = list(AppStatus._waiters)
        for wake in waiters:
            wake()
        if AppStatus.original_handler is not None:
            AppStatus.original_handler(*args, **kwargs)

    @classmethod
    def reset(cls) -> None:
        """Reset AppStatus state (useful for testing)."""
        cls.should_exit = False
        with cls._lock:
            cls._waiters.clear()

    @classmethod
    async def wait_for_exit(cls) -> None:
        """Return once shutdown has been requested."""
        if cls.should_exit:
            return
        event = anyio.Event()
        wake = event.set

        with cls._lock:
            cls._waiters.add(wake)
        try:
            # Check again after registration
            if cls.should_exit:
                return
            await event.wait()
        finally:
            with cls._lock:
                cls._waiters.discard(wake)


try:
    from uvicorn.main import Server

    AppStatus.original_handler = Server.handle_exit
    Server.handle_exit = AppStatus.handle_exit  # type: ignore
except ImportError:
    logger.debug(
        "Uvicorn not installed. Graceful shutdown on server termination disabled."
    )
