"""Fixed-window rate limit shared by the webhook endpoints."""
import threading
import time

from entu_sync import settings
from entu_sync.logging_conf import logger


class RateLimiter:
    """Allows ``max_requests`` calls per ``window_seconds``, regardless of caller."""

    def __init__(self, max_requests=None, window_seconds=None, clock=time.monotonic):
        self.max_requests = max_requests if max_requests is not None else settings.RATE_LIMIT_MAX_REQUESTS
        self.window_seconds = window_seconds if window_seconds is not None else settings.RATE_LIMIT_WINDOW_SECONDS
        self._clock = clock
        self._lock = threading.Lock()
        self._count = 0
        self._reset_at = 0.0

    def allow(self) -> bool:
        """Count one request; False once the window's budget is spent."""
        with self._lock:
            now = self._clock()
            if now >= self._reset_at:
                self._count = 0
                self._reset_at = now + self.window_seconds

            if self._count >= self.max_requests:
                logger.warning(
                    f"Rate limit exceeded: {self._count}/{self.max_requests} in {self.window_seconds}s window"
                )
                return False

            self._count += 1
            return True
