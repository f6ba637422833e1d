"""Background thread that drops stuck debounce queue entries."""
import threading
import time

from entu_sync import settings
from entu_sync.logging_conf import logger


class QueueJanitor:
    """Periodically removes queue entries whose pass never completed."""

    def __init__(self, queue, interval=None, max_age=None):
        self.queue = queue
        self.interval = interval if interval is not None else settings.QUEUE_JANITOR_INTERVAL_SECONDS
        self.max_age = max_age if max_age is not None else settings.QUEUE_STALE_SECONDS
        self.running = False
        self.thread = None

    def start(self):
        """Start the janitor in a background thread."""
        if self.running:
            logger.warning("Queue janitor is already running")
            return

        self.running = True
        self.thread = threading.Thread(target=self._run, daemon=True)
        self.thread.start()
        logger.info(f"Queue janitor started (interval: {self.interval}s, max age: {self.max_age}s)")

    def stop(self):
        """Stop the janitor."""
        if not self.running:
            return

        self.running = False
        if self.thread:
            self.thread.join(timeout=10)
        logger.info("Queue janitor stopped")

    def run_once(self) -> int:
        return self.queue.clean_stale(self.max_age)

    def _run(self):
        while self.running:
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Queue janitor error: {e}", exc_info=True)

            # Sleep in small steps so stop() returns promptly
            for _ in range(max(1, int(self.interval))):
                if not self.running:
                    break
                time.sleep(1)
