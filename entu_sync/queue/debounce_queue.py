"""Per-entity debounce queue.

Collapses bursts of webhooks for the same entity: the first caller owns the
entity until it completes; callers arriving meanwhile only flag the entry so
the owner runs one more pass.
"""
import threading
import time
from typing import Dict, Optional, Protocol

from entu_sync.logging_conf import logger
from entu_sync.queue.models import QueueEntry, QueueStats


class DebounceQueue(Protocol):
    def enqueue(self, entity_id: str, token: Optional[str] = None) -> bool: ...

    def complete(self, entity_id: str) -> bool: ...

    def release(self, entity_id: str) -> None: ...

    def latest_token(self, entity_id: str) -> Optional[str]: ...

    def stats(self) -> QueueStats: ...

    def clean_stale(self, max_age_seconds: float) -> int: ...


class InMemoryDebounceQueue:
    """Process-local queue; every method is atomic under one lock."""

    def __init__(self, clock=time.monotonic):
        self._entries: Dict[str, QueueEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def enqueue(self, entity_id: str, token: Optional[str] = None) -> bool:
        """
        Claim the entity for processing.

        Returns:
            True if the caller now owns the entity and must process it,
            False if it is already being processed and has been flagged for
            another pass
        """
        with self._lock:
            now = self._clock()
            entry = self._entries.get(entity_id)

            if entry is None:
                entry = QueueEntry.create(entity_id, now, token)
                self._entries[entity_id] = entry
                logger.debug(f"Entity {entity_id} added to queue - starting processing")
                return True

            entry.reprocess_requested = True
            entry.updated_at = now
            if token:
                entry.latest_token = token
            logger.debug(f"Entity {entity_id} already processing - marked for reprocessing")
            return False

    def complete(self, entity_id: str) -> bool:
        """
        Finish a pass.

        Returns:
            True if a webhook arrived during the pass and the owner must run
            again, False if the entity was removed from the queue
        """
        with self._lock:
            entry = self._entries.get(entity_id)

            if entry is None:
                logger.warning(f"Attempted to complete processing for non-queued entity {entity_id}")
                return False

            if entry.reprocess_requested:
                entry.reprocess_requested = False
                entry.started_at = self._clock()
                logger.info(f"Entity {entity_id} needs reprocessing - webhook arrived during processing")
                return True

            del self._entries[entity_id]
            logger.debug(f"Entity {entity_id} processing completed - removed from queue")
            return False

    def release(self, entity_id: str) -> None:
        """Drop the entry regardless of its reprocess flag."""
        with self._lock:
            entry = self._entries.pop(entity_id, None)
        if entry is not None and entry.reprocess_requested:
            logger.warning(f"Released entity {entity_id} with a pending reprocess request")

    def latest_token(self, entity_id: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(entity_id)
            return entry.latest_token if entry else None

    def stats(self) -> QueueStats:
        with self._lock:
            entries = list(self._entries.values())
        return QueueStats(
            total_queued=len(entries),
            processing=len(entries),
            needs_reprocessing=sum(1 for e in entries if e.reprocess_requested),
        )

    def clean_stale(self, max_age_seconds: float) -> int:
        """
        Remove entries whose pass started more than ``max_age_seconds`` ago
        and whose owning thread has exited without completing or releasing.

        An old entry whose owner is still alive is kept: its pass is still
        running and dropping the entry would let a second caller claim the
        entity at the same time.
        """
        with self._lock:
            now = self._clock()
            expired = [
                entry for entry in self._entries.values()
                if now - entry.started_at > max_age_seconds
            ]
            stale = [entry.entity_id for entry in expired if not entry.owner_alive()]
            running = [entry.entity_id for entry in expired if entry.owner_alive()]
            for entity_id in stale:
                age = now - self._entries.pop(entity_id).started_at
                logger.warning(f"Removed stale queue entry {entity_id} (age {age:.0f}s > {max_age_seconds}s)")

        for entity_id in running:
            logger.warning(f"Pass for entity {entity_id} has run longer than {max_age_seconds}s, keeping entry")
        if stale:
            logger.info(f"Cleaned {len(stale)} stale queue entries")
        return len(stale)
