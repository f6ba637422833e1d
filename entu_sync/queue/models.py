"""Queue data models."""
import threading
from dataclasses import dataclass, asdict, field
from typing import Optional


@dataclass
class QueueEntry:
    """An entity currently being reconciled. Its presence in the queue means "processing"."""

    entity_id: str
    started_at: float  # monotonic time the current pass started
    updated_at: float  # monotonic time of the latest notification
    reprocess_requested: bool = False
    latest_token: Optional[str] = None
    owner: Optional[threading.Thread] = field(default=None, repr=False, compare=False)

    @classmethod
    def create(cls, entity_id: str, now: float, token: Optional[str] = None):
        """Factory method to create a QueueEntry owned by the calling thread."""
        return cls(
            entity_id=entity_id,
            started_at=now,
            updated_at=now,
            latest_token=token,
            owner=threading.current_thread(),
        )

    def owner_alive(self) -> bool:
        return self.owner is not None and self.owner.is_alive()


@dataclass(frozen=True)
class QueueStats:
    total_queued: int
    processing: int
    needs_reprocessing: int

    def to_dict(self) -> dict:
        return asdict(self)
