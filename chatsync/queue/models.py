"""Queue data models."""
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from chatsync.models import Message

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5
RESEND_PRIORITY = 8


def clamp_priority(priority: int) -> int:
    return max(MIN_PRIORITY, min(MAX_PRIORITY, int(priority)))


@dataclass
class QueuedMessage:
    """A message waiting in the offline queue for acknowledgment."""

    message: Message
    priority: int = DEFAULT_PRIORITY
    queued_at: float = field(default_factory=time.time)
    sequence: int = 0  # enqueue order
    attempts: int = 0  # authoritative delivery attempt counter
    exhausted: bool = False  # hit the attempt ceiling; waits for an explicit resend
    last_error: Optional[str] = None

    @property
    def message_id(self) -> str:
        return self.message.id

    @property
    def sort_key(self):
        """Priority descending, then enqueue order ascending.

        ``sequence`` is assigned under the queue lock, so it orders entries
        the same way ``queued_at`` does without depending on the wall clock.
        """
        return (-self.priority, self.sequence, self.queued_at)

    @classmethod
    def create(cls, message: Message, priority: int, sequence: int) -> "QueuedMessage":
        """Factory method that clamps the priority into [1, 10]."""
        return cls(message=message, priority=clamp_priority(priority), sequence=sequence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message.to_dict(),
            "priority": self.priority,
            "queued_at": self.queued_at,
            "sequence": self.sequence,
            "attempts": self.attempts,
            "exhausted": self.exhausted,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedMessage":
        return cls(
            message=Message.from_dict(data["message"]),
            priority=clamp_priority(data.get("priority", DEFAULT_PRIORITY)),
            queued_at=float(data.get("queued_at", time.time())),
            sequence=int(data.get("sequence", 0)),
            attempts=int(data.get("attempts", 0)),
            exhausted=bool(data.get("exhausted", False)),
            last_error=data.get("last_error"),
        )


@dataclass
class DrainFailure:
    entry: QueuedMessage
    details: str


@dataclass
class DrainResult:
    """Outcome of one drain over a batch of the queue."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    remaining: int = 0
    delivered: List[QueuedMessage] = field(default_factory=list)
    failures: List[DrainFailure] = field(default_factory=list)
    exhausted: List[QueuedMessage] = field(default_factory=list)
    skipped: bool = False  # another drain held the queue
    interrupted: bool = False  # channel lost before the batch finished

    @property
    def success(self) -> bool:
        return not self.skipped and not self.interrupted and self.failed == 0
