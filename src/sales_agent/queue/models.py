"""Domain models for the durable work queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class QueueItemStatus(str, Enum):
    """Durable queue item lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueItemType(str, Enum):
    """Kinds of deferred work, each with its own payload schema."""

    PROCESS_MESSAGE = "process_message"
    SEND_FOLLOW_UP = "send_follow_up"
    ANALYZE_SENTIMENT = "analyze_sentiment"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TRANSIENT = "transient"
    TERMINAL = "terminal"
    PAYLOAD_INVALID = "payload_invalid"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in {FailureClass.TRANSIENT, FailureClass.UNKNOWN}


FINISHED_STATUSES: frozenset[QueueItemStatus] = frozenset(
    {QueueItemStatus.COMPLETED, QueueItemStatus.FAILED},
)


@dataclass(slots=True)
class QueueItemCreate:
    """Input payload for enqueuing a queue item."""

    item_type: QueueItemType
    payload: dict[str, Any]
    item_id: str | None = None
    priority: int = 5
    max_attempts: int = 3
    process_at: datetime | None = None


@dataclass(slots=True)
class QueueItemView:
    """Readable queue item view for processor, CLI and HTTP logic."""

    item_id: str
    item_type: str
    payload: dict[str, Any]
    priority: int
    status: QueueItemStatus
    attempts: int
    max_attempts: int
    process_at: datetime
    last_error: str | None
    failure_class: FailureClass | None
    worker_id: str | None
    claimed_at: datetime | None
    processed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Serialize into the persisted queue item JSON shape."""

        return {
            "id": self.item_id,
            "type": self.item_type,
            "payload": self.payload,
            "priority": self.priority,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "process_at": self.process_at.isoformat(),
            "last_error": self.last_error,
            "failure_class": self.failure_class.value if self.failure_class else None,
            "created_at": self.created_at.isoformat(),
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }


@dataclass(slots=True)
class QueueItemEventView:
    """Queue item event entry for audit trail."""

    event_id: int
    item_id: str
    event_type: str
    status_from: QueueItemStatus | None
    status_to: QueueItemStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class QueueItemDetails:
    """Queue item with its event stream."""

    item: QueueItemView
    events: list[QueueItemEventView]


@dataclass(slots=True)
class QueueStats:
    """Item counts grouped by status and by type."""

    by_status: dict[str, int]
    by_type: dict[str, int]
    checked_at: datetime

    @property
    def total(self) -> int:
        return sum(self.by_status.values())
