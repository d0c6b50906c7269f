"""Data models for the offline sync queue.

Uses dataclasses for in-memory queue state; the failed log persists the
same fields through the FailedSyncItem table.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional

from models.cache import FailedSyncItem


class SyncKind(str, Enum):
    """Kind of mutation replayed against the remote."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def generate_sync_id(now: Optional[float] = None) -> str:
    """Unique queue item id: sync_<epoch ms>_<random suffix>."""
    millis = int((now if now is not None else time.time()) * 1000)
    return f"sync_{millis}_{uuid.uuid4().hex[:9]}"


@dataclass
class SyncQueueItem:
    """One local mutation waiting to be replayed.

    `payload` is a snapshot taken at enqueue time, not a live reference.
    `next_attempt_at` gates retries after a failure (exponential backoff);
    the item still counts toward the queue length while it waits.
    """
    id: str
    kind: SyncKind
    entity: str
    payload: Dict[str, Any]
    enqueued_at: float = field(default_factory=time.time)
    retry_count: int = 0
    last_error: Optional[str] = None
    next_attempt_at: float = 0.0

    @property
    def record_id(self) -> Optional[str]:
        return self.payload.get("id")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "entity": self.entity,
            "payload": self.payload,
            "enqueued_at": self.enqueued_at,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncQueueItem":
        """Create from dict."""
        return cls(
            id=data["id"],
            kind=SyncKind(data["kind"]),
            entity=data["entity"],
            payload=dict(data.get("payload") or {}),
            enqueued_at=data.get("enqueued_at", time.time()),
            retry_count=data.get("retry_count", 0),
            last_error=data.get("last_error"),
        )

    @classmethod
    def create(cls, kind: SyncKind, entity: str, payload: Dict[str, Any],
               now: Optional[float] = None) -> "SyncQueueItem":
        """Factory for a fresh mutation with a copied payload."""
        enqueued_at = now if now is not None else time.time()
        return cls(
            id=generate_sync_id(enqueued_at),
            kind=SyncKind(kind),
            entity=entity,
            payload=dict(payload),
            enqueued_at=enqueued_at,
        )

    def to_record(self, failed_at: Optional[float] = None) -> FailedSyncItem:
        """Row for the failed log."""
        return FailedSyncItem(
            id=self.id,
            kind=self.kind.value,
            entity=self.entity,
            payload=dict(self.payload),
            enqueued_at=self.enqueued_at,
            retry_count=self.retry_count,
            last_error=self.last_error,
            failed_at=failed_at if failed_at is not None else time.time(),
        )

    @classmethod
    def from_record(cls, record: FailedSyncItem) -> "SyncQueueItem":
        return cls(
            id=record.id,
            kind=SyncKind(record.kind),
            entity=record.entity,
            payload=dict(record.payload or {}),
            enqueued_at=record.enqueued_at,
            retry_count=record.retry_count,
            last_error=record.last_error,
        )
