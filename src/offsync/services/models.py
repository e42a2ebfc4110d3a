"""
models.py - Data model for queued mutations, cache entries and sync sessions
"""

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Priority(str, Enum):
    """Transmission tiers. Lower rank goes first."""
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"


@dataclass
class MutationRecord:
    """A queued, not-yet-confirmed local write."""
    id: str
    created_at: float
    endpoint: str
    action: str
    payload: Any
    priority: Priority = Priority.NORMAL
    retry_count: int = 0
    status: SyncStatus = SyncStatus.PENDING
    next_attempt_at: float = 0.0
    last_error: Optional[str] = None

    def to_request(self, source: str) -> Dict[str, Any]:
        """
        Build the RemoteEndpoint request body.

        The record id travels as ``syncId`` so the remote can recognise a
        retransmission of a write it already applied.
        """
        return {
            "action": self.action,
            "data": self.payload,
            "timestamp": self.created_at,
            "syncId": self.id,
            "source": source,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["priority"] = self.priority.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_row(cls, row) -> "MutationRecord":
        return cls(
            id=row["id"],
            created_at=row["created_at"],
            endpoint=row["endpoint"],
            action=row["action"],
            payload=json.loads(row["payload"]),
            priority=Priority(row["priority"]),
            retry_count=row["retry_count"],
            status=SyncStatus(row["status"]),
            next_attempt_at=row["next_attempt_at"],
            last_error=row["last_error"],
        )


@dataclass
class CacheEntry:
    key: str
    value: Any
    stored_at: float
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


@dataclass
class NetworkState:
    online: bool = False
    last_transition_at: Optional[float] = None


@dataclass
class SyncStats:
    success: int = 0
    failure: int = 0
    remaining: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class FailureOutcome:
    """Result of MutationQueue.fail()."""
    record: MutationRecord
    delay_ms: int
    exhausted: bool


# ==================== Lifecycle Signals ====================

@dataclass
class SyncStarted:
    queue_length: int


@dataclass
class ItemSynced:
    record: MutationRecord
    response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ItemSyncFailed:
    record: MutationRecord
    error: Exception


@dataclass
class ItemRetryScheduled:
    record: MutationRecord
    error: Exception
    delay_ms: int


@dataclass
class SyncCompleted:
    success: int
    failure: int
    remaining: int
