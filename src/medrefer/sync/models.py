"""
MedRefer sync data models.

Queue entries, conflicts, resolutions and the result objects returned by a
sync pass.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from medrefer.database.models import dump_json, load_json, parse_datetime, to_iso


def _prefixed_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class OperationType(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    CUSTOM = "custom"


class SyncPriority(Enum):
    """Priority of a queued operation, comparable from LOW to CRITICAL."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SyncPriority):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, SyncPriority):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, SyncPriority):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, SyncPriority):
            return NotImplemented
        return self.rank >= other.rank


_PRIORITY_ORDER = [
    SyncPriority.LOW,
    SyncPriority.NORMAL,
    SyncPriority.HIGH,
    SyncPriority.CRITICAL,
]


class SyncStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SyncOperation:
    """A local change waiting to be pushed to the remote store."""

    operation_type: OperationType
    entity_type: str
    data: dict[str, Any]
    entity_id: str | None = None
    priority: SyncPriority = SyncPriority.NORMAL
    status: SyncStatus = SyncStatus.PENDING
    retry_count: int = 0
    next_retry_time: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: _prefixed_id("op"))

    def is_due(self, now: datetime | None = None) -> bool:
        if self.next_retry_time is None:
            return True
        return self.next_retry_time <= (now or datetime.now())

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operation_type": self.operation_type.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "data": dump_json(self.data),
            "priority": self.priority.value,
            "timestamp": to_iso(self.timestamp),
            "retry_count": self.retry_count,
            "next_retry_time": to_iso(self.next_retry_time),
            "status": self.status.value,
            "error_message": self.last_error,
            "metadata": dump_json(self.metadata),
            "completed_at": to_iso(self.completed_at),
            "created_at": to_iso(self.timestamp),
            "updated_at": to_iso(datetime.now()),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> SyncOperation:
        data = dict(row)
        return cls(
            id=data["id"],
            operation_type=OperationType(data["operation_type"]),
            entity_type=data["entity_type"],
            entity_id=data.get("entity_id"),
            data=load_json(data.get("data")),
            priority=SyncPriority(data.get("priority") or "normal"),
            status=SyncStatus(data.get("status") or "pending"),
            retry_count=int(data.get("retry_count") or 0),
            next_retry_time=parse_datetime(data.get("next_retry_time")),
            completed_at=parse_datetime(data.get("completed_at")),
            last_error=data.get("error_message"),
            metadata=load_json(data.get("metadata")),
            timestamp=parse_datetime(data.get("timestamp"), datetime.now()),
        )

    def to_dict(self) -> dict[str, Any]:
        row = self.to_row()
        row["data"] = dict(self.data)
        row["metadata"] = dict(self.metadata)
        return row


class DifferenceType(Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


@dataclass(frozen=True)
class DataDifference:
    field: str
    local_value: Any
    remote_value: Any
    type: DifferenceType


@dataclass
class SyncConflict:
    operation_id: str
    entity_type: str
    entity_id: str
    local_data: dict[str, Any]
    remote_data: dict[str, Any]
    differences: list[DataDifference] = field(default_factory=list)
    detected_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: _prefixed_id("conflict"))


class ConflictStrategy(Enum):
    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    MERGE = "merge"
    MANUAL = "manual"
    CUSTOM = "custom"


@dataclass
class ConflictResolution:
    """Outcome of resolving one conflict."""

    conflict_id: str
    entity_type: str
    entity_id: str
    local_data: dict[str, Any]
    remote_data: dict[str, Any]
    strategy: ConflictStrategy
    resolved_data: dict[str, Any]
    resolved_at: datetime = field(default_factory=datetime.now)
    resolved_by: str | None = None
    id: str = field(default_factory=lambda: _prefixed_id("resolution"))

    @property
    def needs_review(self) -> bool:
        return self.strategy is ConflictStrategy.MANUAL

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conflict_id": self.conflict_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "local_version": dump_json(self.local_data),
            "remote_version": dump_json(self.remote_data),
            "resolution_strategy": self.strategy.value,
            "resolved_data": dump_json(self.resolved_data),
            "resolved_at": to_iso(self.resolved_at),
            "resolved_by": self.resolved_by,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ConflictResolution:
        data = dict(row)
        return cls(
            id=data["id"],
            conflict_id=data["conflict_id"],
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            local_data=load_json(data.get("local_version")),
            remote_data=load_json(data.get("remote_version")),
            strategy=ConflictStrategy(data["resolution_strategy"]),
            resolved_data=load_json(data.get("resolved_data")),
            resolved_at=parse_datetime(data.get("resolved_at"), datetime.now()),
            resolved_by=data.get("resolved_by"),
        )


@dataclass
class BatchResult:
    success_count: int = 0
    failure_count: int = 0
    failed_operations: list[SyncOperation] = field(default_factory=list)
    conflicts: list[tuple[SyncOperation, SyncConflict]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class SyncResult:
    """Outcome of one sync pass."""

    success: bool
    message: str | None = None
    success_count: int = 0
    failure_count: int = 0
    conflicts_resolved: int = 0
    deferred_count: int = 0
    errors: list[str] = field(default_factory=list)
    duration: timedelta | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "conflicts_resolved": self.conflicts_resolved,
            "deferred_count": self.deferred_count,
            "errors": list(self.errors),
            "duration_ms": (
                int(self.duration.total_seconds() * 1000) if self.duration is not None else None
            ),
        }


@dataclass
class SyncHistory:
    status: str
    duration: timedelta | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    sync_time: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: _prefixed_id("history"))

    @property
    def duration_ms(self) -> int:
        if self.duration is None:
            return 0
        return int(self.duration.total_seconds() * 1000)

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "sync_time": to_iso(self.sync_time),
            "duration_ms": self.duration_ms if self.duration is not None else None,
            "error_message": self.error_message,
            "metadata": dump_json(self.metadata),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> SyncHistory:
        data = dict(row)
        duration_ms = data.get("duration_ms")
        return cls(
            id=data["id"],
            status=data["status"],
            sync_time=parse_datetime(data.get("sync_time"), datetime.now()),
            duration=timedelta(milliseconds=duration_ms) if duration_ms is not None else None,
            error_message=data.get("error_message"),
            metadata=load_json(data.get("metadata")),
        )


@dataclass(frozen=True)
class SyncMetrics:
    successful_syncs: int
    failed_syncs: int
    conflicts_resolved: int
    queue_size: int
    last_sync_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "successful_syncs": self.successful_syncs,
            "failed_syncs": self.failed_syncs,
            "conflicts_resolved": self.conflicts_resolved,
            "queue_size": self.queue_size,
            "last_sync_time": to_iso(self.last_sync_time),
        }


@dataclass(frozen=True)
class SyncStatistics:
    """Point-in-time view of the sync queue, built on each request."""

    pending_count: int
    completed_count: int
    failed_count: int
    conflicts_resolved: int
    average_sync_time: timedelta
    last_sync_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending_count": self.pending_count,
            "completed_count": self.completed_count,
            "failed_count": self.failed_count,
            "conflicts_resolved": self.conflicts_resolved,
            "last_sync_time": to_iso(self.last_sync_time),
            "average_sync_time_ms": int(self.average_sync_time.total_seconds() * 1000),
        }
