"""
MedRefer sync queue persistence.

Stores queued operations, sync history and conflict resolutions in the
local database, and compacts redundant operations on the same entity.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable
from datetime import datetime

from medrefer.core.logging import get_logger
from medrefer.database.db import Database
from medrefer.database.models import to_iso
from medrefer.sync.models import (
    ConflictResolution,
    ConflictStrategy,
    OperationType,
    SyncHistory,
    SyncOperation,
    SyncStatus,
)

logger = get_logger(__name__)


def merge_operations(first: SyncOperation, second: SyncOperation) -> SyncOperation:
    """Combine two queued operations on the same entity into one.

    ``first`` is the operation queued earlier.
    """
    if first.operation_type is OperationType.DELETE:
        return first
    if second.operation_type is OperationType.DELETE:
        return second

    if first.operation_type is OperationType.CREATE and second.operation_type is OperationType.UPDATE:
        return dataclasses.replace(first, data={**first.data, **second.data})

    if first.operation_type is OperationType.UPDATE and second.operation_type is OperationType.UPDATE:
        return dataclasses.replace(
            first,
            data={**first.data, **second.data},
            timestamp=second.timestamp,
            priority=max(first.priority, second.priority),
        )

    return second if second.timestamp > first.timestamp else first


def compact(operations: Iterable[SyncOperation]) -> list[SyncOperation]:
    """Collapse operations per ``(entity_type, entity_id)``, keeping queue order."""
    compacted: dict[tuple[str, str | None], SyncOperation] = {}
    for operation in operations:
        key = (operation.entity_type, operation.entity_id)
        if operation.entity_id is None or operation.operation_type is OperationType.CUSTOM:
            # custom and id-less operations are never merged
            key = (operation.entity_type, operation.id)
        existing = compacted.get(key)
        compacted[key] = operation if existing is None else merge_operations(existing, operation)
    return list(compacted.values())


class SyncQueueStore:
    """Database access for ``sync_queue``, ``sync_history`` and ``conflict_resolutions``."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def ensure_tables(self) -> None:
        self.db.migrate()

    def save(self, operation: SyncOperation) -> None:
        row = operation.to_row()
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        updates = ", ".join(f"{column} = excluded.{column}" for column in row if column != "id")
        self.db.execute(
            f"INSERT INTO sync_queue ({columns}) VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}",
            list(row.values()),
        )

    def save_many(self, operations: Iterable[SyncOperation]) -> int:
        count = 0
        with self.db.transaction():
            for operation in operations:
                self.save(operation)
                count += 1
        return count

    def update(self, operation: SyncOperation) -> None:
        self.save(operation)

    def mark_completed(self, operation: SyncOperation) -> None:
        operation.status = SyncStatus.COMPLETED
        operation.completed_at = datetime.now()
        operation.next_retry_time = None
        self.db.execute(
            "UPDATE sync_queue SET status = ?, completed_at = ?, next_retry_time = NULL, "
            "updated_at = ? WHERE id = ?",
            [
                SyncStatus.COMPLETED.value,
                to_iso(operation.completed_at),
                to_iso(datetime.now()),
                operation.id,
            ],
        )

    def get(self, operation_id: str) -> SyncOperation | None:
        row = self.db.query_one("SELECT * FROM sync_queue WHERE id = ?", [operation_id])
        return SyncOperation.from_row(row) if row is not None else None

    def load_pending(self) -> list[SyncOperation]:
        rows = self.db.query(
            "SELECT * FROM sync_queue WHERE status = ? ORDER BY timestamp ASC",
            [SyncStatus.PENDING.value],
        )
        return [SyncOperation.from_row(row) for row in rows]

    def load_by_status(self, status: SyncStatus) -> list[SyncOperation]:
        rows = self.db.query(
            "SELECT * FROM sync_queue WHERE status = ? ORDER BY timestamp ASC",
            [status.value],
        )
        return [SyncOperation.from_row(row) for row in rows]

    def count_by_status(self, status: SyncStatus) -> int:
        return int(
            self.db.scalar("SELECT COUNT(*) FROM sync_queue WHERE status = ?", [status.value])
            or 0
        )

    def delete(self, operation_ids: Iterable[str]) -> int:
        removed = 0
        with self.db.transaction():
            for operation_id in operation_ids:
                removed += self.db.execute("DELETE FROM sync_queue WHERE id = ?", [operation_id])
        return removed

    def delete_pending(self) -> int:
        return self.db.execute(
            "DELETE FROM sync_queue WHERE status = ?", [SyncStatus.PENDING.value]
        )

    def record_history(self, history: SyncHistory) -> None:
        row = history.to_row()
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        self.db.execute(
            f"INSERT INTO sync_history ({columns}) VALUES ({placeholders})",
            list(row.values()),
        )

    def recent_history(self, limit: int = 100) -> list[SyncHistory]:
        """Most recent history rows, oldest first."""
        rows = self.db.query(
            "SELECT * FROM sync_history ORDER BY sync_time DESC LIMIT ?", [limit]
        )
        return [SyncHistory.from_row(row) for row in reversed(rows)]

    def save_resolution(self, resolution: ConflictResolution) -> None:
        row = resolution.to_row()
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        self.db.execute(
            f"INSERT INTO conflict_resolutions ({columns}) VALUES ({placeholders})",
            list(row.values()),
        )

    def count_resolutions(self) -> int:
        return int(self.db.scalar("SELECT COUNT(*) FROM conflict_resolutions") or 0)

    def list_manual_resolutions(self) -> list[ConflictResolution]:
        rows = self.db.query(
            "SELECT * FROM conflict_resolutions WHERE resolution_strategy = ? "
            "ORDER BY resolved_at ASC",
            [ConflictStrategy.MANUAL.value],
        )
        return [ConflictResolution.from_row(row) for row in rows]
