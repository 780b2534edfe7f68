"""
Tests for medrefer.sync.queue module.
"""

from datetime import datetime, timedelta

import pytest

from medrefer.database.db import Database
from medrefer.sync.models import (
    ConflictResolution,
    ConflictStrategy,
    OperationType,
    SyncHistory,
    SyncOperation,
    SyncPriority,
    SyncStatus,
)
from medrefer.sync.queue import SyncQueueStore, compact, merge_operations

T0 = datetime(2025, 3, 1, 8, 0)


def make_op(
    operation_type: OperationType,
    entity_id: str | None = "p1",
    data: dict | None = None,
    minutes: int = 0,
    **kwargs,
) -> SyncOperation:
    return SyncOperation(
        operation_type=operation_type,
        entity_type="patient",
        entity_id=entity_id,
        data=data if data is not None else {"id": entity_id},
        timestamp=T0 + timedelta(minutes=minutes),
        **kwargs,
    )


class TestMergeOperations:
    """Tests for pairwise merging."""

    def test_delete_first_wins(self) -> None:
        first = make_op(OperationType.DELETE)
        second = make_op(OperationType.UPDATE, minutes=1)
        assert merge_operations(first, second) is first

    def test_delete_second_wins(self) -> None:
        first = make_op(OperationType.CREATE)
        second = make_op(OperationType.DELETE, minutes=1)
        assert merge_operations(first, second) is second

    def test_create_then_update_stays_create(self) -> None:
        first = make_op(OperationType.CREATE, data={"id": "p1", "name": "A", "age": 3})
        second = make_op(OperationType.UPDATE, data={"id": "p1", "age": 4}, minutes=1)

        merged = merge_operations(first, second)

        assert merged.operation_type is OperationType.CREATE
        assert merged.id == first.id
        assert merged.data == {"id": "p1", "name": "A", "age": 4}

    def test_update_then_update(self) -> None:
        first = make_op(
            OperationType.UPDATE,
            data={"name": "A", "phone": "1"},
            priority=SyncPriority.HIGH,
        )
        second = make_op(
            OperationType.UPDATE,
            data={"phone": "2"},
            minutes=5,
            priority=SyncPriority.LOW,
        )

        merged = merge_operations(first, second)

        assert merged.data == {"name": "A", "phone": "2"}
        assert merged.timestamp == second.timestamp
        assert merged.priority is SyncPriority.HIGH

    def test_otherwise_newer_wins(self) -> None:
        first = make_op(OperationType.UPDATE, minutes=2)
        second = make_op(OperationType.CREATE, minutes=1)
        assert merge_operations(first, second) is first


class TestCompact:
    """Tests for queue compaction."""

    def test_collapses_per_entity(self) -> None:
        ops = [
            make_op(OperationType.CREATE, "p1", {"id": "p1", "name": "A"}),
            make_op(OperationType.CREATE, "p2", {"id": "p2"}, minutes=1),
            make_op(OperationType.UPDATE, "p1", {"name": "B"}, minutes=2),
            make_op(OperationType.DELETE, "p2", minutes=3),
        ]

        compacted = compact(ops)

        assert len(compacted) == 2
        assert compacted[0].operation_type is OperationType.CREATE
        assert compacted[0].data == {"id": "p1", "name": "B"}
        assert compacted[1].operation_type is OperationType.DELETE
        assert compacted[1].entity_id == "p2"

    def test_custom_and_idless_never_merge(self) -> None:
        ops = [
            make_op(OperationType.CUSTOM, "p1", {"action": "merge"}),
            make_op(OperationType.CUSTOM, "p1", {"action": "merge"}, minutes=1),
            make_op(OperationType.CREATE, None, {"name": "x"}),
            make_op(OperationType.CREATE, None, {"name": "y"}),
        ]
        assert len(compact(ops)) == 4

    def test_distinct_entity_types_kept_apart(self) -> None:
        patient = make_op(OperationType.UPDATE, "x1")
        referral = SyncOperation(
            operation_type=OperationType.UPDATE,
            entity_type="referral",
            entity_id="x1",
            data={},
        )
        assert len(compact([patient, referral])) == 2


class TestSyncQueueStore:
    """Tests for SyncQueueStore persistence."""

    @pytest.fixture
    def store(self, database: Database) -> SyncQueueStore:
        store = SyncQueueStore(database)
        store.ensure_tables()
        return store

    def test_save_and_get(self, store: SyncQueueStore) -> None:
        op = make_op(
            OperationType.UPDATE,
            data={"id": "p1", "tags": ["a"]},
            priority=SyncPriority.CRITICAL,
            metadata={"version": "v3"},
        )
        store.save(op)

        loaded = store.get(op.id)
        assert loaded is not None
        assert loaded.operation_type is OperationType.UPDATE
        assert loaded.priority is SyncPriority.CRITICAL
        assert loaded.data == {"id": "p1", "tags": ["a"]}
        assert loaded.metadata == {"version": "v3"}
        assert loaded.timestamp == op.timestamp

    def test_save_is_upsert(self, store: SyncQueueStore) -> None:
        op = make_op(OperationType.CREATE)
        store.save(op)
        op.retry_count = 2
        op.last_error = "timeout"
        store.update(op)

        loaded = store.get(op.id)
        assert loaded.retry_count == 2
        assert loaded.last_error == "timeout"
        assert store.count_by_status(SyncStatus.PENDING) == 1

    def test_load_pending_in_timestamp_order(self, store: SyncQueueStore) -> None:
        late = make_op(OperationType.CREATE, "p2", minutes=10)
        early = make_op(OperationType.CREATE, "p1", minutes=1)
        failed = make_op(OperationType.CREATE, "p3", status=SyncStatus.FAILED)
        store.save_many([late, early, failed])

        assert [op.id for op in store.load_pending()] == [early.id, late.id]
        assert [op.id for op in store.load_by_status(SyncStatus.FAILED)] == [failed.id]

    def test_mark_completed(self, store: SyncQueueStore) -> None:
        op = make_op(OperationType.CREATE, next_retry_time=T0)
        store.save(op)

        store.mark_completed(op)

        assert op.status is SyncStatus.COMPLETED
        loaded = store.get(op.id)
        assert loaded.status is SyncStatus.COMPLETED
        assert loaded.completed_at is not None
        assert loaded.next_retry_time is None

    def test_delete_and_delete_pending(self, store: SyncQueueStore) -> None:
        a = make_op(OperationType.CREATE, "p1")
        b = make_op(OperationType.CREATE, "p2")
        done = make_op(OperationType.CREATE, "p3", status=SyncStatus.COMPLETED)
        store.save_many([a, b, done])

        assert store.delete([a.id, "missing"]) == 1
        assert store.delete_pending() == 1
        assert store.count_by_status(SyncStatus.COMPLETED) == 1

    def test_history_oldest_first(self, store: SyncQueueStore) -> None:
        for minutes in (3, 1, 2):
            store.record_history(
                SyncHistory(
                    status="success",
                    duration=timedelta(milliseconds=minutes * 10),
                    sync_time=T0 + timedelta(minutes=minutes),
                )
            )

        recent = store.recent_history(limit=2)

        assert [h.sync_time for h in recent] == [
            T0 + timedelta(minutes=2),
            T0 + timedelta(minutes=3),
        ]
        assert recent[-1].duration_ms == 30

    def test_resolutions(self, store: SyncQueueStore) -> None:
        manual = ConflictResolution(
            conflict_id="c1",
            entity_type="medication",
            entity_id="m1",
            local_data={"dose": 1},
            remote_data={"dose": 2},
            strategy=ConflictStrategy.MANUAL,
            resolved_data={"dose": 1},
        )
        merged = ConflictResolution(
            conflict_id="c2",
            entity_type="patient",
            entity_id="p1",
            local_data={},
            remote_data={},
            strategy=ConflictStrategy.MERGE,
            resolved_data={},
        )
        store.save_resolution(manual)
        store.save_resolution(merged)

        assert store.count_resolutions() == 2
        parked = store.list_manual_resolutions()
        assert [r.id for r in parked] == [manual.id]
        assert parked[0].local_data == {"dose": 1}
        assert parked[0].remote_data == {"dose": 2}
