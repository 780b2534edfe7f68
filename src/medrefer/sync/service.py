"""
MedRefer offline sync service.

Queues local changes while offline and pushes them to the remote store in
batches, retrying failures and resolving version conflicts.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from medrefer.core.config import SyncConfig
from medrefer.core.errors import MedReferError, SyncError
from medrefer.core.logging import OperationLogger, get_logger
from medrefer.database.db import Database
from medrefer.sync.conflicts import analyze_differences, determine_strategy, resolve_conflict
from medrefer.sync.models import (
    BatchResult,
    ConflictResolution,
    ConflictStrategy,
    OperationType,
    SyncConflict,
    SyncHistory,
    SyncMetrics,
    SyncOperation,
    SyncPriority,
    SyncResult,
    SyncStatistics,
    SyncStatus,
)
from medrefer.sync.queue import SyncQueueStore, compact
from medrefer.sync.remote import ConnectivityMonitor, RemoteStore

if TYPE_CHECKING:
    from medrefer.sync.scheduler import SyncScheduler

logger = get_logger(__name__)

Listener = Callable[[], None]
ResultListener = Callable[[SyncResult], None]


class OfflineSyncService:
    """Offline-first synchronization of local changes."""

    def __init__(
        self,
        db: Database,
        remote: RemoteStore,
        config: SyncConfig | None = None,
        connectivity: ConnectivityMonitor | None = None,
    ) -> None:
        self.config = config or SyncConfig()
        self.remote = remote
        self.connectivity = connectivity or ConnectivityMonitor()
        self.store = SyncQueueStore(db)

        self._lock = threading.RLock()
        self._queue: deque[SyncOperation] = deque()
        self._pending: dict[str, SyncOperation] = {}
        self._history: list[SyncHistory] = []
        self._resolutions: dict[str, ConflictResolution] = {}
        self._listeners: list[Listener] = []
        self._result_listeners: list[ResultListener] = []

        self._is_syncing = False
        self._initialized = False
        self._unsubscribe: Callable[[], None] | None = None
        self._scheduler: SyncScheduler | None = None

        self._successful_syncs = 0
        self._failed_syncs = 0
        self._conflicts_resolved = 0
        self._last_sync_time: datetime | None = None

    # Properties

    @property
    def is_online(self) -> bool:
        return self.connectivity.is_online

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def pending_operations(self) -> int:
        return len(self._pending)

    @property
    def last_sync_time(self) -> datetime | None:
        return self._last_sync_time

    @property
    def metrics(self) -> SyncMetrics:
        return SyncMetrics(
            successful_syncs=self._successful_syncs,
            failed_syncs=self._failed_syncs,
            conflicts_resolved=self._conflicts_resolved,
            queue_size=len(self._queue),
            last_sync_time=self._last_sync_time,
        )

    @property
    def resolutions(self) -> dict[str, ConflictResolution]:
        return dict(self._resolutions)

    def queued_operations(self) -> list[SyncOperation]:
        with self._lock:
            return list(self._queue)

    # Lifecycle

    def initialize(self) -> None:
        """Load persisted state and start watching connectivity."""
        if self._initialized:
            return

        try:
            self.store.ensure_tables()
            pending = self.store.load_pending()
            history = self.store.recent_history(self.config.history_limit)
            resolved = self.store.count_resolutions()
        except MedReferError as e:
            logger.error("Sync service initialization failed", error=str(e))
            raise SyncError("Failed to initialize offline sync service") from e

        with self._lock:
            self._queue.extend(pending)
            self._pending.update((op.id, op) for op in pending)
            self._history = history
            self._conflicts_resolved = resolved
            if history:
                self._last_sync_time = history[-1].sync_time

        self._unsubscribe = self.connectivity.subscribe(self._on_connectivity_changed)

        if self.config.auto_sync:
            from medrefer.sync.scheduler import SyncScheduler

            self._scheduler = SyncScheduler(self, self.config.sync_interval)
            self._scheduler.start()

        self._initialized = True
        logger.info(
            "Offline sync service initialized",
            pending=len(pending),
            online=self.is_online,
        )

        if self.config.auto_sync and self.is_online and self._queue:
            self.perform_sync()

    def dispose(self) -> None:
        if self._scheduler is not None:
            self._scheduler.stop()
            self._scheduler = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._listeners.clear()
        self._result_listeners.clear()
        self._initialized = False
        logger.debug("Offline sync service disposed")

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise SyncError("Offline sync service is not initialized")

    # Listeners

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_result_listener(self, listener: ResultListener) -> None:
        """Register a callback receiving each completed sync pass result."""
        self._result_listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.warning("Sync listener failed", error=str(e))

    def _notify_result(self, result: SyncResult) -> None:
        for listener in list(self._result_listeners):
            try:
                listener(result)
            except Exception as e:
                logger.warning("Sync result listener failed", error=str(e))

    # Queueing

    def queue_operation(self, operation: SyncOperation) -> None:
        """Queue one operation and persist it."""
        self._require_initialized()
        try:
            with self._lock:
                if len(self._queue) >= self.config.max_queue_size:
                    self._compact_queue()
                self.store.save(operation)
                self._queue.append(operation)
                self._pending[operation.id] = operation
        except MedReferError as e:
            logger.error("Failed to queue operation", operation_id=operation.id, error=str(e))
            raise SyncError("Failed to queue operation") from e

        logger.debug(
            "Operation queued",
            operation_id=operation.id,
            operation_type=operation.operation_type.value,
            entity_type=operation.entity_type,
        )
        self._notify()
        self._attempt_immediate_sync()

    def queue_batch(self, operations: Iterable[SyncOperation]) -> int:
        """Queue several operations, persisted in a single transaction."""
        self._require_initialized()
        batch = list(operations)
        try:
            self.store.save_many(batch)
        except MedReferError as e:
            logger.error("Failed to queue batch", size=len(batch), error=str(e))
            raise SyncError("Failed to queue batch operations") from e

        with self._lock:
            self._queue.extend(batch)
            self._pending.update((op.id, op) for op in batch)

        logger.debug("Batch queued", size=len(batch))
        self._notify()
        self._attempt_immediate_sync()
        return len(batch)

    def clear_queue(self) -> int:
        """Drop every pending operation. Returns how many were removed."""
        self._require_initialized()
        with self._lock:
            self._queue.clear()
            self._pending.clear()
            removed = self.store.delete_pending()
        logger.info("Sync queue cleared", removed=removed)
        self._notify()
        return removed

    def _attempt_immediate_sync(self) -> None:
        if not self.is_online or self._is_syncing:
            return
        with self._lock:
            urgent = any(op.priority >= SyncPriority.HIGH for op in self._queue)
        if urgent:
            self.perform_sync()

    def _compact_queue(self) -> None:
        before = list(self._queue)
        after = compact(before)
        kept = {op.id for op in after}
        dropped = [op.id for op in before if op.id not in kept]

        with self.store.db.transaction():
            self.store.delete(dropped)
            self.store.save_many(after)

        self._queue = deque(after)
        self._pending = {op.id: op for op in after}
        logger.info("Sync queue compacted", before=len(before), after=len(after))

    # Sync pass

    def should_sync(self) -> bool:
        return self.is_online and not self._is_syncing and bool(self._queue)

    def perform_sync(self) -> SyncResult:
        """Push queued operations to the remote store."""
        refused: SyncResult | None = None
        with self._lock:
            if self._is_syncing:
                refused = SyncResult(success=False, message="Sync already in progress")
            elif not self.is_online:
                refused = SyncResult(success=False, message="Device is offline")
            else:
                self._is_syncing = True
        if refused is not None:
            self._notify_result(refused)
            return refused
        self._notify()

        started = datetime.now()
        success_count = 0
        failure_count = 0
        conflicts = 0
        errors: list[str] = []

        try:
            with OperationLogger("sync pass", logger, queued=len(self._queue)) as op:
                while self.is_online:
                    batch = self._take_batch()
                    if not batch:
                        break
                    batch_result = self._process_batch(batch)
                    success_count += batch_result.success_count
                    failure_count += batch_result.failure_count
                    errors.extend(batch_result.errors)

                    for failed in batch_result.failed_operations:
                        self._handle_failed_operation(failed)

                    for operation, conflict in batch_result.conflicts:
                        pushed = self._handle_conflict(operation, conflict)
                        conflicts += 1
                        if pushed is True:
                            success_count += 1
                        elif pushed is False:
                            failure_count += 1
                            operation.last_error = operation.last_error or "Resolved data rejected"
                            errors.append(f"{operation.id}: {operation.last_error}")
                            self._handle_failed_operation(operation)

                op.update(success=success_count, failures=failure_count, conflicts=conflicts)

            self._successful_syncs += success_count
            self._failed_syncs += failure_count
            self._last_sync_time = datetime.now()
            duration = self._last_sync_time - started

            self._record_history(
                SyncHistory(
                    status="success" if failure_count == 0 else "partial",
                    duration=duration,
                    sync_time=self._last_sync_time,
                    metadata={
                        "success_count": success_count,
                        "failure_count": failure_count,
                        "conflicts": conflicts,
                        "errors": errors,
                    },
                )
            )

            result = SyncResult(
                success=failure_count == 0,
                success_count=success_count,
                failure_count=failure_count,
                conflicts_resolved=conflicts,
                deferred_count=len(self._queue),
                errors=errors,
                duration=duration,
            )
        except Exception as e:
            logger.error("Sync pass failed", error=str(e))
            duration = datetime.now() - started
            try:
                self._record_history(
                    SyncHistory(status="error", duration=duration, error_message=str(e))
                )
            except MedReferError as history_error:
                logger.error("Could not record sync history", error=str(history_error))
            result = SyncResult(
                success=False,
                message=f"Sync failed: {e}",
                success_count=success_count,
                failure_count=failure_count,
                conflicts_resolved=conflicts,
                errors=errors,
                duration=duration,
            )
        finally:
            self._is_syncing = False
            self._notify()

        self._notify_result(result)
        return result

    def _take_batch(self) -> list[SyncOperation]:
        """Remove up to ``batch_size`` due operations from the queue."""
        now = datetime.now()
        batch: list[SyncOperation] = []
        with self._lock:
            remaining: deque[SyncOperation] = deque()
            while self._queue:
                operation = self._queue.popleft()
                if len(batch) < self.config.batch_size and operation.is_due(now):
                    batch.append(operation)
                else:
                    remaining.append(operation)
            self._queue = remaining
        return batch

    def _process_batch(self, batch: list[SyncOperation]) -> BatchResult:
        result = BatchResult()
        for operation in batch:
            try:
                if self._has_conflict(operation):
                    result.conflicts.append((operation, self._detect_conflict(operation)))
                    continue

                if self._process_operation(operation):
                    result.success_count += 1
                    self._complete(operation)
                else:
                    result.failure_count += 1
                    result.failed_operations.append(operation)
                    operation.last_error = "Remote store rejected the change"
            except Exception as e:
                result.failure_count += 1
                result.failed_operations.append(operation)
                result.errors.append(f"{operation.id}: {e}")
                operation.last_error = str(e)
                logger.warning(
                    "Error processing operation",
                    operation_id=operation.id,
                    error=str(e),
                )
        return result

    def _entity_id(self, operation: SyncOperation) -> str:
        entity_id = operation.entity_id or operation.data.get("id")
        if not entity_id:
            raise SyncError(f"Operation {operation.id} has no entity id")
        return str(entity_id)

    def _process_operation(self, operation: SyncOperation) -> bool:
        kind = operation.operation_type
        if kind is OperationType.CREATE:
            entity_id = self._entity_id(operation)
            if self.remote.exists(operation.entity_type, entity_id):
                logger.debug("Remote entity exists, converting create to update", entity_id=entity_id)
                return self._push_update(operation, operation.data)
            version = self.remote.create(operation.entity_type, entity_id, operation.data)
            return self._accept_version(operation, version)
        if kind is OperationType.UPDATE:
            return self._push_update(operation, operation.data)
        if kind is OperationType.DELETE:
            return self.remote.delete(operation.entity_type, self._entity_id(operation))
        return self.remote.apply_custom(operation.entity_type, operation.data)

    def _push_update(self, operation: SyncOperation, data: dict) -> bool:
        version = self.remote.update(operation.entity_type, self._entity_id(operation), data)
        return self._accept_version(operation, version)

    @staticmethod
    def _accept_version(operation: SyncOperation, version: str | None) -> bool:
        if version is None:
            return False
        operation.metadata["version"] = version
        return True

    def _has_conflict(self, operation: SyncOperation) -> bool:
        if operation.operation_type is not OperationType.UPDATE:
            return False
        local_version = operation.metadata.get("version")
        if local_version is None:
            return False
        remote_version = self.remote.get_version(operation.entity_type, self._entity_id(operation))
        return remote_version is not None and str(local_version) != remote_version

    def _detect_conflict(self, operation: SyncOperation) -> SyncConflict:
        entity_id = self._entity_id(operation)
        remote_data = self.remote.fetch(operation.entity_type, entity_id)
        return SyncConflict(
            operation_id=operation.id,
            entity_type=operation.entity_type,
            entity_id=entity_id,
            local_data=dict(operation.data),
            remote_data=remote_data,
            differences=analyze_differences(operation.data, remote_data),
        )

    def _handle_conflict(self, operation: SyncOperation, conflict: SyncConflict) -> bool | None:
        """Resolve and persist a conflict.

        Returns whether the resolved data reached the remote, or ``None``
        when the conflict was parked for manual review.
        """
        strategy = determine_strategy(conflict)
        resolution = resolve_conflict(conflict, strategy)
        self.store.save_resolution(resolution)
        self._resolutions[conflict.id] = resolution
        self._conflicts_resolved += 1
        logger.info(
            "Conflict resolved",
            entity_type=conflict.entity_type,
            entity_id=conflict.entity_id,
            strategy=strategy.value,
            differences=len(conflict.differences),
        )
        self._notify()

        if strategy is ConflictStrategy.MANUAL:
            operation.status = SyncStatus.CANCELLED
            operation.last_error = "Awaiting manual conflict resolution"
            self.store.update(operation)
            with self._lock:
                self._pending.pop(operation.id, None)
            logger.warning(
                "Conflict requires manual resolution",
                entity_type=conflict.entity_type,
                entity_id=conflict.entity_id,
            )
            return None

        try:
            operation.metadata.pop("version", None)
            pushed = self._push_update(operation, resolution.resolved_data)
        except Exception as e:
            operation.last_error = str(e)
            return False
        if pushed:
            operation.data = dict(resolution.resolved_data)
            self._complete(operation)
        return pushed

    def _complete(self, operation: SyncOperation) -> None:
        self.store.update(operation)
        self.store.mark_completed(operation)
        with self._lock:
            self._pending.pop(operation.id, None)

    def _handle_failed_operation(self, operation: SyncOperation) -> None:
        operation.retry_count += 1
        operation.last_error = operation.last_error or f"Sync failed at {datetime.now().isoformat()}"

        if operation.retry_count < self.config.max_retries:
            operation.status = SyncStatus.PENDING
            operation.next_retry_time = datetime.now() + self.config.retry_delay * operation.retry_count
            with self._lock:
                self._queue.append(operation)
            self.store.update(operation)
            logger.debug(
                "Operation scheduled for retry",
                operation_id=operation.id,
                retry_count=operation.retry_count,
                max_retries=self.config.max_retries,
            )
        else:
            operation.status = SyncStatus.FAILED
            operation.next_retry_time = None
            self.store.update(operation)
            with self._lock:
                self._pending.pop(operation.id, None)
            logger.warning(
                "Operation moved to dead letter queue",
                operation_id=operation.id,
                entity_type=operation.entity_type,
                error=operation.last_error,
            )

    def _record_history(self, history: SyncHistory) -> None:
        self._history.append(history)
        self.store.record_history(history)
        if len(self._history) > self.config.history_limit:
            del self._history[: self.config.history_trim]

    # Statistics

    def get_statistics(self) -> SyncStatistics:
        return SyncStatistics(
            pending_count=self.store.count_by_status(SyncStatus.PENDING),
            completed_count=self.store.count_by_status(SyncStatus.COMPLETED),
            failed_count=self.store.count_by_status(SyncStatus.FAILED),
            conflicts_resolved=self._conflicts_resolved,
            last_sync_time=self._last_sync_time,
            average_sync_time=self._average_sync_time(),
        )

    def _average_sync_time(self) -> timedelta:
        if not self._history:
            return timedelta(0)
        total_ms = sum(entry.duration_ms for entry in self._history)
        return timedelta(milliseconds=total_ms // len(self._history))

    def history(self) -> list[SyncHistory]:
        return list(self._history)

    # Connectivity

    def _on_connectivity_changed(self, online: bool) -> None:
        if online:
            logger.info("Device came online, starting sync")
            if self._scheduler is not None and self._scheduler.is_running:
                self._scheduler.trigger()
            else:
                self.perform_sync()
        self._notify()
