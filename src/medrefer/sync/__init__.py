"""
MedRefer sync module.

Provides the offline operation queue, conflict resolution and the remote
store abstraction.
"""

from medrefer.sync.conflicts import (
    analyze_differences,
    determine_strategy,
    merge_data,
    merge_field,
    resolve_conflict,
)
from medrefer.sync.models import (
    ConflictResolution,
    ConflictStrategy,
    OperationType,
    SyncOperation,
    SyncPriority,
    SyncResult,
    SyncStatistics,
    SyncStatus,
)
from medrefer.sync.remote import ConnectivityMonitor, InMemoryRemoteStore, RemoteStore
from medrefer.sync.scheduler import SyncScheduler
from medrefer.sync.service import OfflineSyncService

__all__ = [
    "OfflineSyncService",
    "SyncScheduler",
    "RemoteStore",
    "InMemoryRemoteStore",
    "ConnectivityMonitor",
    "SyncOperation",
    "OperationType",
    "SyncPriority",
    "SyncStatus",
    "SyncResult",
    "SyncStatistics",
    "ConflictStrategy",
    "ConflictResolution",
    "analyze_differences",
    "determine_strategy",
    "merge_data",
    "merge_field",
    "resolve_conflict",
]
