"""
MedRefer sync conflict handling.

Detects differences between a local change and the remote copy, picks a
resolution strategy and produces the resolved record.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from medrefer.sync.models import (
    ConflictResolution,
    ConflictStrategy,
    DataDifference,
    DifferenceType,
    SyncConflict,
)

MANUAL_REVIEW_ENTITIES = frozenset({"medication", "diagnosis"})
MERGE_THRESHOLD = 3


def analyze_differences(local: dict[str, Any], remote: dict[str, Any]) -> list[DataDifference]:
    """List field-level differences over the union of both key sets."""
    differences: list[DataDifference] = []
    keys = list(local) + [key for key in remote if key not in local]
    for key in keys:
        if key not in local:
            differences.append(DataDifference(key, None, remote[key], DifferenceType.ADDED))
        elif key not in remote:
            differences.append(DataDifference(key, local[key], None, DifferenceType.REMOVED))
        elif local[key] != remote[key]:
            differences.append(
                DataDifference(key, local[key], remote[key], DifferenceType.MODIFIED)
            )
    return differences


def determine_strategy(conflict: SyncConflict) -> ConflictStrategy:
    """Pick how a conflict should be resolved.

    Clinical entities always go to manual review. A conflict on a single
    timestamp field defers to the remote copy. Small conflicts are merged
    and anything larger keeps the local change.
    """
    if conflict.entity_type in MANUAL_REVIEW_ENTITIES:
        return ConflictStrategy.MANUAL

    differences = conflict.differences
    if len(differences) == 1 and "timestamp" in differences[0].field:
        return ConflictStrategy.REMOTE_WINS

    if len(differences) <= MERGE_THRESHOLD:
        return ConflictStrategy.MERGE

    return ConflictStrategy.LOCAL_WINS


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def merge_field(field: str, local_value: Any, remote_value: Any) -> Any:
    if isinstance(local_value, list) and isinstance(remote_value, list):
        merged = list(local_value)
        for item in remote_value:
            if item not in merged:
                merged.append(item)
        return merged

    if "timestamp" in field or "date" in field:
        try:
            local_time = _parse_timestamp(local_value)
            remote_time = _parse_timestamp(remote_value)
            return local_value if local_time > remote_time else remote_value
        except (TypeError, ValueError):
            return remote_value

    if _is_number(local_value) and _is_number(remote_value):
        if "count" in field or "quantity" in field:
            return max(local_value, remote_value)

    return remote_value


def merge_data(local: dict[str, Any], remote: dict[str, Any]) -> dict[str, Any]:
    """Merge a local record into the remote one, field by field."""
    merged = dict(remote)
    for key, value in local.items():
        if key not in remote:
            merged[key] = value
        elif value != remote[key]:
            merged[key] = merge_field(key, value, remote[key])
    return merged


def resolve_conflict(
    conflict: SyncConflict,
    strategy: ConflictStrategy | None = None,
    resolved_by: str | None = None,
) -> ConflictResolution:
    """Resolve ``conflict``. Manual and custom strategies keep local data."""
    strategy = strategy or determine_strategy(conflict)

    if strategy is ConflictStrategy.REMOTE_WINS:
        resolved = dict(conflict.remote_data)
    elif strategy is ConflictStrategy.MERGE:
        resolved = merge_data(conflict.local_data, conflict.remote_data)
    else:
        resolved = dict(conflict.local_data)

    return ConflictResolution(
        conflict_id=conflict.id,
        entity_type=conflict.entity_type,
        entity_id=conflict.entity_id,
        local_data=dict(conflict.local_data),
        remote_data=dict(conflict.remote_data),
        strategy=strategy,
        resolved_data=resolved,
        resolved_by=resolved_by,
    )
