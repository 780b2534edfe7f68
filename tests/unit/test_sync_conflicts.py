"""
Tests for medrefer.sync.conflicts module.
"""

import pytest

from medrefer.sync.conflicts import (
    analyze_differences,
    determine_strategy,
    merge_data,
    merge_field,
    resolve_conflict,
)
from medrefer.sync.models import (
    ConflictStrategy,
    DataDifference,
    DifferenceType,
    SyncConflict,
)


def make_conflict(entity_type: str, local: dict, remote: dict) -> SyncConflict:
    return SyncConflict(
        operation_id="op_1",
        entity_type=entity_type,
        entity_id="e1",
        local_data=local,
        remote_data=remote,
        differences=analyze_differences(local, remote),
    )


class TestAnalyzeDifferences:
    """Tests for field-level diffing."""

    def test_identical_records(self) -> None:
        assert analyze_differences({"a": 1}, {"a": 1}) == []

    def test_all_difference_kinds(self) -> None:
        differences = analyze_differences(
            {"name": "Jane", "phone": "0700", "email": "j@x.org"},
            {"name": "Jane", "phone": "0711", "address": "Nairobi"},
        )
        assert differences == [
            DataDifference("phone", "0700", "0711", DifferenceType.MODIFIED),
            DataDifference("email", "j@x.org", None, DifferenceType.REMOVED),
            DataDifference("address", None, "Nairobi", DifferenceType.ADDED),
        ]


class TestDetermineStrategy:
    """Tests for strategy selection."""

    @pytest.mark.parametrize("entity_type", ["medication", "diagnosis"])
    def test_clinical_entities_need_review(self, entity_type: str) -> None:
        conflict = make_conflict(entity_type, {"dose": 1}, {"dose": 2})
        assert determine_strategy(conflict) is ConflictStrategy.MANUAL

    def test_single_timestamp_difference_takes_remote(self) -> None:
        conflict = make_conflict(
            "patient",
            {"name": "A", "last_timestamp": "2024-01-01T00:00:00"},
            {"name": "A", "last_timestamp": "2024-02-01T00:00:00"},
        )
        assert determine_strategy(conflict) is ConflictStrategy.REMOTE_WINS

    @pytest.mark.parametrize("changed", [1, 2, 3])
    def test_small_conflicts_merge(self, changed: int) -> None:
        local = {f"f{i}": "local" for i in range(changed)}
        remote = {f"f{i}": "remote" for i in range(changed)}
        conflict = make_conflict("referral", local, remote)
        assert determine_strategy(conflict) is ConflictStrategy.MERGE

    def test_large_conflicts_keep_local(self) -> None:
        local = {f"f{i}": "local" for i in range(4)}
        remote = {f"f{i}": "remote" for i in range(4)}
        conflict = make_conflict("referral", local, remote)
        assert determine_strategy(conflict) is ConflictStrategy.LOCAL_WINS


class TestMergeField:
    """Tests for per-field merge rules."""

    def test_lists_are_unioned(self) -> None:
        assert merge_field("tags", ["a", "b"], ["b", "c"]) == ["a", "b", "c"]

    def test_newer_date_wins(self) -> None:
        assert merge_field("updated_date", "2024-03-02", "2024-03-01") == "2024-03-02"
        assert merge_field("updated_date", "2024-03-01", "2024-03-02") == "2024-03-02"

    def test_unparseable_timestamp_takes_remote(self) -> None:
        assert merge_field("sync_timestamp", "yesterday", "2024-03-01") == "2024-03-01"

    def test_counts_take_maximum(self) -> None:
        assert merge_field("visit_count", 3, 5) == 5
        assert merge_field("quantity", 7, 2) == 7

    def test_other_numbers_take_remote(self) -> None:
        assert merge_field("rating", 4.5, 3.0) == 3.0

    def test_strings_take_remote(self) -> None:
        assert merge_field("name", "local", "remote") == "remote"


class TestMergeData:
    def test_keeps_fields_from_both_sides(self) -> None:
        merged = merge_data(
            {"id": "1", "name": "local", "notes": "from device", "refill_count": 2},
            {"id": "1", "name": "remote", "status": "active", "refill_count": 1},
        )
        assert merged == {
            "id": "1",
            "name": "remote",
            "notes": "from device",
            "status": "active",
            "refill_count": 2,
        }


class TestResolveConflict:
    """Tests for resolve_conflict."""

    def test_remote_wins(self) -> None:
        conflict = make_conflict("patient", {"a": 1}, {"a": 2})
        resolution = resolve_conflict(conflict, ConflictStrategy.REMOTE_WINS)
        assert resolution.resolved_data == {"a": 2}

    def test_local_wins(self) -> None:
        conflict = make_conflict("patient", {"a": 1}, {"a": 2})
        resolution = resolve_conflict(conflict, ConflictStrategy.LOCAL_WINS, resolved_by="dr-1")
        assert resolution.resolved_data == {"a": 1}
        assert resolution.resolved_by == "dr-1"

    def test_manual_keeps_local_and_needs_review(self) -> None:
        conflict = make_conflict("medication", {"dose": 1}, {"dose": 2})
        resolution = resolve_conflict(conflict)

        assert resolution.strategy is ConflictStrategy.MANUAL
        assert resolution.needs_review is True
        assert resolution.resolved_data == {"dose": 1}

    def test_default_strategy_merges(self) -> None:
        conflict = make_conflict(
            "patient",
            {"id": "1", "allergies": ["penicillin"]},
            {"id": "1", "allergies": ["latex"]},
        )
        resolution = resolve_conflict(conflict)

        assert resolution.strategy is ConflictStrategy.MERGE
        assert resolution.resolved_data["allergies"] == ["penicillin", "latex"]
        assert resolution.conflict_id == conflict.id
        assert resolution.local_data == conflict.local_data
        assert resolution.remote_data == conflict.remote_data
