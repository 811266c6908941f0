# SPDX-License-Identifier: MIT
"""Tests for conflict detection and resolution."""

from datetime import timedelta

import pytest

from dedup_engine.deduplication.conflicts import (
    ConflictResolutionStrategy,
    detect_conflicts,
    resolve_conflicts,
)
from dedup_engine.deduplication.types import ValidationStatus


def by_field(conflicts) -> dict:
    return {c.field_name: c for c in conflicts}


class TestDetectConflicts:
    """Test detect_conflicts()."""

    def test_no_conflicts_for_identical_records(self, make_record):
        """Identical records have nothing to resolve."""
        assert detect_conflicts([make_record(id="a"), make_record(id="b")]) == []

    def test_value_conflict(self, make_record):
        """Differing values are reported with every record's value."""
        conflicts = by_field(detect_conflicts([make_record(id="a"), make_record(id="b", value=52000)]))
        assert set(conflicts) == {"value"}
        assert [fv.entity_id for fv in conflicts["value"].values] == ["a", "b"]
        assert [fv.value for fv in conflicts["value"].values] == [50000.0, 52000]

    def test_case_and_whitespace_are_not_conflicts(self, make_record):
        """Strings compare case- and whitespace-insensitively."""
        a = make_record(id="a")
        b = make_record(id="b", name="ACME  cloud migration ")
        assert detect_conflicts([a, b]) == []

    def test_empty_value_is_not_a_conflict(self, make_record):
        """One empty value against one real value is not a conflict."""
        a = make_record(id="a", description=None)
        b = make_record(id="b", description="Phase one")
        assert detect_conflicts([a, b]) == []

    def test_extension_fields(self, make_record):
        """Keys in the extension map are compared too."""
        a = make_record(id="a", extra={"region": "EU", "merged_into": "x"})
        b = make_record(id="b", extra={"region": "US"})
        conflicts = by_field(detect_conflicts([a, b]))
        assert set(conflicts) == {"extra.region"}

    def test_manual_review_for_three_values(self, make_record):
        """More than two distinct values needs manual review."""
        records = [make_record(id="a", value=1), make_record(id="b", value=2), make_record(id="c", value=3)]
        assert by_field(detect_conflicts(records))["value"].requires_manual_review is True

        two = [make_record(id="a", value=1), make_record(id="b", value=2)]
        assert by_field(detect_conflicts(two))["value"].requires_manual_review is False


class TestSuggestedValue:
    """Test the suggestion rules."""

    def test_only_validated_value(self, make_record):
        """The validated record's value wins when it is the only validated one."""
        a = make_record(id="a", value=1, validation_status=ValidationStatus.FAILED)
        b = make_record(id="b", value=2, validation_status=ValidationStatus.PASSED)
        conflict = by_field(detect_conflicts([a, b]))["value"]
        assert conflict.suggested_value == 2
        assert conflict.suggested_reason == "only validated value"

    def test_highest_confidence(self, make_record):
        """Without validation the value with confidence >= 0.85 wins."""
        unvalidated = {"validation_status": ValidationStatus.UNVALIDATED}
        a = make_record(id="a", value=1, extraction_confidence=0.5, **unvalidated)
        b = make_record(id="b", value=2, extraction_confidence=0.95, **unvalidated)
        conflict = by_field(detect_conflicts([a, b]))["value"]
        assert conflict.suggested_value == 2
        assert conflict.suggested_reason.startswith("highest confidence")

    def test_most_recent(self, make_record, now):
        """Low confidence falls back to the most recently updated value."""
        unvalidated = {"validation_status": ValidationStatus.UNVALIDATED, "extraction_confidence": 0.5}
        a = make_record(id="a", value=1, updated_at=now, **unvalidated)
        b = make_record(id="b", value=2, updated_at=now - timedelta(days=3), **unvalidated)
        conflict = by_field(detect_conflicts([a, b]))["value"]
        assert conflict.suggested_value == 1
        assert conflict.suggested_reason == "most recently updated"


class TestResolveConflicts:
    """Test resolve_conflicts() strategies; the first record is the source, the last the target."""

    @pytest.fixture
    def conflicts(self, make_record):
        source = make_record(id="src", value=1, products=["Cloud Storage", "Backup"],
                             validation_status=ValidationStatus.FAILED)
        target = make_record(id="tgt", value=2, products=["backup", "Support"])
        return detect_conflicts([source, target])

    def test_prefer_source(self, conflicts):
        assert resolve_conflicts(conflicts, ConflictResolutionStrategy.PREFER_SOURCE)["value"] == 1

    def test_prefer_target(self, conflicts):
        assert resolve_conflicts(conflicts, ConflictResolutionStrategy.PREFER_TARGET)["value"] == 2

    def test_prefer_complete(self, conflicts):
        """The first meaningful value wins."""
        assert resolve_conflicts(conflicts, "prefer_complete")["value"] == 1

    def test_prefer_validated(self, conflicts):
        """The first validated record's value wins."""
        assert resolve_conflicts(conflicts, ConflictResolutionStrategy.PREFER_VALIDATED)["value"] == 2

    def test_merge_arrays(self, conflicts):
        """Lists are unioned in order without duplicates; scalars use the suggestion."""
        resolved = resolve_conflicts(conflicts, ConflictResolutionStrategy.MERGE_ARRAYS)
        assert resolved["products"] == ["Cloud Storage", "Backup", "Support"]
        assert resolved["value"] == 2

    def test_manual_resolves_nothing(self, conflicts):
        assert resolve_conflicts(conflicts, ConflictResolutionStrategy.MANUAL) == {}

    def test_unknown_strategy_uses_suggestions(self, conflicts):
        """An unknown strategy falls back to the suggested values."""
        resolved = resolve_conflicts(conflicts, "coin_flip")
        assert resolved == {c.field_name: c.suggested_value for c in conflicts}
