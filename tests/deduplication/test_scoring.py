# SPDX-License-Identifier: MIT
"""Tests for similarity scoring."""

from datetime import date

import pytest

from dedup_engine.config import update_match_config
from dedup_engine.deduplication.scoring import (
    contact_similarity,
    date_similarity,
    fuzzy_score,
    name_similarity,
    product_similarity,
    resolve_weights,
    score,
    value_similarity,
    vendor_similarity,
)
from dedup_engine.deduplication.types import Contact, EntityRecord


class TestNameSimilarity:
    """Test fuzzy name comparison."""

    def test_identical_after_normalization(self):
        """Case, punctuation and legal suffix differences should not matter."""
        assert fuzzy_score("Globex Corporation", "globex corp.") == 100.0
        assert name_similarity("ACME, Inc.", "Acme") == 1.0

    def test_similar_names_score_high(self):
        """Small spelling differences should still score high."""
        assert name_similarity("Acme Cloud Migration", "Acme Cloud Migraton") > 0.9

    def test_unrelated_names_score_low(self):
        """Unrelated names should score low."""
        assert name_similarity("Acme Cloud", "Zyx Quartz") < 0.5

    def test_both_missing_is_none(self):
        """Missing on both sides means nothing to compare."""
        assert name_similarity(None, "") is None

    def test_one_missing_is_zero(self):
        """Missing on one side scores zero."""
        assert name_similarity("Acme", None) == 0.0

    def test_symmetric(self):
        """Argument order should not matter."""
        assert fuzzy_score("Acme Cloud", "Acme Cloud Migration Phase 2") == fuzzy_score(
            "Acme Cloud Migration Phase 2", "Acme Cloud"
        )


class TestValueSimilarity:
    """Test monetary value comparison."""

    def test_within_tolerance(self):
        """Values within 10% of their mean should score 1.0."""
        assert value_similarity(50000, 52000) == 1.0

    def test_beyond_three_times_tolerance(self):
        """50000 vs 100000 differs by ~67% and should score 0."""
        assert value_similarity(50000, 100000) == 0.0

    def test_linear_decay(self):
        """Between tolerance and 3x tolerance the score decays linearly."""
        # 20% difference from the mean: halfway between 10% and 30%
        similarity = value_similarity(90, 110)
        assert similarity == pytest.approx(0.5)

    def test_both_zero(self):
        """Two zero values are identical."""
        assert value_similarity(0, 0) == 1.0

    def test_missing(self):
        """Missing values are None on both sides and 0 on one side."""
        assert value_similarity(None, None) is None
        assert value_similarity(100, None) == 0.0

    def test_non_numeric_treated_as_missing(self):
        """Garbage values do not raise."""
        assert value_similarity("lots", None) is None


class TestDateSimilarity:
    """Test date comparison."""

    def test_within_tolerance(self):
        """Dates within 7 days should score 1.0."""
        assert date_similarity(date(2024, 3, 1), date(2024, 3, 8)) == 1.0

    def test_beyond_four_times_tolerance(self):
        """Dates 28+ days apart should score 0."""
        assert date_similarity(date(2024, 3, 1), date(2024, 4, 1)) == 0.0

    def test_accepts_strings(self):
        """ISO strings and date objects compare alike."""
        assert date_similarity("2024-03-01", date(2024, 3, 1)) == 1.0
        assert date_similarity("2024-03-01T10:00:00Z", "2024-03-02") == 1.0

    def test_unparseable_is_missing(self):
        """Unparseable dates count as missing."""
        assert date_similarity("not a date", None) is None
        assert date_similarity("not a date", "2024-03-01") == 0.0


class TestSetSimilarity:
    """Test product and contact overlap."""

    def test_products_jaccard(self):
        """3 products vs 2 shared gives 2/3."""
        similarity = product_similarity(["Storage", "Backup", "Support"], ["storage", "BACKUP"])
        assert similarity == pytest.approx(2 / 3)

    def test_contacts_by_email(self):
        """Contacts match on normalized email."""
        a = [Contact("Jane", "Jane@Globex.com"), Contact("Bob", "bob@globex.com")]
        b = [Contact("J. Doe", "jane@globex.com")]
        assert contact_similarity(a, b) == pytest.approx(0.5)

    def test_contacts_without_email_are_missing(self):
        """Contacts without any email are not comparable."""
        assert contact_similarity([Contact("Jane", "")], [Contact("Jane", "")]) is None

    def test_vendor(self):
        """Vendor ids match exactly."""
        assert vendor_similarity("v1", "v1") == 1.0
        assert vendor_similarity("v1", "v2") == 0.0
        assert vendor_similarity(None, None) is None


class TestScore:
    """Test the weighted overall score."""

    def test_self_similarity(self, make_record):
        """A record compared with itself scores at least 0.95."""
        record = make_record()
        assert score(record, record).overall >= 0.95

    def test_self_similarity_sparse_record(self):
        """Sparse records still score high against themselves."""
        record = EntityRecord(id="x", name="Acme", date="garbage")
        assert score(record, record).overall >= 0.95

    def test_symmetric(self, make_record):
        """score(a, b) equals score(b, a)."""
        a = make_record(id="a")
        b = make_record(id="b", name="Acme Cloud Migr.", value=61000, date=date(2024, 3, 30), products=["Backup"])
        assert score(a, b).overall == pytest.approx(score(b, a).overall)
        assert score(a, b).factors == pytest.approx(score(b, a).factors)

    def test_near_duplicate_deals(self, make_record):
        """Same name, vendor and customer with 50000 vs 52000 scores above 0.90."""
        a = make_record(id="a", value=50000)
        b = make_record(id="b", value=52000, counterpart_name="Globex Corp")
        assert score(a, b).overall > 0.90

    def test_missing_both_sides_excluded(self):
        """Fields missing on both sides drop out of the denominator."""
        a = EntityRecord(id="a", name="Acme", counterpart_name="Globex")
        b = EntityRecord(id="b", name="Acme", counterpart_name="Globex")
        result = score(a, b)
        assert result.overall == 1.0
        assert set(result.factors) == {"name", "counterpart_name"}
        assert result.effective_weight == pytest.approx(0.5)

    def test_missing_one_side_counts_zero(self):
        """A field present on one side only stays in with factor 0."""
        a = EntityRecord(id="a", name="Acme", value=100)
        b = EntityRecord(id="b", name="Acme")
        result = score(a, b)
        assert result.factors["value"] == 0.0
        assert result.overall == pytest.approx(0.25 / 0.40)

    def test_nothing_comparable(self):
        """A pair with no comparable fields scores 0 with zero weight."""
        result = score(EntityRecord(id="a"), EntityRecord(id="b"))
        assert result.overall == 0.0
        assert result.effective_weight == 0.0

    def test_weight_override(self):
        """Caller weights override the defaults."""
        a = EntityRecord(id="a", name="Acme", value=100)
        b = EntityRecord(id="b", name="Acme", value=1000)
        result = score(a, b, weights={"value": 0})
        assert result.overall == 1.0
        assert "value" not in result.factors

    def test_unknown_weight_ignored(self, match_config):
        """Unknown weight keys are ignored."""
        weights = resolve_weights({"shoe_size": 1.0}, match_config)
        assert "shoe_size" not in weights

    def test_uses_configured_tolerance(self):
        """Value tolerance comes from the match configuration."""
        a = EntityRecord(id="a", name="Acme", value=100)
        b = EntityRecord(id="b", name="Acme", value=125)
        assert score(a, b).factors["value"] < 1.0

        config = update_match_config(value_tolerance_percent=25)
        assert score(a, b, config=config).factors["value"] == 1.0
