# SPDX-License-Identifier: MIT
"""Tests for duplicate detection."""

from datetime import date

import pytest

from dedup_engine.deduplication.detector import (
    DuplicateDetector,
    detect_customer_date,
    detect_customer_value,
    detect_exact_match,
    detect_fuzzy_name,
    detect_vendor_customer,
    rank_matches,
)
from dedup_engine.deduplication.types import (
    DetectionStatus,
    DuplicateStrategy,
    EntityRecord,
    MatchRecord,
    SuggestedAction,
)
from dedup_engine.errors import PartialBatchFailure, StoreError
from dedup_engine.notifications import DUPLICATE_DETECTED


@pytest.fixture
def detector() -> DuplicateDetector:
    return DuplicateDetector()


class TestStrategies:
    """Test the individual match strategies."""

    def test_exact_match(self, make_record, match_config):
        """Normalized name and counterpart equality is an exact match."""
        query = make_record(id="q", name="ACME Cloud Migration!", counterpart_name="Globex, Inc.")
        pool = [make_record(id="a", counterpart_name="globex")]
        matches = detect_exact_match(query, pool, match_config)
        assert [m.matched_entity_id for m in matches] == ["a"]
        assert matches[0].confidence == 1.0

    def test_exact_match_requires_equal_values(self, make_record, match_config):
        """Exact match is rejected when both values differ."""
        query = make_record(id="q", value=50000)
        pool = [make_record(id="a", value=52000)]
        assert detect_exact_match(query, pool, match_config) == []

    def test_fuzzy_name(self, make_record, match_config):
        """Both names fuzzy-similar produce a FUZZY_NAME match."""
        query = make_record(id="q", name="Acme Cloud Migration", counterpart_name="Globex Corporation")
        pool = [make_record(id="a", name="Acme Cloud Migraton", counterpart_name="Globex Corp")]
        matches = detect_fuzzy_name(query, pool, match_config)
        assert len(matches) == 1
        assert matches[0].confidence > 0.9

    def test_fuzzy_name_requires_both(self, make_record, match_config):
        """A matching name with a different counterpart is not a fuzzy match."""
        query = make_record(id="q", counterpart_name="Globex Corporation")
        pool = [make_record(id="a", counterpart_name="Zyx Quartz")]
        assert detect_fuzzy_name(query, pool, match_config) == []

    def test_customer_value(self, make_record, match_config):
        """Same counterpart with similar value matches with 0.6c + 0.4v."""
        query = make_record(id="q", name="Something else", value=50000)
        pool = [make_record(id="a", value=51000)]
        matches = detect_customer_value(query, pool, match_config)
        assert len(matches) == 1
        assert matches[0].confidence == pytest.approx(1.0)

    def test_customer_value_skipped_without_value(self, make_record, match_config):
        """Records without a value are skipped."""
        query = make_record(id="q", value=None)
        assert detect_customer_value(query, [make_record(id="a")], match_config) == []
        query = make_record(id="q")
        assert detect_customer_value(query, [make_record(id="a", value=None)], match_config) == []

    def test_customer_date(self, make_record, match_config):
        """Same counterpart with close dates matches."""
        query = make_record(id="q", date=date(2024, 3, 15))
        pool = [make_record(id="a", date=date(2024, 3, 18)), make_record(id="b", date=None)]
        matches = detect_customer_date(query, pool, match_config)
        assert [m.matched_entity_id for m in matches] == ["a"]

    def test_vendor_customer(self, make_record, match_config):
        """Same vendor and similar counterpart: confidence = min(1, 0.3 + 0.5c + 0.2n)."""
        query = make_record(id="q", name="Acme")
        pool = [make_record(id="a", name="Zyx Quartz"), make_record(id="b", vendor_id="other")]
        matches = detect_vendor_customer(query, pool, match_config)
        assert [m.matched_entity_id for m in matches] == ["a"]
        assert 0.8 <= matches[0].confidence <= 1.0

    def test_vendor_customer_skipped_without_vendor(self, make_record, match_config):
        """Records without a vendor id are skipped."""
        query = make_record(id="q", vendor_id=None)
        assert detect_vendor_customer(query, [make_record(id="a")], match_config) == []


class TestRanking:
    """Test match union, de-duplication and ordering."""

    def test_keeps_highest_per_candidate(self):
        """Each candidate appears once with its best confidence."""
        matches = [
            MatchRecord("a", DuplicateStrategy.FUZZY_NAME, 0.9),
            MatchRecord("a", DuplicateStrategy.EXACT_MATCH, 1.0),
            MatchRecord("b", DuplicateStrategy.MULTI_FACTOR, 0.88),
            MatchRecord("c", DuplicateStrategy.MULTI_FACTOR, 0.5),
        ]
        ranked = rank_matches(matches, threshold=0.85)
        assert [(m.matched_entity_id, m.strategy) for m in ranked] == [
            ("a", DuplicateStrategy.EXACT_MATCH),
            ("b", DuplicateStrategy.MULTI_FACTOR),
        ]


class TestDetect:
    """Test DuplicateDetector.detect()."""

    def test_finds_duplicate_in_pool(self, detector, make_record):
        """A near-identical record is detected and ranked first."""
        query = make_record(id="q", value=50000)
        pool = [
            make_record(id="dup", value=52000),
            make_record(id="other", name="Zyx Quartz", counterpart_name="Initech", vendor_id="v9",
                        value=900, products=[], contacts=[]),
        ]
        result = detector.detect(query, pool=pool)
        assert result.is_duplicate
        assert result.matches[0].matched_entity_id == "dup"
        assert result.suggested_action == SuggestedAction.AUTO_MERGE
        assert "other" not in [m.matched_entity_id for m in result.matches]

    def test_never_matches_itself(self, detector, make_record):
        """The queried id is excluded from the pool."""
        query = make_record(id="q")
        result = detector.detect(query, pool=[query, make_record(id="q2")])
        ids = [m.matched_entity_id for m in result.matches]
        assert "q" not in ids
        assert ids == ["q2"]

    def test_matches_sorted_and_unique(self, detector, make_record):
        """Matches are sorted by confidence and unique per candidate."""
        query = make_record(id="q")
        pool = [
            make_record(id="a", value=56000, date=date(2024, 3, 25)),
            make_record(id="b"),
            make_record(id="c", name="Acme Cloud Migr", products=["Backup"]),
        ]
        result = detector.detect(query, pool=pool, threshold=0.0)
        confidences = [m.confidence for m in result.matches]
        assert confidences == sorted(confidences, reverse=True)
        ids = [m.matched_entity_id for m in result.matches]
        assert len(ids) == len(set(ids))

    def test_threshold_filters(self, detector, make_record):
        """Matches below the threshold are dropped."""
        query = make_record(id="q", name="Acme")
        pool = [make_record(id="a", name="Zyx Quartz", value=90000, date=None, products=[])]
        assert not detector.detect(query, pool=pool, threshold=0.99).is_duplicate

    def test_manual_review_action(self, detector):
        """Top confidence between 0.85 and 0.95 suggests manual review."""
        # 12.6% apart: value similarity ~0.87, confidence 0.6 + 0.4 * 0.87
        query = EntityRecord(id="q", counterpart_name="Globex", value=100)
        pool = [EntityRecord(id="a", counterpart_name="Globex", value=113.5)]
        result = detector.detect(query, pool=pool, strategies=[DuplicateStrategy.CUSTOMER_VALUE])
        assert result.is_duplicate
        assert 0.85 <= result.confidence < 0.95
        assert result.suggested_action == SuggestedAction.MANUAL_REVIEW

    def test_strategy_selection(self, detector, make_record):
        """Only the requested strategies run."""
        query = make_record(id="q")
        result = detector.detect(query, pool=[make_record(id="a")], strategies=[DuplicateStrategy.CUSTOMER_DATE])
        assert {m.strategy for m in result.matches} == {DuplicateStrategy.CUSTOMER_DATE}

    def test_malformed_entity_degrades(self, detector, make_record):
        """A malformed record yields no matches instead of raising."""
        result = detector.detect({"id": "bad", "value": "not-a-number"}, pool=[make_record(id="a")])
        assert not result.is_duplicate
        assert result.suggested_action == SuggestedAction.NO_ACTION

    def test_malformed_candidate_skipped(self, detector, make_record):
        """A broken candidate does not cost the rest of the pool its matches."""
        query = make_record(id="q")
        pool = [make_record(id="bad", value="n/a"), make_record(id="good")]
        result = detector.detect(query, pool=pool, strategies=[DuplicateStrategy.EXACT_MATCH], threshold=0)
        assert [m.matched_entity_id for m in result.matches] == ["good"]

    def test_accepts_mappings(self, detector):
        """Loose dicts with pipeline column names are accepted."""
        query = {"id": "q", "deal_name": "Acme Cloud", "customer_name": "Globex Inc", "deal_value": 1000}
        pool = [{"id": "a", "deal_name": "acme cloud", "customer_name": "GLOBEX", "deal_value": 1000}]
        result = detector.detect(query, pool=pool)
        assert result.matches[0].strategy == DuplicateStrategy.EXACT_MATCH

    def test_requires_pool_or_store(self, detector, make_record):
        """Without a store a pool must be supplied."""
        with pytest.raises(ValueError):
            detector.detect(make_record())


class TestStoreBackedDetection:
    """Test detection against the store."""

    def test_records_detections_and_notifies(self, store, notifier, events, make_record):
        """Store-fetched detection records pending pairs and publishes an event."""
        store.add_entities([make_record(id="a"), make_record(id="b", value=51000)])
        detector = DuplicateDetector(store=store, notifier=notifier)

        result = detector.detect(make_record(id="a"))
        notifier.flush()

        assert result.is_duplicate
        detections = store.list_detections(status=DetectionStatus.PENDING)
        assert [(d["entity_id_1"], d["entity_id_2"]) for d in detections] == [("a", "b")]
        assert events[0][0] == DUPLICATE_DETECTED
        assert events[0][1]["matched_entity_ids"] == ["b"]

    def test_supplied_pool_does_not_record(self, store, notifier, events, make_record):
        """A caller-supplied pool records nothing."""
        detector = DuplicateDetector(store=store, notifier=notifier)
        detector.detect(make_record(id="a"), pool=[make_record(id="b")])
        notifier.flush()
        assert store.list_detections() == []
        assert events == []

    def test_candidate_pool_filters(self, store, make_record):
        """Candidates share counterpart or vendor and are active."""
        store.add_entities([
            make_record(id="same-customer", vendor_id="v2"),
            make_record(id="same-vendor", counterpart_name="Umbrella"),
            make_record(id="unrelated", counterpart_name="Umbrella", vendor_id="v3"),
        ])
        candidates = store.list_candidates(make_record(id="q"))
        assert sorted(c.id for c in candidates) == ["same-customer", "same-vendor"]

    def test_recording_failure_is_logged(self, store, make_record, mocker):
        """A failure to record detections does not fail detection."""
        store.add_entities([make_record(id="a"), make_record(id="b")])
        mocker.patch.object(store, "record_detections", side_effect=StoreError("disk full"))
        result = DuplicateDetector(store=store).detect(make_record(id="a"))
        assert result.is_duplicate

    def test_store_fetch_error_propagates(self, store, make_record, mocker):
        """Store errors while fetching candidates propagate unchanged."""
        error = StoreError("connection lost")
        mocker.patch.object(store, "list_candidates", side_effect=error)
        with pytest.raises(StoreError) as exc_info:
            DuplicateDetector(store=store).detect(make_record(id="a"))
        assert exc_info.value is error


class TestBatchDetection:
    """Test detect_batch()."""

    def test_batch_against_itself(self, detector, make_record, match_config):
        """Without a store the batch is its own pool."""
        records = [
            make_record(id="a"),
            make_record(id="b", value=51000),
            make_record(id="c", name="Zyx Quartz", counterpart_name="Initech", vendor_id="v9",
                        value=10, products=[], contacts=[]),
        ]
        result = detector.detect_batch(records, max_workers=2)
        assert result.total == 3
        assert result.errors == []
        assert result.results["a"].matches[0].matched_entity_id == "b"
        assert not result.results["c"].is_duplicate
        assert result.duplicates_found == 2

    def test_batch_collects_errors(self, detector, make_record):
        """Malformed records are reported without stopping the batch."""
        records = [make_record(id="a"), {"id": "bad", "extraction_confidence": 7}, make_record(id="b")]
        result = detector.detect_batch(records)
        assert [e.item_id for e in result.errors] == ["bad"]
        assert set(result.results) == {"a", "b"}
        with pytest.raises(PartialBatchFailure):
            result.raise_for_errors()

    def test_batch_records_with_store(self, store, make_record):
        """With a store, detections from the batch are recorded."""
        store.add_entities([make_record(id="a"), make_record(id="b")])
        result = DuplicateDetector(store=store).detect_batch([make_record(id="a"), make_record(id="b")])
        assert result.duplicates_found == 2
        assert len(store.list_detections()) == 1
