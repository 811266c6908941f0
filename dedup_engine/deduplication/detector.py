"""
Duplicate detection for entity records.

Runs up to six strategies of increasing cost against a candidate pool, unions
their matches, keeps the best match per candidate and ranks the result.
Strategies:

1. EXACT_MATCH      - normalized name and counterpart are identical
2. FUZZY_NAME       - both names fuzzy-similar, average high
3. CUSTOMER_VALUE   - counterpart and value both similar
4. CUSTOMER_DATE    - counterpart and date both similar
5. VENDOR_CUSTOMER  - same vendor, similar counterpart
6. MULTI_FACTOR     - full weighted similarity score
"""

from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from loguru import logger

from dedup_engine.config import MatchSettings, get_match_config, settings
from dedup_engine.deduplication.scoring import (
    date_similarity,
    fuzzy_score,
    name_similarity,
    score,
    value_similarity,
)
from dedup_engine.deduplication.types import (
    DetectionResult,
    DuplicateStrategy,
    EntityRecord,
    EntityType,
    MatchRecord,
    SuggestedAction,
)
from dedup_engine.errors import DedupError, InputError, ItemError, PartialBatchFailure
from dedup_engine.normalizers.names import normalize_company_name, normalize_string
from dedup_engine.notifications import DUPLICATE_DETECTED, Notifier

# Minimum counterpart similarity for VENDOR_CUSTOMER
VENDOR_CUSTOMER_MIN_SIMILARITY = 0.80

RecordLike = Union[EntityRecord, Mapping[str, Any]]
StrategyFn = Callable[[EntityRecord, Sequence[EntityRecord], MatchSettings], list[MatchRecord]]


# =============================================================================
# Strategies
# =============================================================================

def detect_exact_match(entity: EntityRecord, pool: Sequence[EntityRecord], config: MatchSettings) -> list[MatchRecord]:
    name = normalize_string(entity.name)
    counterpart = normalize_company_name(entity.counterpart_name)
    if not name or not counterpart:
        return []

    matches = []
    for candidate in pool:
        if normalize_string(candidate.name) != name:
            continue
        if normalize_company_name(candidate.counterpart_name) != counterpart:
            continue
        # Both values present must agree to the unit
        if entity.value is not None and candidate.value is not None and abs(entity.value - candidate.value) >= 1:
            continue
        matches.append(MatchRecord(
            matched_entity_id=candidate.id,
            strategy=DuplicateStrategy.EXACT_MATCH,
            confidence=1.0,
            factors={"name": 1.0, "counterpart_name": 1.0},
            reasoning="Exact match on name and counterpart name",
        ))
    return matches


def detect_fuzzy_name(entity: EntityRecord, pool: Sequence[EntityRecord], config: MatchSettings) -> list[MatchRecord]:
    matches = []
    for candidate in pool:
        name_score = fuzzy_score(entity.name, candidate.name)
        counterpart_score = fuzzy_score(entity.counterpart_name, candidate.counterpart_name)
        average = (name_score + counterpart_score) / 2

        if (
            name_score >= config.fuzzy_medium_threshold
            and counterpart_score >= config.fuzzy_medium_threshold
            and average >= config.fuzzy_high_threshold
        ):
            matches.append(MatchRecord(
                matched_entity_id=candidate.id,
                strategy=DuplicateStrategy.FUZZY_NAME,
                confidence=average / 100,
                factors={"name": name_score / 100, "counterpart_name": counterpart_score / 100},
                reasoning=f"Fuzzy match: name {name_score:.1f}%, counterpart {counterpart_score:.1f}%",
            ))
    return matches


def detect_customer_value(entity: EntityRecord, pool: Sequence[EntityRecord], config: MatchSettings) -> list[MatchRecord]:
    if entity.value is None:
        return []

    matches = []
    for candidate in pool:
        if candidate.value is None:
            continue
        counterpart = name_similarity(entity.counterpart_name, candidate.counterpart_name) or 0.0
        value = value_similarity(entity.value, candidate.value, config.value_tolerance_percent) or 0.0

        if counterpart >= config.high_confidence_threshold and value >= config.high_confidence_threshold:
            matches.append(MatchRecord(
                matched_entity_id=candidate.id,
                strategy=DuplicateStrategy.CUSTOMER_VALUE,
                confidence=counterpart * 0.6 + value * 0.4,
                factors={"counterpart_name": counterpart, "value": value},
                reasoning=f"Same counterpart ({counterpart:.0%}) with similar value ({value:.0%})",
            ))
    return matches


def detect_customer_date(entity: EntityRecord, pool: Sequence[EntityRecord], config: MatchSettings) -> list[MatchRecord]:
    if entity.date is None:
        return []

    matches = []
    for candidate in pool:
        if candidate.date is None:
            continue
        counterpart = name_similarity(entity.counterpart_name, candidate.counterpart_name) or 0.0
        date = date_similarity(entity.date, candidate.date, config.date_tolerance_days) or 0.0

        if counterpart >= config.high_confidence_threshold and date >= config.high_confidence_threshold:
            matches.append(MatchRecord(
                matched_entity_id=candidate.id,
                strategy=DuplicateStrategy.CUSTOMER_DATE,
                confidence=counterpart * 0.6 + date * 0.4,
                factors={"counterpart_name": counterpart, "date": date},
                reasoning=f"Same counterpart ({counterpart:.0%}) with similar date ({date:.0%})",
            ))
    return matches


def detect_vendor_customer(entity: EntityRecord, pool: Sequence[EntityRecord], config: MatchSettings) -> list[MatchRecord]:
    if not entity.vendor_id:
        return []

    matches = []
    for candidate in pool:
        if not candidate.vendor_id or candidate.vendor_id != entity.vendor_id:
            continue
        counterpart = name_similarity(entity.counterpart_name, candidate.counterpart_name) or 0.0
        if counterpart < VENDOR_CUSTOMER_MIN_SIMILARITY:
            continue
        name = name_similarity(entity.name, candidate.name) or 0.0

        matches.append(MatchRecord(
            matched_entity_id=candidate.id,
            strategy=DuplicateStrategy.VENDOR_CUSTOMER,
            confidence=min(1.0, 0.3 + counterpart * 0.5 + name * 0.2),
            factors={"vendor_match": 1.0, "counterpart_name": counterpart, "name": name},
            reasoning=f"Same vendor, counterpart {counterpart:.0%}, name {name:.0%}",
        ))
    return matches


def detect_multi_factor(entity: EntityRecord, pool: Sequence[EntityRecord], config: MatchSettings) -> list[MatchRecord]:
    matches = []
    for candidate in pool:
        similarity = score(entity, candidate, config=config)
        if similarity.overall >= config.medium_confidence_threshold:
            matches.append(MatchRecord(
                matched_entity_id=candidate.id,
                strategy=DuplicateStrategy.MULTI_FACTOR,
                confidence=similarity.overall,
                factors=dict(similarity.factors),
                reasoning=f"Multi-factor similarity {similarity.overall:.0%} over {len(similarity.factors)} fields",
            ))
    return matches


STRATEGIES: dict[DuplicateStrategy, StrategyFn] = {
    DuplicateStrategy.EXACT_MATCH: detect_exact_match,
    DuplicateStrategy.FUZZY_NAME: detect_fuzzy_name,
    DuplicateStrategy.CUSTOMER_VALUE: detect_customer_value,
    DuplicateStrategy.CUSTOMER_DATE: detect_customer_date,
    DuplicateStrategy.VENDOR_CUSTOMER: detect_vendor_customer,
    DuplicateStrategy.MULTI_FACTOR: detect_multi_factor,
}


def suggest_action(confidence: float, config: MatchSettings) -> SuggestedAction:
    if confidence >= config.auto_merge_threshold:
        return SuggestedAction.AUTO_MERGE
    if confidence >= config.high_confidence_threshold:
        return SuggestedAction.MANUAL_REVIEW
    return SuggestedAction.NO_ACTION


def rank_matches(matches: Iterable[MatchRecord], threshold: float) -> list[MatchRecord]:
    """Keep the best match per candidate, drop those under threshold, sort descending."""
    best: dict[str, MatchRecord] = {}
    for match in matches:
        current = best.get(match.matched_entity_id)
        if current is None or match.confidence > current.confidence:
            best[match.matched_entity_id] = match

    ranked = [m for m in best.values() if m.confidence >= threshold]
    ranked.sort(key=lambda m: (-m.confidence, m.matched_entity_id))
    return ranked


def _coerce_pool(pool: Iterable[RecordLike], exclude_id: str) -> list[EntityRecord]:
    records = []
    for item in pool:
        try:
            record = EntityRecord.from_mapping(item)
        except InputError as e:
            logger.warning(f"Skipping malformed candidate: {e}")
            continue
        if not record.id or record.id == exclude_id:
            continue
        records.append(record)
    return records


# =============================================================================
# Detector
# =============================================================================

@dataclass
class BatchDetectionResult:
    """Outcome of detect_batch()."""
    results: dict[str, DetectionResult] = field(default_factory=dict)
    errors: list[ItemError] = field(default_factory=list)
    total: int = 0

    @property
    def duplicates_found(self) -> int:
        return sum(1 for r in self.results.values() if r.is_duplicate)

    def raise_for_errors(self) -> None:
        if self.errors:
            raise PartialBatchFailure(self.errors, self.total)


class DuplicateDetector:
    """
    Detect duplicates of a record among a candidate pool.

    Args:
        store: EntityStore used to fetch candidate pools and record
            detections (optional when pools are always passed in)
        notifier: Notifier for duplicate.detected events
        config: Match configuration snapshot; the current one is read per
            call when omitted
    """

    def __init__(self, store=None, notifier: Optional[Notifier] = None, config: Optional[MatchSettings] = None):
        self.store = store
        self.notifier = notifier
        self.config = config

    def _config(self, config: Optional[MatchSettings]) -> MatchSettings:
        return config or self.config or get_match_config()

    def detect(
        self,
        entity: RecordLike,
        strategies: Optional[Iterable[DuplicateStrategy]] = None,
        threshold: Optional[float] = None,
        pool: Optional[Iterable[RecordLike]] = None,
        config: Optional[MatchSettings] = None,
    ) -> DetectionResult:
        """
        Find duplicates of `entity`.

        Args:
            entity: Record (or loose mapping) to check
            strategies: Strategies to run (all six by default)
            threshold: Minimum confidence to report (minimum_match_threshold by default)
            pool: Candidates to compare against; fetched from the store when omitted
            config: Match configuration snapshot

        Returns:
            DetectionResult; a malformed entity yields no matches
        """
        config = self._config(config)
        threshold = config.minimum_match_threshold if threshold is None else threshold

        try:
            record = EntityRecord.from_mapping(entity)
        except InputError as e:
            logger.warning(f"Cannot run duplicate detection on malformed record: {e}")
            return DetectionResult.empty()

        store_fetched = pool is None
        if store_fetched:
            if self.store is None:
                raise ValueError("Either a candidate pool or a store is required")
            pool = self.store.list_candidates(record, limit=config.candidate_pool_limit)

        candidates = _coerce_pool(pool, record.id)
        result = self._detect(record, candidates, strategies, threshold, config)

        if store_fetched and result.is_duplicate:
            self._publish(record, result)
        return result

    def _detect(
        self,
        record: EntityRecord,
        candidates: Sequence[EntityRecord],
        strategies: Optional[Iterable[DuplicateStrategy]],
        threshold: float,
        config: MatchSettings,
    ) -> DetectionResult:
        selected = [DuplicateStrategy(s) for s in strategies] if strategies else list(STRATEGIES)

        found: list[MatchRecord] = []
        for strategy in selected:
            run = STRATEGIES[strategy]
            # One candidate at a time so a malformed one only loses its own matches
            for candidate in candidates:
                try:
                    found.extend(run(record, (candidate,), config))
                except (TypeError, ValueError, AttributeError) as e:
                    logger.warning(
                        f"Strategy {strategy.value} skipped candidate {candidate.id} for {record.id}: {e}"
                    )

        matches = rank_matches(found, threshold)
        if not matches:
            return DetectionResult.empty()

        top = matches[0].confidence
        return DetectionResult(
            is_duplicate=True,
            matches=matches,
            suggested_action=suggest_action(top, config),
            confidence=top,
        )

    def _publish(self, record: EntityRecord, result: DetectionResult) -> None:
        """Record detections and notify; failures here never fail detection."""
        if self.store is not None:
            try:
                self.store.record_detections(record, result.matches, result.suggested_action)
            except DedupError as e:
                logger.error(f"Failed to record duplicate detections for {record.id}: {e}")

        if self.notifier is not None:
            self.notifier.publish(DUPLICATE_DETECTED, {
                "entity_id": record.id,
                "entity_type": record.entity_type.value,
                "match_count": len(result.matches),
                "confidence": result.confidence,
                "suggested_action": result.suggested_action.value,
                "matched_entity_ids": [m.matched_entity_id for m in result.matches],
            })

    def detect_batch(
        self,
        entities: Iterable[RecordLike],
        max_workers: Optional[int] = None,
        config: Optional[MatchSettings] = None,
    ) -> BatchDetectionResult:
        """
        Detect duplicates for many records.

        The candidate pool is fetched once per entity type (all active records
        in the store, or the batch itself without a store). Records are
        processed in chunks of batch_size with bounded parallelism; a failing
        record is reported in `errors` and does not stop the batch.
        """
        config = self._config(config)
        max_workers = max_workers or settings.pipeline.max_workers
        batch = BatchDetectionResult()

        records: list[EntityRecord] = []
        for item in entities:
            batch.total += 1
            try:
                records.append(EntityRecord.from_mapping(item))
            except InputError as e:
                item_id = str(item.get("id", "")) if isinstance(item, Mapping) else ""
                batch.errors.append(ItemError(item_id, str(e), "InputError"))

        pools: dict[EntityType, list[EntityRecord]] = {}
        for entity_type in sorted({r.entity_type for r in records}, key=lambda t: t.value):
            if self.store is not None:
                pools[entity_type] = self.store.list_entities(entity_type=entity_type)
            else:
                pools[entity_type] = [r for r in records if r.entity_type == entity_type]

        for start in range(0, len(records), config.batch_size):
            chunk = records[start:start + config.batch_size]
            logger.debug(f"Batch detection: records {start + 1}-{start + len(chunk)} of {len(records)}")

            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                futures = {
                    executor.submit(
                        self._detect,
                        record,
                        [c for c in pools[record.entity_type] if c.id and c.id != record.id],
                        None,
                        config.minimum_match_threshold,
                        config,
                    ): record
                    for record in chunk
                }
                for future in as_completed(futures):
                    record = futures[future]
                    try:
                        batch.results[record.id] = future.result()
                    except Exception as e:
                        logger.error(f"Duplicate detection failed for {record.id}: {e}")
                        batch.errors.append(ItemError(record.id, str(e), type(e).__name__))

            if self.store is not None:
                for record in chunk:
                    result = batch.results.get(record.id)
                    if result is not None and result.is_duplicate:
                        self._publish(record, result)

        logger.info(
            f"Batch detection complete: {len(batch.results)} records checked, "
            f"{batch.duplicates_found} with duplicates, {len(batch.errors)} errors"
        )
        return batch
