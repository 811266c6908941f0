"""
Composite data-quality score for entity records.

    quality = 0.4 * completeness + 0.3 * confidence + 0.2 * validation + 0.1 * recency

Used to pick the master record of a merge and to weigh merge previews.
"""

import datetime as dt
from typing import Optional

from dedup_engine.deduplication.types import EntityRecord, ValidationStatus
from dedup_engine.normalizers.dates import parse_datetime, utcnow

COMPLETENESS_WEIGHT = 0.4
CONFIDENCE_WEIGHT = 0.3
VALIDATION_WEIGHT = 0.2
RECENCY_WEIGHT = 0.1

REQUIRED_FIELDS = (
    "name",
    "counterpart_name",
    "value",
    "currency",
    "date",
    "vendor_id",
    "status",
    "extraction_confidence",
    "validation_status",
)

DEFAULT_CONFIDENCE = 0.4
DEFAULT_VALIDATION = 0.25


def _is_populated(entity: EntityRecord, field_name: str) -> bool:
    value = getattr(entity, field_name, None)
    if field_name == "validation_status":
        return value is not None and value != ValidationStatus.UNVALIDATED
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def completeness_score(entity: EntityRecord) -> float:
    """Fraction of required fields populated, raised to the 4th power."""
    filled = sum(1 for f in REQUIRED_FIELDS if _is_populated(entity, f))
    return (filled / len(REQUIRED_FIELDS)) ** 4


def confidence_score(entity: EntityRecord) -> float:
    if entity.extraction_confidence is None:
        return DEFAULT_CONFIDENCE
    return entity.extraction_confidence


def validation_score(entity: EntityRecord) -> float:
    if entity.validation_status == ValidationStatus.PASSED:
        return 1.0
    if entity.validation_status == ValidationStatus.FAILED:
        return 0.0
    if entity.validation_score is not None:
        return entity.validation_score
    if entity.extraction_confidence is not None:
        return entity.extraction_confidence
    return DEFAULT_VALIDATION


def recency_score(entity: EntityRecord, now: Optional[dt.datetime] = None) -> float:
    """
    1.0 within a day, 0.5 at 30 days, 0.0 from 180 days, linear in between.

    Records without timestamps score 0.5.
    """
    timestamp = parse_datetime(entity.last_modified)
    if timestamp is None:
        return 0.5

    now = parse_datetime(now) or utcnow()
    age_days = max(0.0, (now - timestamp).total_seconds() / 86400)

    if age_days <= 1:
        return 1.0
    if age_days <= 30:
        return 1.0 - 0.5 * (age_days - 1) / 29
    if age_days < 180:
        return 0.5 - 0.5 * (age_days - 30) / 150
    return 0.0


def quality_score(entity: EntityRecord, now: Optional[dt.datetime] = None) -> float:
    """
    Overall quality of a record in [0, 1].

    Args:
        entity: Record to score
        now: Reference time for recency (current time if omitted)
    """
    total = (
        COMPLETENESS_WEIGHT * completeness_score(entity)
        + CONFIDENCE_WEIGHT * confidence_score(entity)
        + VALIDATION_WEIGHT * validation_score(entity)
        + RECENCY_WEIGHT * recency_score(entity, now)
    )
    return min(1.0, max(0.0, total))
