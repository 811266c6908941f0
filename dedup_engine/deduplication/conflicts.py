"""
Field-level conflict detection and resolution across records being merged.

A conflict is a field on which the records carry two or more distinct
meaningful values. Each conflict carries a suggested value:

1. the only meaningful value
2. the only value among validated records
3. the highest-confidence value, if that confidence is at least 0.85
4. the most recently updated value
"""

import json
from collections.abc import Sequence
from enum import Enum
from typing import Any, Union

from loguru import logger

from dedup_engine.deduplication.quality import confidence_score
from dedup_engine.deduplication.types import (
    Contact,
    EntityRecord,
    FieldConflict,
    FieldValue,
    ValidationStatus,
)
from dedup_engine.normalizers.dates import parse_date, parse_datetime

# Core fields compared across records; identity, lifecycle, provenance and
# validation metadata are never conflicts.
CONFLICT_FIELDS = (
    "name",
    "counterpart_name",
    "value",
    "currency",
    "date",
    "vendor_id",
    "products",
    "contacts",
    "description",
)

EXTRA_PREFIX = "extra."

# Extension keys written by the merge itself
SYSTEM_EXTRA_KEYS = frozenset({"merged_into", "merged_at"})

HIGH_CONFIDENCE = 0.85


class ConflictResolutionStrategy(str, Enum):
    PREFER_SOURCE = "prefer_source"
    PREFER_TARGET = "prefer_target"
    PREFER_COMPLETE = "prefer_complete"
    PREFER_VALIDATED = "prefer_validated"
    MERGE_ARRAYS = "merge_arrays"
    MANUAL = "manual"


def get_field_value(entity: EntityRecord, field_name: str) -> Any:
    if field_name.startswith(EXTRA_PREFIX):
        return entity.extra.get(field_name[len(EXTRA_PREFIX):])
    return getattr(entity, field_name)


def set_field_value(entity: EntityRecord, field_name: str, value: Any) -> None:
    if field_name.startswith(EXTRA_PREFIX):
        entity.extra[field_name[len(EXTRA_PREFIX):]] = value
    elif field_name == "date":
        entity.date = parse_date(value)
    elif field_name == "contacts":
        entity.contacts = [Contact.from_value(c) for c in value or []]
    elif field_name == "products":
        entity.products = list(value or [])
    else:
        setattr(entity, field_name, value)


def is_meaningful(value: Any) -> bool:
    """False for None, blank strings and empty collections."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) > 0
    return True


def value_key(value: Any) -> Any:
    """Hashable comparison key; strings compare case- and whitespace-insensitively."""
    if isinstance(value, str):
        return " ".join(value.split()).casefold()
    if isinstance(value, Contact):
        return ("contact", value.name.strip().casefold(), value.email.strip().lower())
    if isinstance(value, (list, tuple, set)):
        return tuple(sorted((value_key(v) for v in value), key=repr))
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, default=str)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def conflict_fields(entities: Sequence[EntityRecord]) -> list[str]:
    """Core fields plus every extension key present on any record."""
    extra_keys = sorted({
        key for entity in entities for key in entity.extra if key not in SYSTEM_EXTRA_KEYS
    })
    return list(CONFLICT_FIELDS) + [EXTRA_PREFIX + key for key in extra_keys]


def _field_value(entity: EntityRecord, field_name: str) -> FieldValue:
    return FieldValue(
        entity_id=entity.id,
        value=get_field_value(entity, field_name),
        confidence=confidence_score(entity),
        source=",".join(sorted(entity.source_file_ids)),
        updated_at=parse_datetime(entity.last_modified),
        is_validated=entity.validation_status == ValidationStatus.PASSED,
    )


def suggest_value(values: Sequence[FieldValue]) -> tuple[Any, str]:
    """Pick the suggested value for a field and say why."""
    meaningful = [fv for fv in values if is_meaningful(fv.value)]
    if not meaningful:
        return None, "no value present"

    distinct = {value_key(fv.value) for fv in meaningful}
    if len(distinct) == 1:
        return meaningful[0].value, "only value present"

    validated = [fv for fv in meaningful if fv.is_validated]
    if validated and len({value_key(fv.value) for fv in validated}) == 1:
        return validated[0].value, "only validated value"

    best = max(meaningful, key=lambda fv: fv.confidence)
    if best.confidence >= HIGH_CONFIDENCE:
        return best.value, f"highest confidence ({best.confidence:.2f})"

    dated = [fv for fv in meaningful if fv.updated_at is not None]
    if dated:
        newest = max(dated, key=lambda fv: fv.updated_at)
        return newest.value, "most recently updated"
    return meaningful[0].value, "first available value"


def detect_conflicts(entities: Sequence[EntityRecord]) -> list[FieldConflict]:
    """
    Find fields on which `entities` disagree.

    Every conflict lists each record's value, empty ones included, in the
    order the records were given.
    """
    conflicts = []
    for field_name in conflict_fields(entities):
        values = [_field_value(entity, field_name) for entity in entities]
        distinct = {value_key(fv.value) for fv in values if is_meaningful(fv.value)}
        if len(distinct) < 2:
            continue

        suggested, reason = suggest_value(values)
        conflicts.append(FieldConflict(
            field_name=field_name,
            values=values,
            suggested_value=suggested,
            suggested_reason=reason,
            requires_manual_review=len(distinct) > 2,
        ))
    return conflicts


def _merge_arrays(conflict: FieldConflict) -> Any:
    lists = [fv.value for fv in conflict.values if isinstance(fv.value, (list, tuple))]
    if not lists:
        return conflict.suggested_value

    merged = []
    seen = set()
    for items in lists:
        for item in items:
            key = value_key(item)
            if key not in seen:
                seen.add(key)
                merged.append(item)
    return merged


def _positional(conflict: FieldConflict, index: int) -> Any:
    value = conflict.values[index].value
    return value if is_meaningful(value) else conflict.suggested_value


def resolve_conflicts(
    conflicts: Sequence[FieldConflict],
    strategy: Union[ConflictResolutionStrategy, str] = ConflictResolutionStrategy.PREFER_COMPLETE,
) -> dict[str, Any]:
    """
    Resolve conflicts to one value per field.

    The first value belongs to the first source record, the last to the merge
    target. Under MANUAL nothing is resolved and the result is empty.
    Unknown strategies fall back to the suggested values.
    """
    try:
        strategy = ConflictResolutionStrategy(strategy)
    except ValueError:
        logger.warning(f"Unknown conflict resolution strategy '{strategy}', using suggested values")
        return {c.field_name: c.suggested_value for c in conflicts}

    resolved: dict[str, Any] = {}
    for conflict in conflicts:
        if strategy == ConflictResolutionStrategy.MANUAL:
            continue
        if strategy == ConflictResolutionStrategy.PREFER_SOURCE:
            resolved[conflict.field_name] = _positional(conflict, 0)
        elif strategy == ConflictResolutionStrategy.PREFER_TARGET:
            resolved[conflict.field_name] = _positional(conflict, -1)
        elif strategy == ConflictResolutionStrategy.PREFER_COMPLETE:
            resolved[conflict.field_name] = next(
                (fv.value for fv in conflict.values if is_meaningful(fv.value)),
                conflict.suggested_value,
            )
        elif strategy == ConflictResolutionStrategy.PREFER_VALIDATED:
            resolved[conflict.field_name] = next(
                (fv.value for fv in conflict.values if fv.is_validated and is_meaningful(fv.value)),
                conflict.suggested_value,
            )
        elif strategy == ConflictResolutionStrategy.MERGE_ARRAYS:
            resolved[conflict.field_name] = _merge_arrays(conflict)
    return resolved
