"""
Domain types shared by scoring, detection, clustering and merging.

EntityRecord has a fixed set of typed core fields plus an open `extra` map for
anything an upstream extractor adds. Everything here is a plain dataclass so
records can be built in tests without a database.
"""

import datetime as dt
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from dedup_engine.errors import InputError
from dedup_engine.normalizers.dates import parse_date, parse_datetime


class EntityType(str, Enum):
    DEAL = "deal"
    VENDOR = "vendor"
    CONTACT = "contact"


class EntityStatus(str, Enum):
    ACTIVE = "active"
    MERGED = "merged"


class ValidationStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    UNVALIDATED = "unvalidated"


class DuplicateStrategy(str, Enum):
    """Match strategies, in the order the detector runs them."""
    EXACT_MATCH = "exact_match"
    FUZZY_NAME = "fuzzy_name"
    CUSTOMER_VALUE = "customer_value"
    CUSTOMER_DATE = "customer_date"
    VENDOR_CUSTOMER = "vendor_customer"
    MULTI_FACTOR = "multi_factor"


class SuggestedAction(str, Enum):
    AUTO_MERGE = "auto_merge"
    MANUAL_REVIEW = "manual_review"
    NO_ACTION = "no_action"


class ClusterStatus(str, Enum):
    ACTIVE = "active"
    MERGED = "merged"


class DetectionStatus(str, Enum):
    PENDING = "pending"
    AUTO_MERGED = "auto_merged"
    DISMISSED = "dismissed"


# Loose input keys accepted by EntityRecord.from_mapping(), by target field
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "name": ("name", "deal_name", "dealName", "vendor_name", "vendorName"),
    "counterpart_name": ("counterpart_name", "customer_name", "customerName", "customer"),
    "value": ("value", "deal_value", "dealValue"),
    "currency": ("currency",),
    "date": ("date", "close_date", "closeDate", "expected_close_date", "registration_date"),
    "vendor_id": ("vendor_id", "vendorId"),
    "products": ("products",),
    "contacts": ("contacts",),
    "description": ("description",),
    "notes": ("notes",),
    "extraction_confidence": ("extraction_confidence", "ai_confidence_score", "aiConfidence"),
    "validation_status": ("validation_status", "validationStatus"),
    "validation_score": ("validation_score", "final_confidence_score"),
    "status": ("status",),
    "created_at": ("created_at", "createdAt"),
    "updated_at": ("updated_at", "updatedAt"),
    "source_file_ids": ("source_file_ids", "sourceFileIds"),
}

_KNOWN_KEYS = {"id", "entity_type", "extra", "metadata", "custom_fields"} | {
    alias for aliases in FIELD_ALIASES.values() for alias in aliases
}


@dataclass(frozen=True)
class Contact:
    """A person attached to a record; matched on email."""
    name: str = ""
    email: str = ""

    @classmethod
    def from_value(cls, value: Any) -> "Contact":
        if isinstance(value, Contact):
            return value
        if isinstance(value, Mapping):
            return cls(name=str(value.get("name") or ""), email=str(value.get("email") or ""))
        if isinstance(value, str):
            return cls(email=value) if "@" in value else cls(name=value)
        raise InputError(f"Unsupported contact value: {value!r}")


@dataclass
class EntityRecord:
    """A business record (deal, vendor or contact) as seen by the engine."""
    id: str
    entity_type: EntityType = EntityType.DEAL
    name: Optional[str] = None
    counterpart_name: Optional[str] = None
    value: Optional[float] = None
    currency: Optional[str] = None
    date: Optional[dt.date] = None
    vendor_id: Optional[str] = None
    products: list[str] = field(default_factory=list)
    contacts: list[Contact] = field(default_factory=list)
    description: Optional[str] = None
    notes: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)
    extraction_confidence: Optional[float] = None
    validation_status: ValidationStatus = ValidationStatus.UNVALIDATED
    validation_score: Optional[float] = None
    status: EntityStatus = EntityStatus.ACTIVE
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None
    source_file_ids: set[str] = field(default_factory=set)

    @property
    def is_active(self) -> bool:
        return self.status == EntityStatus.ACTIVE

    @property
    def last_modified(self) -> Optional[dt.datetime]:
        return self.updated_at or self.created_at

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EntityRecord":
        """
        Build a record from a loose dict.

        Accepts both this engine's field names and the snake_case / camelCase
        column names used by the extraction pipeline (deal_name,
        customer_name, ai_confidence_score, ...). Keys that are not core
        fields land in `extra`.

        Raises:
            InputError: if the input is not a mapping or a field has an
                unusable type.
        """
        if isinstance(data, EntityRecord):
            return data
        if not isinstance(data, Mapping):
            raise InputError(f"Expected a mapping, got {type(data).__name__}")

        def pick(target: str) -> Any:
            for alias in FIELD_ALIASES[target]:
                value = data.get(alias)
                if value is not None and value != "":
                    return value
            return None

        extra: dict[str, Any] = {}
        for key in ("metadata", "custom_fields", "extra"):
            nested = data.get(key)
            if isinstance(nested, Mapping):
                extra.update(nested)
        for key, value in data.items():
            if key not in _KNOWN_KEYS:
                extra[key] = value

        try:
            return cls(
                id=str(data.get("id") or ""),
                entity_type=EntityType(data.get("entity_type") or EntityType.DEAL),
                name=_opt_str(pick("name")),
                counterpart_name=_opt_str(pick("counterpart_name")),
                value=_opt_float(pick("value"), "value"),
                currency=_opt_str(pick("currency")),
                date=parse_date(pick("date")),
                vendor_id=_opt_str(pick("vendor_id")),
                products=[str(p) for p in pick("products") or [] if p],
                contacts=[Contact.from_value(c) for c in pick("contacts") or []],
                description=_opt_str(pick("description")),
                notes=_opt_str(pick("notes")),
                extra=extra,
                extraction_confidence=_opt_confidence(pick("extraction_confidence"), "extraction_confidence"),
                validation_status=ValidationStatus(pick("validation_status") or ValidationStatus.UNVALIDATED),
                validation_score=_opt_confidence(pick("validation_score"), "validation_score"),
                status=EntityStatus(pick("status") or EntityStatus.ACTIVE),
                created_at=parse_datetime(pick("created_at")),
                updated_at=parse_datetime(pick("updated_at")),
                source_file_ids={str(s) for s in pick("source_file_ids") or []},
            )
        except (TypeError, ValueError) as e:
            raise InputError(f"Invalid entity record {data.get('id')!r}: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe snapshot of the record."""
        return {
            "id": self.id,
            "entity_type": self.entity_type.value,
            "name": self.name,
            "counterpart_name": self.counterpart_name,
            "value": self.value,
            "currency": self.currency,
            "date": self.date.isoformat() if self.date else None,
            "vendor_id": self.vendor_id,
            "products": list(self.products),
            "contacts": [{"name": c.name, "email": c.email} for c in self.contacts],
            "description": self.description,
            "notes": self.notes,
            "extra": dict(self.extra),
            "extraction_confidence": self.extraction_confidence,
            "validation_status": self.validation_status.value,
            "validation_score": self.validation_score,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "source_file_ids": sorted(self.source_file_ids),
        }


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _opt_float(value: Any, name: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"{name} must be numeric")
    return float(value)


def _opt_confidence(value: Any, name: str) -> Optional[float]:
    number = _opt_float(value, name)
    if number is not None and not 0.0 <= number <= 1.0:
        raise ValueError(f"{name} must be within [0, 1], got {number}")
    return number


# =============================================================================
# Scoring and detection results
# =============================================================================

@dataclass
class SimilarityResult:
    """Weighted similarity of two records."""
    overall: float
    factors: dict[str, float] = field(default_factory=dict)
    effective_weight: float = 0.0


@dataclass
class MatchRecord:
    """One candidate that matched the queried record."""
    matched_entity_id: str
    strategy: DuplicateStrategy
    confidence: float
    factors: dict[str, float] = field(default_factory=dict)
    reasoning: str = ""


@dataclass
class DetectionResult:
    is_duplicate: bool
    matches: list[MatchRecord] = field(default_factory=list)
    suggested_action: SuggestedAction = SuggestedAction.NO_ACTION
    confidence: float = 0.0

    @classmethod
    def empty(cls) -> "DetectionResult":
        return cls(is_duplicate=False)


@dataclass
class Cluster:
    """A connected group of mutually-similar records."""
    cluster_id: str
    cluster_key: str
    entity_ids: list[str]
    confidence_score: float
    status: ClusterStatus = ClusterStatus.ACTIVE
    entity_type: EntityType = EntityType.DEAL
    master_entity_id: Optional[str] = None
    merge_history_id: Optional[str] = None
    created_at: Optional[dt.datetime] = None

    @property
    def size(self) -> int:
        return len(self.entity_ids)


# =============================================================================
# Conflicts and merge history
# =============================================================================

@dataclass
class FieldValue:
    """One record's value for a conflicting field."""
    entity_id: str
    value: Any
    confidence: float
    source: str = ""
    updated_at: Optional[dt.datetime] = None
    is_validated: bool = False


@dataclass
class FieldConflict:
    field_name: str
    values: list[FieldValue]
    suggested_value: Any = None
    suggested_reason: str = ""
    requires_manual_review: bool = False


@dataclass
class MergeHistory:
    """
    Audit entry for one merge.

    Append-only: unmerge updates the unmerge columns, nothing else, and an
    unmerged entry can never be unmerged again.
    """
    id: str
    source_entity_ids: list[str]
    target_entity_id: str
    merged_data_snapshot: dict[str, Any]
    resolutions: dict[str, Any]
    strategy: str
    merged_by: str
    entity_type: EntityType = EntityType.DEAL
    conflict_strategy: Optional[str] = None
    notes: Optional[str] = None
    can_unmerge: bool = True
    unmerged: bool = False
    created_at: Optional[dt.datetime] = None
    unmerged_at: Optional[dt.datetime] = None
    unmerged_by: Optional[str] = None
    unmerge_reason: Optional[str] = None
