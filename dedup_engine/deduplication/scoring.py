"""
Field-level and weighted similarity between two entity records.

Every function here is pure: no I/O, no shared state, safe to call from any
thread. Each field scorer returns a factor in [0, 1], or None when neither
record carries the field; None factors drop out of the weighted average.
"""

from collections.abc import Iterable, Mapping
from typing import Optional

from loguru import logger
from rapidfuzz import fuzz

from dedup_engine.config import MatchSettings, get_match_config
from dedup_engine.deduplication.types import EntityRecord, SimilarityResult
from dedup_engine.normalizers.dates import parse_date
from dedup_engine.normalizers.names import (
    normalize_company_name,
    normalize_email,
    normalize_string,
)


def fuzzy_score(a: Optional[str], b: Optional[str]) -> float:
    """
    Best fuzzy score (0-100) between two names after company normalization.

    Takes the max of ratio, partial_ratio, token_sort_ratio and
    token_set_ratio. Identical normalized names score 100.
    """
    norm_a = normalize_company_name(a)
    norm_b = normalize_company_name(b)
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 100.0

    # Fixed argument order keeps partial_ratio symmetric
    left, right = sorted((norm_a, norm_b))
    return max(
        fuzz.ratio(left, right),
        fuzz.partial_ratio(left, right),
        fuzz.token_sort_ratio(left, right),
        fuzz.token_set_ratio(left, right),
    )


def name_similarity(a: Optional[str], b: Optional[str]) -> Optional[float]:
    """Similarity of two names in [0, 1]; None if both are empty."""
    if not normalize_company_name(a) and not normalize_company_name(b):
        return None
    return fuzzy_score(a, b) / 100.0


def _as_number(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric value {value!r}")
        return None


def value_similarity(a, b, tolerance_percent: float = 10.0) -> Optional[float]:
    """
    Compare two monetary values by percentage difference from their mean.

    Within tolerance scores 1.0, decaying linearly to 0.0 at three times the
    tolerance.
    """
    num_a = _as_number(a)
    num_b = _as_number(b)
    if num_a is None and num_b is None:
        return None
    if num_a is None or num_b is None:
        return 0.0

    mean = (abs(num_a) + abs(num_b)) / 2
    if mean == 0:
        return 1.0
    diff_percent = abs(num_a - num_b) / mean * 100

    if diff_percent <= tolerance_percent:
        return 1.0
    limit = tolerance_percent * 3
    if diff_percent >= limit:
        return 0.0
    return 1.0 - (diff_percent - tolerance_percent) / (limit - tolerance_percent)


def date_similarity(a, b, tolerance_days: float = 7.0) -> Optional[float]:
    """
    Compare two dates by absolute day difference.

    Within tolerance scores 1.0, decaying linearly to 0.0 at four times the
    tolerance. Unparseable dates count as missing.
    """
    date_a = parse_date(a)
    date_b = parse_date(b)
    if date_a is None and date_b is None:
        return None
    if date_a is None or date_b is None:
        return 0.0

    days = abs((date_a - date_b).days)
    if days <= tolerance_days:
        return 1.0
    limit = tolerance_days * 4
    if days >= limit:
        return 0.0
    return 1.0 - (days - tolerance_days) / (limit - tolerance_days)


def jaccard_similarity(a: Iterable[str], b: Iterable[str]) -> Optional[float]:
    """Jaccard overlap of two sets; None if both are empty."""
    set_a = set(a)
    set_b = set(b)
    if not set_a and not set_b:
        return None
    return len(set_a & set_b) / len(set_a | set_b)


def product_similarity(a: Iterable, b: Iterable) -> Optional[float]:
    """Jaccard overlap of normalized product names."""
    norm_a = {normalize_string(p) for p in a or [] if isinstance(p, str)} - {""}
    norm_b = {normalize_string(p) for p in b or [] if isinstance(p, str)} - {""}
    return jaccard_similarity(norm_a, norm_b)


def contact_similarity(a: Iterable, b: Iterable) -> Optional[float]:
    """Jaccard overlap of normalized contact emails; contacts without email are ignored."""
    emails_a = {normalize_email(getattr(c, "email", None)) for c in a or []} - {""}
    emails_b = {normalize_email(getattr(c, "email", None)) for c in b or []} - {""}
    return jaccard_similarity(emails_a, emails_b)


def vendor_similarity(a: Optional[str], b: Optional[str]) -> Optional[float]:
    """1.0 for the same vendor id, 0.0 otherwise; None if neither has one."""
    if not a and not b:
        return None
    return 1.0 if a and b and str(a) == str(b) else 0.0


def description_similarity(a: Optional[str], b: Optional[str]) -> Optional[float]:
    norm_a = normalize_string(a)
    norm_b = normalize_string(b)
    if not norm_a and not norm_b:
        return None
    if not norm_a or not norm_b:
        return 0.0
    left, right = sorted((norm_a, norm_b))
    return fuzz.token_set_ratio(left, right) / 100.0


def resolve_weights(
    weights: Optional[Mapping[str, float]],
    config: MatchSettings,
) -> dict[str, float]:
    """Merge caller weight overrides over the configured defaults."""
    resolved = config.field_weights.model_dump()
    for key, weight in (weights or {}).items():
        if key not in resolved:
            logger.warning(f"Ignoring unknown similarity weight '{key}'")
            continue
        resolved[key] = float(weight)
    return resolved


def _factor(field_name: str, a: EntityRecord, b: EntityRecord, config: MatchSettings) -> Optional[float]:
    if field_name == "name":
        return name_similarity(a.name, b.name)
    if field_name == "counterpart_name":
        return name_similarity(a.counterpart_name, b.counterpart_name)
    if field_name == "vendor_match":
        return vendor_similarity(a.vendor_id, b.vendor_id)
    if field_name == "value":
        return value_similarity(a.value, b.value, config.value_tolerance_percent)
    if field_name == "date":
        return date_similarity(a.date, b.date, config.date_tolerance_days)
    if field_name == "products":
        return product_similarity(a.products, b.products)
    if field_name == "contacts":
        return contact_similarity(a.contacts, b.contacts)
    if field_name == "description":
        return description_similarity(a.description, b.description)
    return None


def score(
    a: EntityRecord,
    b: EntityRecord,
    weights: Optional[Mapping[str, float]] = None,
    config: Optional[MatchSettings] = None,
) -> SimilarityResult:
    """
    Weighted similarity of two records.

    Fields missing on both sides are left out of the denominator; a field
    present on only one side scores 0 and stays in. A pair with nothing to
    compare scores 0.0 with an effective weight of 0.

    Args:
        a: First record
        b: Second record
        weights: Optional per-field overrides of the configured weights
        config: Match configuration snapshot (current one if omitted)

    Returns:
        SimilarityResult with the overall score and per-field factors
    """
    config = config or get_match_config()
    resolved = resolve_weights(weights, config)

    factors: dict[str, float] = {}
    weighted_sum = 0.0
    effective_weight = 0.0

    for field_name, weight in resolved.items():
        if weight <= 0:
            continue
        try:
            factor = _factor(field_name, a, b, config)
        except (TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Skipping '{field_name}' when comparing {a.id} and {b.id}: {e}")
            continue
        if factor is None:
            continue
        factors[field_name] = factor
        weighted_sum += weight * factor
        effective_weight += weight

    if effective_weight == 0:
        return SimilarityResult(overall=0.0, factors=factors, effective_weight=0.0)

    overall = min(1.0, max(0.0, weighted_sum / effective_weight))
    return SimilarityResult(overall=overall, factors=factors, effective_weight=effective_weight)
