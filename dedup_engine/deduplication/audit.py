"""
Merge audit trail export.

Lists merge history entries with the same filters the store offers and
writes them out as CSV, newest first, for review outside the engine.
"""

import csv
import datetime as dt
import io
from typing import Any, Optional

from loguru import logger

from dedup_engine.deduplication.types import EntityType, MergeHistory

AUDIT_FIELDS = [
    "id",
    "merge_date",
    "merged_by",
    "entity_type",
    "strategy",
    "conflict_strategy",
    "target_id",
    "source_count",
    "is_unmerged",
    "unmerged_date",
    "unmerge_reason",
]


def audit_row(history: MergeHistory) -> dict[str, Any]:
    """Flatten one history entry into an export row."""
    return {
        "id": history.id,
        "merge_date": history.created_at.isoformat() if history.created_at else "",
        "merged_by": history.merged_by,
        "entity_type": history.entity_type.value,
        "strategy": history.strategy,
        "conflict_strategy": history.conflict_strategy or "",
        "target_id": history.target_entity_id,
        "source_count": len(history.source_entity_ids),
        "is_unmerged": history.unmerged,
        "unmerged_date": history.unmerged_at.isoformat() if history.unmerged_at else "",
        "unmerge_reason": history.unmerge_reason or "",
    }


def export_merge_history(
    store,
    start: Optional[dt.datetime] = None,
    end: Optional[dt.datetime] = None,
    merged_by: Optional[str] = None,
    entity_type: Optional[EntityType] = None,
) -> str:
    """
    Export the merge audit trail as CSV.

    Args:
        store: EntityStore holding the merge history
        start: Earliest merge time to include (inclusive)
        end: Latest merge time to include (inclusive)
        merged_by: Only merges performed by this user
        entity_type: Only merges of this entity type

    Returns:
        CSV text with a header row, or an empty string when nothing matches
    """
    entries = store.list_merge_history(start=start, end=end, merged_by=merged_by, entity_type=entity_type)
    if not entries:
        logger.info("No merge history entries to export")
        return ""

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=AUDIT_FIELDS)
    writer.writeheader()
    for history in entries:
        writer.writerow(audit_row(history))

    logger.info(f"Exported {len(entries)} merge history entries")
    return buffer.getvalue()
