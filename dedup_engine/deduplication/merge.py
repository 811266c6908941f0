"""
Merge duplicate records into one master record, and revert merges.

A merge runs under the entity-group locks and inside one store transaction:

1. Load and row-lock every record; validate the group
2. Select the master (target) unless one was given
3. Detect and resolve field conflicts, fill gaps from the sources
4. Update the target and write the merge history entry
5. Flip sources to 'merged', resolve pending detections, retire clusters

Either all of it commits or none of it does. Unmerge reverses steps 4-5
within the configured window.
"""

import copy
import datetime as dt
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from loguru import logger

from dedup_engine.config import MatchSettings, get_match_config
from dedup_engine.deduplication.conflicts import (
    ConflictResolutionStrategy,
    conflict_fields,
    detect_conflicts,
    get_field_value,
    is_meaningful,
    resolve_conflicts,
    set_field_value,
)
from dedup_engine.deduplication.quality import quality_score
from dedup_engine.deduplication.types import (
    ClusterStatus,
    Contact,
    DetectionStatus,
    EntityRecord,
    EntityStatus,
    FieldConflict,
    MergeHistory,
)
from dedup_engine.errors import ConflictStateError, InputError, NotFoundError
from dedup_engine.locking import EntityLockManager, entity_locks
from dedup_engine.normalizers.dates import parse_datetime, utcnow
from dedup_engine.notifications import MERGE_COMPLETED, MERGE_REVERTED, Notifier

_EPOCH = dt.datetime.min.replace(tzinfo=dt.timezone.utc)

# Preview warning thresholds
MANY_CONFLICTS = 5
LOW_PREVIEW_CONFIDENCE = 0.7


class MergeStrategy(str, Enum):
    """How the master record is chosen when no target is given."""
    NEWEST = "newest"
    QUALITY = "quality"
    FIRST = "first"
    WEIGHTED = "weighted"
    MANUAL = "manual"


@dataclass
class MergeOptions:
    merge_strategy: MergeStrategy = MergeStrategy.QUALITY
    conflict_resolution: Union[ConflictResolutionStrategy, str] = ConflictResolutionStrategy.PREFER_COMPLETE
    preserve_source: bool = False
    merged_by: str = "system"
    notes: Optional[str] = None
    can_unmerge: bool = True


@dataclass
class MergeResult:
    success: bool
    merged_entity_id: str
    source_entity_ids: list[str]
    merge_history_id: str
    conflicts_resolved: int
    conflicts_pending: int
    merged_data: dict[str, Any]
    warnings: list[str] = field(default_factory=list)
    timestamp: Optional[dt.datetime] = None


@dataclass
class UnmergeResult:
    success: bool
    restored_entity_ids: list[str]
    merge_history_id: str
    reason: str
    timestamp: Optional[dt.datetime] = None


@dataclass
class MergePreview:
    conflicts: list[FieldConflict]
    resolved_fields: dict[str, Any]
    source_data: list[dict[str, Any]]
    suggested_master: str
    confidence: float
    warnings: list[str] = field(default_factory=list)


def json_safe(value: Any) -> Any:
    """Convert dates, contacts and sets into JSON-serializable values."""
    if isinstance(value, (dt.date, dt.datetime)):
        return value.isoformat()
    if isinstance(value, Contact):
        return {"name": value.name, "email": value.email}
    if isinstance(value, set):
        return sorted(json_safe(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    return value


def select_master(
    entities: Sequence[EntityRecord],
    strategy: Union[MergeStrategy, str] = MergeStrategy.QUALITY,
    now: Optional[dt.datetime] = None,
) -> EntityRecord:
    """
    Pick the record the others merge into.

    Ties go to the record listed first.
    """
    if not entities:
        raise InputError("Cannot select a master from no records")

    strategy = MergeStrategy(strategy)
    if strategy in (MergeStrategy.QUALITY, MergeStrategy.WEIGHTED):
        return max(entities, key=lambda e: quality_score(e, now))
    if strategy == MergeStrategy.NEWEST:
        return max(entities, key=lambda e: parse_datetime(e.last_modified) or _EPOCH)
    if strategy == MergeStrategy.FIRST:
        return min(entities, key=lambda e: parse_datetime(e.created_at) or dt.datetime.max.replace(tzinfo=dt.timezone.utc))
    return entities[0]


def _strategy_name(value: Any) -> str:
    return value.value if isinstance(value, Enum) else str(value)


class MergeExecutor:
    """
    Transactional merge, cluster merge, unmerge and merge preview.

    Args:
        store: EntityStore holding the records
        notifier: Notifier for merge.completed / merge.reverted events
        locks: Lock manager serializing overlapping merges (process-wide by default)
        config: Match configuration snapshot (current one per call if omitted)
    """

    def __init__(
        self,
        store,
        notifier: Optional[Notifier] = None,
        locks: Optional[EntityLockManager] = None,
        config: Optional[MatchSettings] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.locks = locks or entity_locks
        self.config = config

    def _config(self) -> MatchSettings:
        return self.config or get_match_config()

    def _publish(self, event: str, payload: dict[str, Any]) -> None:
        if self.notifier is not None:
            self.notifier.publish(event, payload)

    # -------------------------------------------------------------------------
    # Merge
    # -------------------------------------------------------------------------

    def merge_entities(
        self,
        source_ids: Sequence[str],
        target_id: Optional[str] = None,
        options: Optional[MergeOptions] = None,
    ) -> MergeResult:
        """
        Merge `source_ids` into `target_id` (or into a selected master).

        Raises:
            NotFoundError: a record does not exist
            ConflictStateError: fewer than two distinct records, mixed entity
                types, or a record that is already merged
            StoreError: persistence failed; nothing was committed
        """
        options = options or MergeOptions()
        sources = list(dict.fromkeys(str(s) for s in source_ids if s and s != target_id))
        all_ids = sources + ([target_id] if target_id else [])
        if len(all_ids) < 2:
            raise ConflictStateError("At least two distinct records are required to merge")

        try:
            with self.locks.hold(all_ids):
                result = self._merge_locked(sources, target_id, options)
        except Exception as e:
            logger.error(f"Merge of {all_ids} failed: {e}")
            raise

        self._publish(MERGE_COMPLETED, {
            "merge_history_id": result.merge_history_id,
            "target_entity_id": result.merged_entity_id,
            "source_entity_ids": result.source_entity_ids,
            "merged_by": options.merged_by,
            "conflicts_resolved": result.conflicts_resolved,
            "conflicts_pending": result.conflicts_pending,
        })
        logger.info(
            f"Merged {len(result.source_entity_ids)} records into {result.merged_entity_id} "
            f"({result.conflicts_resolved} conflicts resolved, {result.conflicts_pending} pending)"
        )
        return result

    def _merge_locked(
        self,
        source_ids: list[str],
        target_id: Optional[str],
        options: MergeOptions,
    ) -> MergeResult:
        now = utcnow()
        all_ids = source_ids + ([target_id] if target_id else [])

        with self.store.transaction() as tx:
            loaded = tx.get_entities(all_ids, for_update=True)
            for entity_id in all_ids:
                if entity_id not in loaded:
                    raise NotFoundError("Entity", entity_id)

            entities = [loaded[i] for i in all_ids]
            entity_types = {e.entity_type for e in entities}
            if len(entity_types) > 1:
                raise ConflictStateError(
                    f"Cannot merge records of different types: {sorted(t.value for t in entity_types)}"
                )
            already_merged = [e.id for e in entities if e.status == EntityStatus.MERGED]
            if already_merged:
                raise ConflictStateError(f"Records already merged: {already_merged}")

            if target_id is None:
                target = select_master(entities, options.merge_strategy, now)
                target_id = target.id
            target = loaded[target_id]
            sources = [loaded[i] for i in all_ids if i != target_id]
            ordered = sources + [target]

            conflicts = detect_conflicts(ordered)
            resolved = resolve_conflicts(conflicts, options.conflict_resolution)
            conflicting = {c.field_name for c in conflicts}

            merged = copy.deepcopy(target)
            for field_name, value in resolved.items():
                set_field_value(merged, field_name, value)

            # Fields only the sources carry
            for field_name in conflict_fields(ordered):
                if field_name in conflicting or is_meaningful(get_field_value(merged, field_name)):
                    continue
                for source in sources:
                    value = get_field_value(source, field_name)
                    if is_meaningful(value):
                        set_field_value(merged, field_name, copy.deepcopy(value))
                        break

            for entity in sources:
                merged.source_file_ids |= entity.source_file_ids
            merged.updated_at = now
            tx.update_entity(merged)

            history = tx.add_merge_history(MergeHistory(
                id=str(uuid.uuid4()),
                source_entity_ids=[s.id for s in sources],
                target_entity_id=target_id,
                merged_data_snapshot={
                    "target_before": target.to_dict(),
                    "sources_before": [s.to_dict() for s in sources],
                    "merged": merged.to_dict(),
                },
                resolutions=json_safe(resolved),
                strategy=_strategy_name(options.merge_strategy),
                merged_by=options.merged_by,
                entity_type=target.entity_type,
                conflict_strategy=_strategy_name(options.conflict_resolution),
                notes=options.notes,
                can_unmerge=options.can_unmerge,
                created_at=now,
            ))

            for source in sources:
                retired = copy.deepcopy(source)
                retired.status = EntityStatus.MERGED
                retired.updated_at = now
                if options.preserve_source:
                    note = f"Merged into {target_id}"
                    retired.notes = f"{retired.notes}\n{note}" if retired.notes else note
                    retired.extra["merged_into"] = target_id
                tx.update_entity(retired)

            group = [s.id for s in sources] + [target_id]
            tx.transition_detections(
                group, DetectionStatus.PENDING, DetectionStatus.AUTO_MERGED,
                resolved_by=options.merged_by, now=now,
            )
            tx.mark_clusters_merged(target.entity_type, group, target_id, history.id)

        warnings = []
        manual = [c.field_name for c in conflicts if c.requires_manual_review]
        if manual:
            warnings.append(f"{len(manual)} conflicts required manual review: {manual}")
        pending = len(conflicts) - len(resolved)
        if pending:
            warnings.append(f"{pending} conflicts left unresolved on the target")

        return MergeResult(
            success=True,
            merged_entity_id=target_id,
            source_entity_ids=[s.id for s in sources],
            merge_history_id=history.id,
            conflicts_resolved=len(resolved),
            conflicts_pending=pending,
            merged_data=merged.to_dict(),
            warnings=warnings,
            timestamp=now,
        )

    def merge_cluster(
        self,
        cluster_id: str,
        master_id: Optional[str] = None,
        options: Optional[MergeOptions] = None,
    ) -> MergeResult:
        """Merge every member of an active cluster into its master."""
        with self.store.read() as tx:
            cluster = tx.get_cluster(cluster_id)
        if cluster is None:
            raise NotFoundError("Cluster", cluster_id)
        if cluster.status != ClusterStatus.ACTIVE:
            raise ConflictStateError(f"Cluster {cluster_id} is {cluster.status.value}, not active")
        if cluster.size < 2:
            raise ConflictStateError(f"Cluster {cluster_id} has fewer than two members")
        if master_id is not None and master_id not in cluster.entity_ids:
            raise ConflictStateError(f"Master {master_id} is not a member of cluster {cluster_id}")

        logger.debug(f"Merging cluster {cluster_id} ({cluster.size} members)")
        return self.merge_entities(cluster.entity_ids, target_id=master_id, options=options)

    # -------------------------------------------------------------------------
    # Unmerge
    # -------------------------------------------------------------------------

    def unmerge_entities(
        self,
        history_id: str,
        reason: str,
        unmerged_by: str = "system",
        now: Optional[dt.datetime] = None,
    ) -> UnmergeResult:
        """
        Revert a merge: restore its sources, reopen detections, revive clusters.

        The target keeps its merged values; its pre-merge state stays in the
        history snapshot under "target_before".

        Raises:
            NotFoundError: no such merge history entry
            ConflictStateError: already unmerged, not revertible, or outside
                the unmerge window
        """
        now = parse_datetime(now) or utcnow()

        with self.store.read() as tx:
            history = tx.get_merge_history(history_id)
        if history is None:
            raise NotFoundError("Merge history", history_id)

        group = list(history.source_entity_ids) + [history.target_entity_id]
        try:
            with self.locks.hold(group):
                restored = self._unmerge_locked(history_id, reason, unmerged_by, now)
        except Exception as e:
            logger.error(f"Unmerge of {history_id} failed: {e}")
            raise

        self._publish(MERGE_REVERTED, {
            "merge_history_id": history_id,
            "restored_entity_ids": restored,
            "unmerged_by": unmerged_by,
            "reason": reason,
        })
        logger.info(f"Unmerged {history_id}: restored {len(restored)} records ({reason})")
        return UnmergeResult(
            success=True,
            restored_entity_ids=restored,
            merge_history_id=history_id,
            reason=reason,
            timestamp=now,
        )

    def _unmerge_locked(self, history_id: str, reason: str, unmerged_by: str, now: dt.datetime) -> list[str]:
        window = dt.timedelta(hours=self._config().unmerge_window_hours)

        with self.store.transaction() as tx:
            history = tx.get_merge_history(history_id, for_update=True)
            if history is None:
                raise NotFoundError("Merge history", history_id)
            if history.unmerged:
                raise ConflictStateError(f"Merge {history_id} has already been unmerged")
            if not history.can_unmerge:
                raise ConflictStateError(f"Merge {history_id} cannot be unmerged")
            if history.created_at is not None and now - history.created_at > window:
                raise ConflictStateError(
                    f"Merge {history_id} is older than the {window.total_seconds() / 3600:g}h unmerge window"
                )

            snapshots = {
                s.get("id"): s for s in history.merged_data_snapshot.get("sources_before", [])
            }
            current = tx.get_entities(history.source_entity_ids, for_update=True)
            restored = []
            for source_id in history.source_entity_ids:
                if source_id not in current:
                    raise NotFoundError("Entity", source_id)
                snapshot = snapshots.get(source_id)
                record = EntityRecord.from_mapping(snapshot) if snapshot else current[source_id]
                record.status = EntityStatus.ACTIVE
                record.updated_at = now
                tx.update_entity(record)
                restored.append(source_id)

            tx.mark_history_unmerged(history_id, unmerged_by, reason, now)
            group = restored + [history.target_entity_id]
            tx.transition_detections(group, DetectionStatus.AUTO_MERGED, DetectionStatus.PENDING, now=now)
            tx.reactivate_clusters(history_id)
        return restored

    # -------------------------------------------------------------------------
    # Preview
    # -------------------------------------------------------------------------

    def preview_merge(self, entity_ids: Sequence[str]) -> MergePreview:
        """
        Show what merging `entity_ids` would do, without changing anything.

        Confidence is the mean quality of the records, reduced by 10% per
        conflict needing manual review.
        """
        ids = list(dict.fromkeys(str(i) for i in entity_ids if i))
        if len(ids) < 2:
            raise ConflictStateError("At least two distinct records are required to preview a merge")

        with self.store.read() as tx:
            loaded = tx.get_entities(ids)
        for entity_id in ids:
            if entity_id not in loaded:
                raise NotFoundError("Entity", entity_id)

        now = utcnow()
        entities = [loaded[i] for i in ids]
        master = select_master(entities, MergeStrategy.QUALITY, now)
        ordered = [e for e in entities if e.id != master.id] + [master]

        conflicts = detect_conflicts(ordered)
        resolved_fields = {c.field_name: c.suggested_value for c in conflicts}

        average_quality = sum(quality_score(e, now) for e in ordered) / len(ordered)
        manual_count = sum(1 for c in conflicts if c.requires_manual_review)
        confidence = max(0.0, average_quality * (1 - 0.1 * manual_count))

        warnings = []
        if len(conflicts) > MANY_CONFLICTS:
            warnings.append(f"High number of conflicts ({len(conflicts)})")
        if manual_count:
            warnings.append(f"{manual_count} conflicts require manual review")
        if confidence < LOW_PREVIEW_CONFIDENCE:
            warnings.append(f"Low merge confidence ({confidence:.2f})")

        return MergePreview(
            conflicts=conflicts,
            resolved_fields=resolved_fields,
            source_data=[e.to_dict() for e in ordered],
            suggested_master=master.id,
            confidence=confidence,
            warnings=warnings,
        )
