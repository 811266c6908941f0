"""
Authoritative store for entity records, detections, clusters and merge history.

All engine reads and writes go through a StoreTransaction obtained from
EntityStore.transaction() (commit on success, rollback on any error) or
EntityStore.read() (always rolled back). SQLAlchemy errors are wrapped into
StoreError here and nowhere else.
"""

import datetime as dt
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from typing import Optional

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from dedup_engine.database import (
    DuplicateCluster,
    DuplicateDetection,
    Entity,
    MergeHistoryEntry,
    SessionLocal,
    get_session,
)
from dedup_engine.deduplication.types import (
    Cluster,
    ClusterStatus,
    Contact,
    DetectionStatus,
    EntityRecord,
    EntityStatus,
    EntityType,
    MatchRecord,
    MergeHistory,
    SuggestedAction,
    ValidationStatus,
)
from dedup_engine.errors import StoreError
from dedup_engine.normalizers.dates import parse_date, parse_datetime, utcnow


# =============================================================================
# Row <-> dataclass conversion
# =============================================================================

def entity_to_record(row: Entity) -> EntityRecord:
    """Convert an Entity row into an EntityRecord."""
    return EntityRecord(
        id=row.id,
        entity_type=EntityType(row.entity_type),
        name=row.name,
        counterpart_name=row.counterpart_name,
        value=row.value,
        currency=row.currency,
        date=row.date,
        vendor_id=row.vendor_id,
        products=list(row.products or []),
        contacts=[Contact.from_value(c) for c in row.contacts or []],
        description=row.description,
        notes=row.notes,
        extra=dict(row.extra or {}),
        extraction_confidence=row.extraction_confidence,
        validation_status=ValidationStatus(row.validation_status or "unvalidated"),
        validation_score=row.validation_score,
        status=EntityStatus(row.status or "active"),
        created_at=parse_datetime(row.created_at),
        updated_at=parse_datetime(row.updated_at),
        source_file_ids=set(row.source_file_ids or []),
    )


def apply_record(row: Entity, record: EntityRecord) -> Entity:
    """Copy every field of `record` onto `row`."""
    row.entity_type = record.entity_type.value
    row.name = record.name
    row.counterpart_name = record.counterpart_name
    row.value = record.value
    row.currency = record.currency
    row.date = parse_date(record.date)
    row.vendor_id = record.vendor_id
    row.products = list(record.products)
    row.contacts = [{"name": c.name, "email": c.email} for c in record.contacts]
    row.description = record.description
    row.notes = record.notes
    row.extra = dict(record.extra)
    row.extraction_confidence = record.extraction_confidence
    row.validation_status = record.validation_status.value
    row.validation_score = record.validation_score
    row.status = record.status.value
    row.source_file_ids = sorted(record.source_file_ids)
    row.updated_at = record.updated_at or utcnow()
    if record.created_at:
        row.created_at = record.created_at
    return row


def cluster_to_dataclass(row: DuplicateCluster) -> Cluster:
    return Cluster(
        cluster_id=row.id,
        cluster_key=row.cluster_key,
        entity_ids=list(row.entity_ids),
        confidence_score=row.confidence_score,
        status=ClusterStatus(row.status),
        entity_type=EntityType(row.entity_type),
        master_entity_id=row.master_entity_id,
        merge_history_id=row.merge_history_id,
        created_at=parse_datetime(row.created_at),
    )


def history_to_dataclass(row: MergeHistoryEntry) -> MergeHistory:
    return MergeHistory(
        id=row.id,
        source_entity_ids=list(row.source_entity_ids),
        target_entity_id=row.target_entity_id,
        merged_data_snapshot=dict(row.merged_data_snapshot or {}),
        resolutions=dict(row.resolutions or {}),
        strategy=row.merge_strategy,
        merged_by=row.merged_by,
        entity_type=EntityType(row.entity_type),
        conflict_strategy=row.conflict_strategy,
        notes=row.notes,
        can_unmerge=bool(row.can_unmerge),
        unmerged=bool(row.unmerged),
        created_at=parse_datetime(row.created_at),
        unmerged_at=parse_datetime(row.unmerged_at),
        unmerged_by=row.unmerged_by,
        unmerge_reason=row.unmerge_reason,
    )


# =============================================================================
# Unit of work
# =============================================================================

class StoreTransaction:
    """Operations bound to one database session."""

    def __init__(self, session: Session):
        self.session = session

    # -- entities -------------------------------------------------------------

    def add_entities(self, records: Iterable[EntityRecord]) -> list[str]:
        ids = []
        for record in records:
            row = Entity(id=record.id) if record.id else Entity()
            apply_record(row, record)
            self.session.add(row)
            self.session.flush()
            ids.append(row.id)
        return ids

    def get_entity(self, entity_id: str, for_update: bool = False) -> Optional[EntityRecord]:
        records = self.get_entities([entity_id], for_update=for_update)
        return records.get(entity_id)

    def get_entities(self, entity_ids: Iterable[str], for_update: bool = False) -> dict[str, EntityRecord]:
        """Load records by id, optionally locking the rows (SELECT ... FOR UPDATE)."""
        ids = sorted(set(entity_ids))
        if not ids:
            return {}
        stmt = select(Entity).where(Entity.id.in_(ids)).order_by(Entity.id)
        if for_update:
            stmt = stmt.with_for_update()
        rows = self.session.scalars(stmt).all()
        return {row.id: entity_to_record(row) for row in rows}

    def list_entities(
        self,
        entity_type: Optional[EntityType] = EntityType.DEAL,
        status: Optional[EntityStatus] = EntityStatus.ACTIVE,
        limit: Optional[int] = None,
    ) -> list[EntityRecord]:
        stmt = select(Entity)
        if entity_type is not None:
            stmt = stmt.where(Entity.entity_type == EntityType(entity_type).value)
        if status is not None:
            stmt = stmt.where(Entity.status == EntityStatus(status).value)
        stmt = stmt.order_by(Entity.updated_at.desc(), Entity.id)
        if limit:
            stmt = stmt.limit(limit)
        return [entity_to_record(row) for row in self.session.scalars(stmt)]

    def list_candidates(self, entity: EntityRecord, limit: int = 200) -> list[EntityRecord]:
        """
        Candidate pool for one record.

        Active records of the same type that share the counterpart name
        (case-insensitive substring) or the vendor id, newest first.
        """
        conditions = []
        if entity.counterpart_name:
            conditions.append(Entity.counterpart_name.icontains(entity.counterpart_name, autoescape=True))
        if entity.vendor_id:
            conditions.append(Entity.vendor_id == entity.vendor_id)
        if not conditions:
            return []

        stmt = (
            select(Entity)
            .where(Entity.entity_type == entity.entity_type.value)
            .where(Entity.status == EntityStatus.ACTIVE.value)
            .where(or_(*conditions))
        )
        if entity.id:
            stmt = stmt.where(Entity.id != entity.id)
        stmt = stmt.order_by(Entity.updated_at.desc(), Entity.id).limit(limit)
        return [entity_to_record(row) for row in self.session.scalars(stmt)]

    def update_entity(self, record: EntityRecord) -> None:
        row = self.session.get(Entity, record.id)
        if row is None:
            raise StoreError(f"Entity {record.id} vanished during update")
        apply_record(row, record)

    # -- duplicate detections ---------------------------------------------------

    def record_detections(
        self,
        entity: EntityRecord,
        matches: Iterable[MatchRecord],
        action: SuggestedAction,
    ) -> int:
        """
        Upsert pending detection rows for the matches of one record.

        Existing pending rows keep the higher score; resolved rows are left
        alone so a dismissed pair is not reopened.
        """
        count = 0
        for match in matches:
            id_1, id_2 = sorted((entity.id, match.matched_entity_id))
            existing = self.session.scalars(
                select(DuplicateDetection).where(
                    DuplicateDetection.entity_type == entity.entity_type.value,
                    DuplicateDetection.entity_id_1 == id_1,
                    DuplicateDetection.entity_id_2 == id_2,
                )
            ).first()

            if existing is None:
                self.session.add(DuplicateDetection(
                    entity_type=entity.entity_type.value,
                    entity_id_1=id_1,
                    entity_id_2=id_2,
                    similarity_score=match.confidence,
                    confidence_level=SuggestedAction(action).value,
                    detection_strategy=match.strategy.value,
                    similarity_factors=dict(match.factors),
                    status=DetectionStatus.PENDING.value,
                ))
                count += 1
            elif existing.status == DetectionStatus.PENDING.value and match.confidence > existing.similarity_score:
                existing.similarity_score = match.confidence
                existing.confidence_level = SuggestedAction(action).value
                existing.detection_strategy = match.strategy.value
                existing.similarity_factors = dict(match.factors)
                existing.detected_at = utcnow()
                count += 1
        self.session.flush()
        return count

    def list_detections(
        self,
        entity_type: Optional[EntityType] = None,
        status: Optional[DetectionStatus] = None,
    ) -> list[DuplicateDetection]:
        stmt = select(DuplicateDetection)
        if entity_type is not None:
            stmt = stmt.where(DuplicateDetection.entity_type == EntityType(entity_type).value)
        if status is not None:
            stmt = stmt.where(DuplicateDetection.status == DetectionStatus(status).value)
        stmt = stmt.order_by(DuplicateDetection.similarity_score.desc(), DuplicateDetection.id)
        return list(self.session.scalars(stmt))

    def transition_detections(
        self,
        entity_ids: Iterable[str],
        from_status: DetectionStatus,
        to_status: DetectionStatus,
        resolved_by: Optional[str] = None,
        now: Optional[dt.datetime] = None,
    ) -> int:
        """Move every detection touching any of `entity_ids` from one status to another."""
        ids = list(entity_ids)
        stmt = select(DuplicateDetection).where(
            DuplicateDetection.status == DetectionStatus(from_status).value,
            or_(DuplicateDetection.entity_id_1.in_(ids), DuplicateDetection.entity_id_2.in_(ids)),
        )
        count = 0
        for row in self.session.scalars(stmt):
            row.status = DetectionStatus(to_status).value
            if to_status == DetectionStatus.PENDING:
                row.resolved_at = None
                row.resolved_by = None
            else:
                row.resolved_at = now or utcnow()
                row.resolved_by = resolved_by
            count += 1
        return count

    # -- clusters ---------------------------------------------------------------

    def save_clusters(self, clusters: Iterable[Cluster]) -> list[Cluster]:
        """
        Persist clusters, reusing an existing active cluster with the same key.

        Returns the clusters as stored (reused ones carry their stored id).
        """
        saved = []
        for cluster in clusters:
            existing = self.session.scalars(
                select(DuplicateCluster).where(
                    DuplicateCluster.cluster_key == cluster.cluster_key,
                    DuplicateCluster.entity_type == cluster.entity_type.value,
                    DuplicateCluster.status == ClusterStatus.ACTIVE.value,
                )
            ).first()
            if existing is not None:
                existing.confidence_score = cluster.confidence_score
                row = existing
            else:
                row = DuplicateCluster(
                    id=cluster.cluster_id,
                    cluster_key=cluster.cluster_key,
                    entity_type=cluster.entity_type.value,
                    entity_ids=list(cluster.entity_ids),
                    cluster_size=len(cluster.entity_ids),
                    confidence_score=cluster.confidence_score,
                    status=ClusterStatus.ACTIVE.value,
                )
                self.session.add(row)
            self.session.flush()
            saved.append(cluster_to_dataclass(row))
        return saved

    def get_cluster(self, cluster_id: str, for_update: bool = False) -> Optional[Cluster]:
        stmt = select(DuplicateCluster).where(DuplicateCluster.id == cluster_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = self.session.scalars(stmt).first()
        return cluster_to_dataclass(row) if row else None

    def list_clusters(
        self,
        entity_type: Optional[EntityType] = None,
        status: Optional[ClusterStatus] = ClusterStatus.ACTIVE,
        min_confidence: Optional[float] = None,
    ) -> list[Cluster]:
        """Clusters ordered by confidence, highest first."""
        stmt = select(DuplicateCluster)
        if entity_type is not None:
            stmt = stmt.where(DuplicateCluster.entity_type == EntityType(entity_type).value)
        if status is not None:
            stmt = stmt.where(DuplicateCluster.status == ClusterStatus(status).value)
        if min_confidence is not None:
            stmt = stmt.where(DuplicateCluster.confidence_score >= min_confidence)
        stmt = stmt.order_by(DuplicateCluster.confidence_score.desc(), DuplicateCluster.id)
        return [cluster_to_dataclass(row) for row in self.session.scalars(stmt)]

    def mark_clusters_merged(
        self,
        entity_type: EntityType,
        entity_ids: Iterable[str],
        master_entity_id: str,
        merge_history_id: str,
    ) -> int:
        """Flip every active cluster that contains any of `entity_ids` to merged."""
        members = set(entity_ids)
        stmt = select(DuplicateCluster).where(
            DuplicateCluster.entity_type == EntityType(entity_type).value,
            DuplicateCluster.status == ClusterStatus.ACTIVE.value,
        )
        count = 0
        for row in self.session.scalars(stmt):
            if members.intersection(row.entity_ids):
                row.status = ClusterStatus.MERGED.value
                row.master_entity_id = master_entity_id
                row.merge_history_id = merge_history_id
                count += 1
        return count

    def reactivate_clusters(self, merge_history_id: str) -> int:
        stmt = select(DuplicateCluster).where(DuplicateCluster.merge_history_id == merge_history_id)
        count = 0
        for row in self.session.scalars(stmt):
            row.status = ClusterStatus.ACTIVE.value
            row.merge_history_id = None
            count += 1
        return count

    # -- merge history ----------------------------------------------------------

    def add_merge_history(self, history: MergeHistory) -> MergeHistory:
        row = MergeHistoryEntry(
            id=history.id,
            entity_type=history.entity_type.value,
            source_entity_ids=list(history.source_entity_ids),
            target_entity_id=history.target_entity_id,
            merge_strategy=history.strategy,
            conflict_strategy=history.conflict_strategy,
            merged_data_snapshot=history.merged_data_snapshot,
            resolutions=history.resolutions,
            merged_by=history.merged_by,
            notes=history.notes,
            can_unmerge=history.can_unmerge,
            unmerged=history.unmerged,
        )
        if history.created_at:
            row.created_at = history.created_at
        self.session.add(row)
        self.session.flush()
        return history_to_dataclass(row)

    def get_merge_history(self, history_id: str, for_update: bool = False) -> Optional[MergeHistory]:
        stmt = select(MergeHistoryEntry).where(MergeHistoryEntry.id == history_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = self.session.scalars(stmt).first()
        return history_to_dataclass(row) if row else None

    def list_merge_history(
        self,
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
        merged_by: Optional[str] = None,
        entity_type: Optional[EntityType] = None,
    ) -> list[MergeHistory]:
        """Merge audit entries, newest first; `start` and `end` are inclusive."""
        stmt = select(MergeHistoryEntry)
        if start is not None:
            stmt = stmt.where(MergeHistoryEntry.created_at >= start)
        if end is not None:
            stmt = stmt.where(MergeHistoryEntry.created_at <= end)
        if merged_by:
            stmt = stmt.where(MergeHistoryEntry.merged_by == merged_by)
        if entity_type is not None:
            stmt = stmt.where(MergeHistoryEntry.entity_type == EntityType(entity_type).value)
        stmt = stmt.order_by(MergeHistoryEntry.created_at.desc(), MergeHistoryEntry.id)
        return [history_to_dataclass(row) for row in self.session.scalars(stmt)]

    def mark_history_unmerged(
        self,
        history_id: str,
        unmerged_by: str,
        reason: str,
        now: Optional[dt.datetime] = None,
    ) -> None:
        row = self.session.get(MergeHistoryEntry, history_id)
        if row is None:
            raise StoreError(f"Merge history {history_id} vanished during unmerge")
        row.unmerged = True
        row.unmerged_at = now or utcnow()
        row.unmerged_by = unmerged_by
        row.unmerge_reason = reason


class EntityStore:
    """
    Session factory wrapper handing out unit-of-work transactions.

    Args:
        session_factory: sessionmaker to draw sessions from (the module-level
            SessionLocal by default; tests pass one bound to SQLite)
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or SessionLocal

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """Commit on success, roll back on any exception."""
        try:
            with get_session(self.session_factory) as session:
                yield StoreTransaction(session)
        except SQLAlchemyError as e:
            logger.error(f"Store transaction failed: {e}")
            raise StoreError(str(e)) from e

    @contextmanager
    def read(self) -> Iterator[StoreTransaction]:
        """Read-only view; anything written is rolled back."""
        session = self.session_factory()
        try:
            yield StoreTransaction(session)
        except SQLAlchemyError as e:
            logger.error(f"Store read failed: {e}")
            raise StoreError(str(e)) from e
        finally:
            session.rollback()
            session.close()

    # -- convenience wrappers ---------------------------------------------------

    def add_entities(self, records: Iterable[EntityRecord]) -> list[str]:
        with self.transaction() as tx:
            return tx.add_entities(records)

    def get_entity(self, entity_id: str) -> Optional[EntityRecord]:
        with self.read() as tx:
            return tx.get_entity(entity_id)

    def list_entities(
        self,
        entity_type: Optional[EntityType] = EntityType.DEAL,
        status: Optional[EntityStatus] = EntityStatus.ACTIVE,
        limit: Optional[int] = None,
    ) -> list[EntityRecord]:
        with self.read() as tx:
            return tx.list_entities(entity_type, status, limit)

    def list_candidates(self, entity: EntityRecord, limit: int = 200) -> list[EntityRecord]:
        with self.read() as tx:
            return tx.list_candidates(entity, limit)

    def record_detections(self, entity: EntityRecord, matches: Iterable[MatchRecord], action: SuggestedAction) -> int:
        with self.transaction() as tx:
            return tx.record_detections(entity, matches, action)

    def list_detections(
        self,
        entity_type: Optional[EntityType] = None,
        status: Optional[DetectionStatus] = None,
    ) -> list[dict]:
        """Detection rows as plain dicts."""
        with self.read() as tx:
            return [
                {
                    "entity_type": row.entity_type,
                    "entity_id_1": row.entity_id_1,
                    "entity_id_2": row.entity_id_2,
                    "similarity_score": row.similarity_score,
                    "confidence_level": row.confidence_level,
                    "detection_strategy": row.detection_strategy,
                    "similarity_factors": dict(row.similarity_factors or {}),
                    "status": row.status,
                    "resolved_by": row.resolved_by,
                }
                for row in tx.list_detections(entity_type, status)
            ]

    def save_clusters(self, clusters: Iterable[Cluster]) -> list[Cluster]:
        with self.transaction() as tx:
            return tx.save_clusters(clusters)

    def get_cluster(self, cluster_id: str) -> Optional[Cluster]:
        with self.read() as tx:
            return tx.get_cluster(cluster_id)

    def list_clusters(
        self,
        entity_type: Optional[EntityType] = None,
        status: Optional[ClusterStatus] = ClusterStatus.ACTIVE,
        min_confidence: Optional[float] = None,
    ) -> list[Cluster]:
        with self.read() as tx:
            return tx.list_clusters(entity_type, status, min_confidence)

    def get_merge_history(self, history_id: str) -> Optional[MergeHistory]:
        with self.read() as tx:
            return tx.get_merge_history(history_id)

    def list_merge_history(
        self,
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
        merged_by: Optional[str] = None,
        entity_type: Optional[EntityType] = None,
    ) -> list[MergeHistory]:
        with self.read() as tx:
            return tx.list_merge_history(start, end, merged_by, entity_type)
