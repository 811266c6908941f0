"""
Database models for the entity deduplication engine.

Uses SQLAlchemy 2.0. Runs on PostgreSQL in production; tests point
DATABASE_URL at an in-memory SQLite database.
"""

import datetime as dt
import uuid
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    sessionmaker,
)
from sqlalchemy.pool import StaticPool

from dedup_engine.config import settings

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


# =============================================================================
# Database Engine and Session
# =============================================================================

def make_engine(url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the given URL.

    SQLite gets a single shared connection so an in-memory database survives
    across sessions and threads; PostgreSQL gets a sized connection pool.
    """
    if url.startswith("sqlite"):
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=20,
        max_overflow=30,
        pool_timeout=30,        # Connection timeout to prevent hanging
        pool_recycle=1800,      # Recycle connections every 30 minutes
        connect_args={
            "connect_timeout": 10,
            "options": "-c statement_timeout=30000"  # 30s query timeout
        }
    )


engine = make_engine(settings.database.url, echo=settings.pipeline.log_level == "DEBUG")

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def get_session(session_factory: Optional[sessionmaker] = None):
    """Context manager for database sessions: commit on success, roll back on error."""
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# =============================================================================
# Base Model
# =============================================================================

class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# =============================================================================
# Entity Records
# =============================================================================

class Entity(Base):
    """
    A deal, vendor or contact record.

    Core fields are typed columns; anything else an extractor produced lives
    in the `extra` JSON column. Merged-away records stay in the table with
    status 'merged' so a merge can be reverted.
    """
    __tablename__ = "entities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False, default="deal")

    # Core fields
    name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    counterpart_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    date: Mapped[Optional[dt.date]] = mapped_column(Date, nullable=True)
    vendor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    products: Mapped[list] = mapped_column(JSONType, default=list)
    contacts: Mapped[list] = mapped_column(JSONType, default=list)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extra: Mapped[dict] = mapped_column(JSONType, default=dict)

    # Extraction and validation metadata
    extraction_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    validation_status: Mapped[str] = mapped_column(String(20), default="unvalidated")
    validation_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), default="active")
    source_file_ids: Mapped[list] = mapped_column(JSONType, default=list)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("idx_entities_type_status", "entity_type", "status"),
        Index("idx_entities_vendor", "vendor_id"),
        Index("idx_entities_counterpart", "counterpart_name"),
    )

    def __repr__(self) -> str:
        return f"<Entity {self.entity_type}:{self.id} '{self.name}' ({self.status})>"


# =============================================================================
# Duplicate Detection Models
# =============================================================================

class DuplicateDetection(Base):
    """
    A detected duplicate pair awaiting review or resolved by a merge.

    Pairs are stored with entity_id_1 < entity_id_2 so each pair has one row.
    """
    __tablename__ = "duplicate_detections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id_1: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    entity_id_2: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    similarity_score: Mapped[float] = mapped_column(Float, nullable=False)
    confidence_level: Mapped[str] = mapped_column(String(20), nullable=False)  # auto_merge, manual_review, no_action
    detection_strategy: Mapped[str] = mapped_column(String(50), nullable=False)
    similarity_factors: Mapped[dict] = mapped_column(JSONType, default=dict)

    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, auto_merged, dismissed
    detected_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    resolved_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id_1", "entity_id_2", name="uq_duplicate_pair"),
        Index("idx_detections_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<DuplicateDetection {self.entity_id_1} ~ {self.entity_id_2} ({self.similarity_score:.2f})>"


class DuplicateCluster(Base):
    """A group of records that are all transitively similar."""
    __tablename__ = "duplicate_clusters"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    cluster_key: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_ids: Mapped[list] = mapped_column(JSONType, nullable=False)
    cluster_size: Mapped[int] = mapped_column(Integer, nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)

    status: Mapped[str] = mapped_column(String(20), default="active")  # active, merged
    master_entity_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    merge_history_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_clusters_type_status", "entity_type", "status"),
    )

    def __repr__(self) -> str:
        return f"<DuplicateCluster {self.id} size={self.cluster_size} ({self.status})>"


# =============================================================================
# Merge Audit Trail
# =============================================================================

class MergeHistoryEntry(Base):
    """
    Audit record for one merge.

    Rows are never deleted. Unmerge fills in the unmerge columns and sets
    `unmerged`, which is terminal.
    """
    __tablename__ = "merge_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    source_entity_ids: Mapped[list] = mapped_column(JSONType, nullable=False)
    target_entity_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    merge_strategy: Mapped[str] = mapped_column(String(50), nullable=False)
    conflict_strategy: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    merged_data_snapshot: Mapped[dict] = mapped_column(JSONType, nullable=False)
    resolutions: Mapped[dict] = mapped_column(JSONType, default=dict)
    merged_by: Mapped[str] = mapped_column(String(100), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    can_unmerge: Mapped[bool] = mapped_column(Boolean, default=True)
    unmerged: Mapped[bool] = mapped_column(Boolean, default=False)
    unmerged_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    unmerged_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    unmerge_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def __repr__(self) -> str:
        return f"<MergeHistoryEntry {self.id} -> {self.target_entity_id}>"


def init_db(bind: Optional[Engine] = None) -> None:
    """Create all tables."""
    Base.metadata.create_all(bind=bind or engine)
