"""
Batch merging of high-confidence duplicate clusters.

Each cluster is merged in its own transaction; a failing cluster is recorded
and the run moves on. Cancellation is checked between clusters, never inside
a merge.
"""

import datetime as dt
import threading
from dataclasses import dataclass, field
from typing import Optional

from loguru import logger

from dedup_engine.config import MatchSettings, get_match_config
from dedup_engine.deduplication.conflicts import ConflictResolutionStrategy
from dedup_engine.deduplication.merge import MergeExecutor, MergeOptions, MergeResult, MergeStrategy
from dedup_engine.deduplication.types import ClusterStatus, EntityType
from dedup_engine.errors import ItemError, PartialBatchFailure
from dedup_engine.normalizers.dates import utcnow

AUTO_MERGE_USER = "auto-merge-system"


@dataclass
class BatchMergeResult:
    """Outcome of an auto-merge run."""
    success: bool = True
    dry_run: bool = True
    total_clusters: int = 0
    merged_clusters: int = 0
    failed_clusters: int = 0
    cancelled: bool = False
    merge_results: list[MergeResult] = field(default_factory=list)
    errors: list[ItemError] = field(default_factory=list)
    timestamp: Optional[dt.datetime] = None

    def raise_for_errors(self) -> None:
        """Raise PartialBatchFailure if any cluster failed."""
        if self.errors:
            raise PartialBatchFailure(self.errors, self.total_clusters)


class AutoMergeOrchestrator:
    """
    Merge every active cluster whose confidence clears the auto-merge threshold.

    Args:
        store: EntityStore holding clusters and records
        executor: MergeExecutor to run merges with (built on `store` if omitted)
        config: Match configuration snapshot (current one per call if omitted)
    """

    def __init__(self, store, executor: Optional[MergeExecutor] = None, config: Optional[MatchSettings] = None):
        self.store = store
        self.executor = executor or MergeExecutor(store, config=config)
        self.config = config

    def auto_merge(
        self,
        threshold: Optional[float] = None,
        dry_run: bool = True,
        entity_type: EntityType = EntityType.DEAL,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchMergeResult:
        """
        Merge eligible clusters, highest confidence first.

        Args:
            threshold: Minimum cluster confidence (auto_merge_threshold by default)
            dry_run: Only count eligible clusters; nothing is written
            entity_type: Entity type whose clusters are merged
            cancel_event: When set, stop before the next cluster

        Returns:
            BatchMergeResult with per-cluster results and errors
        """
        config = self.config or get_match_config()
        threshold = config.auto_merge_threshold if threshold is None else threshold

        clusters = self.store.list_clusters(
            entity_type=entity_type,
            status=ClusterStatus.ACTIVE,
            min_confidence=threshold,
        )
        result = BatchMergeResult(dry_run=dry_run, total_clusters=len(clusters), timestamp=utcnow())

        if dry_run:
            logger.info(f"Auto-merge dry run: {len(clusters)} clusters at or above {threshold:.2f}")
            return result

        options = MergeOptions(
            merge_strategy=MergeStrategy.QUALITY,
            conflict_resolution=ConflictResolutionStrategy.PREFER_VALIDATED,
            merged_by=AUTO_MERGE_USER,
            notes=f"Automatic merge at confidence >= {threshold:.2f}",
        )

        for index, cluster in enumerate(clusters, 1):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Auto-merge cancelled after {index - 1} of {len(clusters)} clusters")
                result.cancelled = True
                break

            try:
                merge = self.executor.merge_cluster(cluster.cluster_id, options=options)
                result.merge_results.append(merge)
                result.merged_clusters += 1
                logger.debug(f"[{index}/{len(clusters)}] Merged cluster {cluster.cluster_id}")
            except Exception as e:
                result.failed_clusters += 1
                result.errors.append(ItemError(cluster.cluster_id, str(e), type(e).__name__))
                logger.error(f"[{index}/{len(clusters)}] Auto-merge of cluster {cluster.cluster_id} failed: {e}")

        result.success = result.failed_clusters == 0
        logger.info(
            f"Auto-merge complete: {result.merged_clusters} merged, "
            f"{result.failed_clusters} failed of {result.total_clusters} clusters"
        )
        return result
