"""
Group mutually-similar records into duplicate clusters.

Every unordered pair of same-type records is scored; pairs at or above the
cluster threshold become edges, and each connected component with two or more
members becomes a Cluster. Scoring may run in a thread pool; component
extraction always runs single-threaded over the finished edge list.
"""

import datetime as dt
import json
import threading
import uuid
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from loguru import logger

from dedup_engine.config import MatchSettings, get_match_config
from dedup_engine.deduplication.scoring import score
from dedup_engine.deduplication.types import Cluster, ClusterStatus, EntityRecord
from dedup_engine.errors import InputError
from dedup_engine.normalizers.dates import parse_datetime, utcnow

CLUSTER_KEY_DELIMITER = "|"


def cluster_key(entity_ids: Iterable[str]) -> str:
    """Order-independent key for a set of entity ids."""
    return CLUSTER_KEY_DELIMITER.join(sorted(entity_ids))


_EPOCH = dt.datetime.min.replace(tzinfo=dt.timezone.utc)


def _precedence(record: EntityRecord) -> tuple:
    """Most recently modified wins; equal timestamps fall back to content."""
    return (
        parse_datetime(record.last_modified) or _EPOCH,
        json.dumps(record.to_dict(), sort_keys=True, default=str),
    )


def connected_components(size: int, edges: Iterable[tuple[int, int]]) -> list[list[int]]:
    """
    Connected components of an undirected graph over nodes 0..size-1.

    Iterative depth-first search with an explicit stack, so component size is
    not limited by the recursion limit.
    """
    adjacency: list[list[int]] = [[] for _ in range(size)]
    for i, j in edges:
        adjacency[i].append(j)
        adjacency[j].append(i)

    visited = [False] * size
    components = []
    for start in range(size):
        if visited[start]:
            continue
        visited[start] = True
        stack = [start]
        component = []
        while stack:
            node = stack.pop()
            component.append(node)
            for neighbour in adjacency[node]:
                if not visited[neighbour]:
                    visited[neighbour] = True
                    stack.append(neighbour)
        components.append(sorted(component))
    return components


class ClusterBuilder:
    """
    Build duplicate clusters from a set of records.

    Args:
        config: Match configuration snapshot (current one per call if omitted)
        max_workers: Threads for pairwise scoring; 1 scores inline
    """

    def __init__(self, config: Optional[MatchSettings] = None, max_workers: int = 1):
        self.config = config
        self.max_workers = max_workers

    def _prepare(self, entities: Iterable) -> list[EntityRecord]:
        records: dict[str, EntityRecord] = {}
        for item in entities:
            try:
                record = EntityRecord.from_mapping(item)
            except InputError as e:
                logger.warning(f"Skipping malformed record during clustering: {e}")
                continue
            if not record.id:
                logger.warning("Skipping record without id during clustering")
                continue
            kept = records.get(record.id)
            if kept is not None:
                logger.warning(f"Repeated id {record.id} during clustering; keeping the most recent record")
                if _precedence(kept) >= _precedence(record):
                    continue
            records[record.id] = record
        return [records[i] for i in sorted(records)]

    @staticmethod
    def _score_row(
        records: list[EntityRecord],
        i: int,
        threshold: float,
        config: MatchSettings,
    ) -> list[tuple[int, int, float]]:
        edges = []
        left = records[i]
        for j in range(i + 1, len(records)):
            right = records[j]
            if left.entity_type != right.entity_type:
                continue
            similarity = score(left, right, config=config).overall
            if similarity >= threshold:
                edges.append((i, j, similarity))
        return edges

    def build_clusters(
        self,
        entities: Iterable,
        threshold: Optional[float] = None,
        config: Optional[MatchSettings] = None,
        max_workers: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[Cluster]:
        """
        Cluster `entities` by pairwise similarity.

        Records are scored in id order so the result does not depend on input
        order. Records without an id and repeated ids are skipped.

        Args:
            entities: Records or loose mappings
            threshold: Edge threshold (cluster_threshold by default)
            config: Match configuration snapshot
            max_workers: Override the builder's scoring thread count
            cancel_event: When set, stop scoring and return no clusters

        Returns:
            Clusters of two or more members, highest confidence first
        """
        config = config or self.config or get_match_config()
        threshold = config.cluster_threshold if threshold is None else threshold
        workers = max_workers or self.max_workers

        records = self._prepare(entities)
        if len(records) < 2:
            return []

        edges: list[tuple[int, int, float]] = []
        rows = range(len(records) - 1)
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [executor.submit(self._score_row, records, i, threshold, config) for i in rows]
                for future in futures:
                    if cancel_event is not None and cancel_event.is_set():
                        for pending in futures:
                            pending.cancel()
                        logger.warning("Clustering cancelled")
                        return []
                    edges.extend(future.result())
        else:
            for i in rows:
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning("Clustering cancelled")
                    return []
                edges.extend(self._score_row(records, i, threshold, config))

        weights = {(i, j): w for i, j, w in edges}
        components = connected_components(len(records), weights)

        now = utcnow()
        clusters = []
        for component in components:
            if len(component) < 2:
                continue
            members = set(component)
            component_weights = [w for (i, j), w in weights.items() if i in members]
            ids = [records[i].id for i in component]
            clusters.append(Cluster(
                cluster_id=str(uuid.uuid4()),
                cluster_key=cluster_key(ids),
                entity_ids=sorted(ids),
                confidence_score=sum(component_weights) / len(component_weights),
                status=ClusterStatus.ACTIVE,
                entity_type=records[component[0]].entity_type,
                created_at=now,
            ))

        clusters.sort(key=lambda c: (-c.confidence_score, c.cluster_key))
        logger.info(
            f"Built {len(clusters)} clusters from {len(records)} records "
            f"({len(edges)} edges at threshold {threshold:.2f})"
        )
        return clusters
