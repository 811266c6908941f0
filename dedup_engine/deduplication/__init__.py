"""
Duplicate detection, clustering and merging.

These modules decide whether records denote the same real-world thing and
consolidate them into one master record with an audit trail.
"""

from .audit import export_merge_history
from .auto_merge import AutoMergeOrchestrator, BatchMergeResult
from .clustering import ClusterBuilder
from .conflicts import ConflictResolutionStrategy, detect_conflicts, resolve_conflicts
from .detector import BatchDetectionResult, DuplicateDetector
from .merge import MergeExecutor, MergeOptions, MergePreview, MergeResult, MergeStrategy, UnmergeResult
from .quality import quality_score
from .scoring import score

__all__ = [
    'AutoMergeOrchestrator',
    'BatchDetectionResult',
    'BatchMergeResult',
    'ClusterBuilder',
    'ConflictResolutionStrategy',
    'DuplicateDetector',
    'MergeExecutor',
    'MergeOptions',
    'MergePreview',
    'MergeResult',
    'MergeStrategy',
    'UnmergeResult',
    'detect_conflicts',
    'export_merge_history',
    'quality_score',
    'resolve_conflicts',
    'score',
]
