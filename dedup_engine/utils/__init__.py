"""
Utility modules for the deduplication engine.
"""

from dedup_engine.utils.logging import setup_logging

__all__ = [
    "setup_logging",
]
