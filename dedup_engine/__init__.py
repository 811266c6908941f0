"""
Entity deduplication engine.

Similarity scoring, duplicate detection, clustering and reversible merging
of business records (deals, vendors, contacts).
"""

from dedup_engine.utils import setup_logging  # noqa: F401  installs log sinks unless DISABLE_LOGGING=1

__version__ = "0.1.0"
