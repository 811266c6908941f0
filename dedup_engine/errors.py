"""
Error types raised by the deduplication engine.

Scoring never raises for bad input; InputError is caught inside detection and
turned into "no match". Everything else surfaces to the caller unchanged.
"""

from dataclasses import dataclass


class DedupError(Exception):
    """Base class for all engine errors."""


class InputError(DedupError):
    """A record is malformed or missing identity fields."""


class NotFoundError(DedupError):
    """An entity, cluster or merge history id does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class ConflictStateError(DedupError):
    """The requested operation is not allowed in the current state."""


class StoreError(DedupError):
    """Persistence failed while reading or committing."""


@dataclass
class ItemError:
    """One failed item inside a batch run."""
    item_id: str
    error: str
    error_type: str = "DedupError"


class PartialBatchFailure(DedupError):
    """Some items of a batch failed; the rest completed."""

    def __init__(self, errors: list[ItemError], total: int):
        self.errors = errors
        self.total = total
        super().__init__(f"{len(errors)} of {total} batch items failed")
