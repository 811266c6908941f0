"""
In-process locks serializing merge and unmerge per entity group.

Locks are taken in sorted id order so two operations over overlapping groups
cannot deadlock. Entries are reference-counted and dropped when the last
holder releases them, so the table does not grow with every id ever merged.
"""

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from loguru import logger


class _LockEntry:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = threading.Lock()
        self.refs = 0


class EntityLockManager:
    """Per-entity locks shared by every MergeExecutor in the process."""

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: dict[str, _LockEntry] = {}

    def _checkout(self, entity_id: str) -> _LockEntry:
        with self._guard:
            entry = self._entries.get(entity_id)
            if entry is None:
                entry = self._entries[entity_id] = _LockEntry()
            entry.refs += 1
            return entry

    def _checkin(self, entity_id: str) -> None:
        with self._guard:
            entry = self._entries[entity_id]
            entry.refs -= 1
            if entry.refs == 0:
                del self._entries[entity_id]

    @contextmanager
    def hold(self, entity_ids: Iterable[str]) -> Iterator[list[str]]:
        """
        Hold the locks of every id in `entity_ids` for the duration of the block.

        Yields the sorted, de-duplicated ids that were locked.
        """
        ids = sorted({str(i) for i in entity_ids if i})
        acquired: list[tuple[str, _LockEntry]] = []
        try:
            for entity_id in ids:
                entry = self._checkout(entity_id)
                try:
                    entry.lock.acquire()
                except BaseException:
                    self._checkin(entity_id)
                    raise
                acquired.append((entity_id, entry))
            logger.debug(f"Locked entity group {ids}")
            yield ids
        finally:
            for entity_id, entry in reversed(acquired):
                entry.lock.release()
                self._checkin(entity_id)

    def active_count(self) -> int:
        """Number of ids currently checked out."""
        with self._guard:
            return len(self._entries)


# Process-wide default
entity_locks = EntityLockManager()
