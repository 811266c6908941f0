# SPDX-License-Identifier: MIT
"""Tests for entity-group locks."""

import threading
import time

import pytest

from dedup_engine.locking import EntityLockManager


class TestEntityLockManager:
    """Test EntityLockManager.hold()."""

    def test_yields_sorted_unique_ids(self):
        locks = EntityLockManager()
        with locks.hold(["b", "a", "b", None]) as ids:
            assert ids == ["a", "b"]
            assert locks.active_count() == 2
        assert locks.active_count() == 0

    def test_released_on_error(self):
        locks = EntityLockManager()
        with pytest.raises(RuntimeError):
            with locks.hold(["a"]):
                raise RuntimeError("boom")
        assert locks.active_count() == 0
        with locks.hold(["a"]):
            pass

    def test_overlapping_groups_serialize(self):
        """Groups sharing an id never run at the same time."""
        locks = EntityLockManager()
        inside = []
        overlap = []

        def worker(group):
            with locks.hold(group):
                if inside:
                    overlap.append(group)
                inside.append(group)
                time.sleep(0.02)
                inside.remove(group)

        threads = [threading.Thread(target=worker, args=(g,)) for g in (["a", "b"], ["b", "c"], ["c", "a"])]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert overlap == []

    def test_disjoint_groups_run_concurrently(self):
        """Disjoint groups do not block each other."""
        locks = EntityLockManager()
        entered = threading.Event()
        done = threading.Event()

        def holder():
            with locks.hold(["a"]):
                entered.set()
                done.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        entered.wait(5)
        with locks.hold(["b"]):
            done.set()
        thread.join()
