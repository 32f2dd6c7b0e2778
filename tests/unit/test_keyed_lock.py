"""
Unit tests for KeyedLock.

Run: pytest tests/unit/test_keyed_lock.py -v
"""

import threading
import time

import pytest

from utils.keyed_lock import KeyedLock


class TestKeyedLockExclusion:
    """Same key serializes, different keys don't."""

    def test_same_key_is_exclusive(self):
        """Two holders of one key never overlap."""
        locks = KeyedLock()
        active = []
        overlaps = []

        def worker():
            with locks.hold(("thread", "t-1")):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
                time.sleep(0.01)
                active.pop()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []

    def test_different_keys_run_in_parallel(self):
        """Holding one key does not block another."""
        locks = KeyedLock()
        entered = threading.Event()

        def other():
            with locks.hold(("shipment", "s-2")):
                entered.set()

        with locks.hold(("shipment", "s-1")):
            t = threading.Thread(target=other)
            t.start()
            assert entered.wait(timeout=1)
            t.join()


class TestKeyedLockCleanup:
    """Entries disappear once nobody holds or waits on them."""

    def test_entry_removed_after_release(self):
        locks = KeyedLock()

        with locks.hold("k"):
            assert locks.is_held("k")
            assert len(locks) == 1

        assert not locks.is_held("k")
        assert len(locks) == 0

    def test_entry_removed_when_body_raises(self):
        """Lock is released and entry dropped on exceptions."""
        locks = KeyedLock()

        with pytest.raises(RuntimeError):
            with locks.hold("k"):
                raise RuntimeError("boom")

        assert len(locks) == 0
        # Re-acquirable, so it was released
        with locks.hold("k"):
            pass

    def test_many_keys_do_not_leak(self):
        locks = KeyedLock()

        for i in range(100):
            with locks.hold(("thread", str(i))):
                pass

        assert len(locks) == 0
