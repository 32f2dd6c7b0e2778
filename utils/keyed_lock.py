"""
Per-key mutual exclusion.

Serializes read-check-write sequences that touch the same thread or
shipment while letting unrelated keys proceed in parallel.
"""

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class KeyedLock:
    """
    Map of reference-counted locks, one per key.

    An entry exists only while some caller holds or waits on it, so the
    map never grows past the number of keys in flight.

    Usage:
        locks = KeyedLock()
        with locks.hold(("thread", thread_id)):
            ...
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.holders += 1

        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def is_held(self, key: Hashable) -> bool:
        with self._guard:
            return key in self._entries
