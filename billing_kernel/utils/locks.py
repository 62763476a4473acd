"""
Keyed in-process locks.

One writer per entity key: queue workers hold the lock for a processor
subscription id while applying its events, and administrative operations
hold the lock for their idempotency key across the commit.  Cross-process
exclusion still comes from the database (row locks, unique constraints).
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class KeyedLocks:
    """Registry of reentrant locks, one per key, released when unused."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        self._holders: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.RLock())
            self._holders[key] = self._holders.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._holders[key] -= 1
                if self._holders[key] == 0:
                    del self._holders[key]
                    del self._locks[key]

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)
