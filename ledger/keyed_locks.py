"""
Per-key mutexes for position mutations.

Trades on the same (agent, pool, side) queue behind one lock; trades on
disjoint keys never contend. SQLite's BEGIN IMMEDIATE is the cross-process
guard, this registry keeps in-process threads from spinning on busy_timeout.
"""

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator


class KeyedLockRegistry:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}

    def lock_for(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: Hashable) -> Iterator[None]:
        """Acquire every key in a stable order, release in reverse."""
        ordered = sorted(set(keys), key=repr)
        acquired = []
        try:
            for key in ordered:
                lock = self.lock_for(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
