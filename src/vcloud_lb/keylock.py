"""Per-name mutual exclusion for load-balancer mutations.

Ensure, Update and Delete for the same service must not interleave, or two
concurrent passes can each read a pool, append members and overwrite the
other's update. The set of names is not known up front, so locks are created
on first use and kept for the life of the process (names are a small,
bounded set: one per LoadBalancer service).
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class KeyLockUsageError(RuntimeError):
    """Raised on unlock of a key that was never locked.

    This is a bug in the calling sequence and is not meant to be caught.
    """

    pass


class KeyLock:
    """Registry of named mutexes guarded by a master lock."""

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    def lock(self, key: str) -> None:
        """Block until ``key`` is exclusively held by the caller."""
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock

        # Waiting happens outside the registry lock
        lock.acquire()

    def unlock(self, key: str) -> None:
        """Release ``key``.

        Raises:
            KeyLockUsageError: If ``key`` was never locked.
        """
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                logger.critical("Unlock of unknown key", extra={"key": key})
                raise KeyLockUsageError(f"unlock of unknown keyLock {key}")
            lock.release()

    @contextmanager
    def held(self, key: str) -> Iterator[None]:
        """Hold ``key`` for the duration of a ``with`` block."""
        self.lock(key)
        try:
            yield
        finally:
            self.unlock(key)
