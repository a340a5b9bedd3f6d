"""Per-key serialization for daily submission records."""
import threading
from contextlib import contextmanager


class KeyedLock:
    """
    One re-entrant lock per key, e.g. (user_id, date).

    Holds locks only within this process; row locks from
    lock_for_update() cover other workers. A key's lock is dropped once
    its last holder releases it.

    Async handlers share one thread, so the re-entrant lock does not
    exclude them from each other. Code inside hold() must not await.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}
        self._holders = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _acquire_ref(self, key) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            self._holders[key] = self._holders.get(key, 0) + 1
            return lock

    def _release_ref(self, key) -> None:
        with self._guard:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key):
        lock = self._acquire_ref(key)
        try:
            with lock:
                yield
        finally:
            self._release_ref(key)


def lock_for_update(query):
    """
    Apply row-level locking for state transitions.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


# Shared by every service instance in this process
submission_locks = KeyedLock()
