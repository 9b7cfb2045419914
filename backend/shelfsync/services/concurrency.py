# Overview: Concurrency primitives for the sync engine; keyed locks and DB retry helpers.

from __future__ import annotations

import threading
import time
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


class KeyedLock:
    """
    One mutex per key (e.g. "device:e10000031c76"), created on demand.

    Serializes conflicting operations on the same entity inside one process
    while unrelated entities proceed in parallel. Entries are reference
    counted and dropped when the last holder releases, so the table does
    not grow with every MAC ever seen.

    Cross-process exclusion is provided separately by conditional UPDATE
    claims on the sync_queue table.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [lock, refcount]

    def _acquire_entry(self, key: str):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry

    def _release_entry(self, key: str, entry) -> None:
        with self._guard:
            entry[1] -= 1
            if entry[1] == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    @contextmanager
    def hold(self, key: str, *, timeout: float | None = None):
        """
        Hold the lock for `key` for the duration of the block.

        With a timeout, raises TimeoutError if the lock is not acquired in time.
        """
        entry = self._acquire_entry(key)
        lock = entry[0]
        acquired = lock.acquire(timeout=timeout) if timeout is not None else lock.acquire()
        if not acquired:
            self._release_entry(key, entry)
            raise TimeoutError(f"Timed out waiting for lock on {key}")
        try:
            yield
        finally:
            lock.release()
            self._release_entry(key, entry)

    def is_held(self, key: str) -> bool:
        with self._guard:
            entry = self._locks.get(key)
            return entry is not None and entry[0].locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Process-wide registry shared by binding_service and sync_queue_service
entity_locks = KeyedLock()


def entity_key(entity_type: str, entity_id) -> str:
    return f"{entity_type}:{entity_id}"


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on lock contention.

    Retries on OperationalError ("database is locked", deadlocks) and
    StaleDataError. The session is rolled back between attempts.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError):
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))

