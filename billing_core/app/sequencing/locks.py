"""Named cooperative locks used to serialize sequence assignment."""
from __future__ import annotations

import time
from contextlib import contextmanager
from threading import Lock
from typing import Callable, ContextManager, Dict, Iterator, List, Protocol

from psycopg2.extensions import connection as PgConnection

from .exceptions import LockTimeout


class NamedLockManager(Protocol):
    """Acquires a lock by name, waiting at most ``timeout_seconds``.

    The returned context manager raises :class:`LockTimeout` on entry when the
    wait is exhausted and releases the lock on every exit path.
    """

    def acquire(self, key: str, *, timeout_seconds: float) -> ContextManager[None]:
        ...


class InMemoryLockManager:
    """Process-local lock manager suitable for tests and local development."""

    def __init__(self) -> None:
        # key -> [lock, number of callers holding or waiting on it]
        self._locks: Dict[str, List] = {}
        self._guard = Lock()

    def _checkout(self, key: str) -> Lock:
        with self._guard:
            entry = self._locks.setdefault(key, [Lock(), 0])
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def tracked_keys(self) -> int:
        """Number of keys currently held or waited on."""

        with self._guard:
            return len(self._locks)

    @contextmanager
    def acquire(self, key: str, *, timeout_seconds: float) -> Iterator[None]:
        lock = self._checkout(key)
        try:
            if not lock.acquire(timeout=max(timeout_seconds, 0)):
                raise LockTimeout(key, timeout_seconds)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)


class PostgresAdvisoryLockManager:
    """Transaction-scoped PostgreSQL advisory locks.

    ``pg_try_advisory_xact_lock`` is polled until the deadline. The lock is
    held until the surrounding transaction on ``conn`` commits or rolls back,
    so exiting the context manager does not release it early.
    """

    def __init__(
        self,
        conn: PgConnection,
        *,
        poll_interval: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._conn = conn
        self._poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep

    def _try_lock(self, key: str) -> bool:
        with self._conn.cursor() as cursor:
            cursor.execute("SELECT pg_try_advisory_xact_lock(hashtext(%s))", (key,))
            row = cursor.fetchone()
        return bool(row and row[0])

    @contextmanager
    def acquire(self, key: str, *, timeout_seconds: float) -> Iterator[None]:
        deadline = self._clock() + timeout_seconds
        while not self._try_lock(key):
            if self._clock() >= deadline:
                raise LockTimeout(key, timeout_seconds)
            self._sleep(self._poll_interval)
        yield


__all__ = ["InMemoryLockManager", "NamedLockManager", "PostgresAdvisoryLockManager"]
