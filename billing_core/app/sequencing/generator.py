"""Gapless sequential id assignment."""
from __future__ import annotations

import logging
import threading
from contextlib import ExitStack, contextmanager
from typing import ContextManager, Dict, Iterator, List, Optional, Protocol, Set, Tuple, TypeVar

from pydantic import BaseModel

from .exceptions import LockTimeout, SequenceError
from .locks import NamedLockManager
from .models import SequenceScope

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_SECONDS = 10.0

RecordT = TypeVar("RecordT", bound=BaseModel)


class SequenceStore(Protocol):
    """Read access to the sequential ids already assigned within a scope.

    Values passed to :meth:`record` belong to the innermost open
    :meth:`transaction` and are forgotten when that block raises.
    """

    def transaction(self) -> ContextManager[None]:
        ...

    def max_sequential_id(self, scope: SequenceScope) -> int:
        ...

    def exists(self, scope: SequenceScope, value: int) -> bool:
        ...

    def record(self, scope: SequenceScope, value: int) -> None:
        """Note ``value`` as taken before the lock is released."""


class InMemorySequenceStore:
    """Keeps assigned ids in process memory; for tests and local development."""

    def __init__(self, assigned: Optional[Dict[Tuple[str, str], Set[int]]] = None) -> None:
        self._assigned: Dict[Tuple[str, str], Set[int]] = assigned if assigned is not None else {}
        self._guard = threading.Lock()
        self._local = threading.local()

    def _pending(self) -> List[List[Tuple[Tuple[str, str], int]]]:
        stack = getattr(self._local, "pending", None)
        if stack is None:
            stack = []
            self._local.pending = stack
        return stack

    @contextmanager
    def transaction(self) -> Iterator[None]:
        stack = self._pending()
        recorded: List[Tuple[Tuple[str, str], int]] = []
        stack.append(recorded)
        try:
            yield
        except Exception:
            stack.pop()
            with self._guard:
                for key, value in recorded:
                    self._assigned.get(key, set()).discard(value)
            raise
        stack.pop()
        if stack:
            stack[-1].extend(recorded)

    def _values(self, scope: SequenceScope) -> Set[int]:
        with self._guard:
            return set(self._assigned.get((scope.entity, scope.owner_id), set()))

    def max_sequential_id(self, scope: SequenceScope) -> int:
        return max(self._values(scope), default=0)

    def exists(self, scope: SequenceScope, value: int) -> bool:
        return value in self._values(scope)

    def record(self, scope: SequenceScope, value: int) -> None:
        key = (scope.entity, scope.owner_id)
        with self._guard:
            self._assigned.setdefault(key, set()).add(value)
        stack = self._pending()
        if stack:
            stack[-1].append((key, value))


class SequenceGenerator:
    """Assigns the next integer of a contiguous series per scope.

    A named lock keyed by the scope serializes callers. Scopes with different
    keys never contend with each other.
    """

    def __init__(
        self,
        store: SequenceStore,
        lock_manager: NamedLockManager,
        *,
        timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
    ) -> None:
        if timeout_seconds < 0:
            raise ValueError("timeout_seconds must be >= 0")
        self._store = store
        self._lock_manager = lock_manager
        self._timeout_seconds = timeout_seconds
        self._local = threading.local()

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def _held_keys(self) -> Set[str]:
        held = getattr(self._local, "held", None)
        if held is None:
            held = set()
            self._local.held = held
        return held

    @contextmanager
    def _locked(self, scope: SequenceScope) -> Iterator[None]:
        held = self._held_keys()
        if scope.lock_key in held:
            yield
            return
        with ExitStack() as stack:
            try:
                stack.enter_context(
                    self._lock_manager.acquire(scope.lock_key, timeout_seconds=self._timeout_seconds)
                )
            except LockTimeout as exc:
                logger.warning("Unable to acquire sequence lock %s: %s", scope.lock_key, exc)
                raise SequenceError("Unable to acquire lock on the database") from exc
            held.add(scope.lock_key)
            try:
                yield
            finally:
                held.discard(scope.lock_key)

    @contextmanager
    def reserve(self, scope: SequenceScope) -> Iterator[None]:
        """Keep the scope locked while a numbered record is written.

        Values handed out inside the block are given back when it raises, so
        a failed insert does not leave a hole in the series.
        """

        with self._store.transaction():
            with self._locked(scope):
                yield

    def next_value(self, scope: SequenceScope) -> int:
        with self.reserve(scope):
            value = self._store.max_sequential_id(scope) + 1
            while self._store.exists(scope, value):
                logger.debug("Sequential id %s already taken in %s", value, scope.lock_key)
                value += 1
            self._store.record(scope, value)
        return value

    def ensure_sequential_id(self, record: RecordT, scope: SequenceScope) -> RecordT:
        """Return ``record`` numbered, leaving an existing number untouched."""

        if getattr(record, "sequential_id", None) is not None:
            return record
        return record.model_copy(update={"sequential_id": self.next_value(scope)})


__all__ = [
    "DEFAULT_LOCK_TIMEOUT_SECONDS",
    "InMemorySequenceStore",
    "SequenceGenerator",
    "SequenceStore",
]
