"""Gapless sequential id assignment guarded by named cooperative locks."""

from .exceptions import LockTimeout, SequenceError
from .generator import InMemorySequenceStore, SequenceGenerator, SequenceStore
from .locks import InMemoryLockManager, NamedLockManager, PostgresAdvisoryLockManager
from .models import SequenceScope

__all__ = [
    "InMemoryLockManager",
    "InMemorySequenceStore",
    "LockTimeout",
    "NamedLockManager",
    "PostgresAdvisoryLockManager",
    "SequenceError",
    "SequenceGenerator",
    "SequenceScope",
    "SequenceStore",
]
