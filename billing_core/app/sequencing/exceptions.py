"""Errors raised while assigning sequential identifiers."""
from __future__ import annotations


class LockTimeout(TimeoutError):
    """A named lock could not be acquired within the allotted time."""

    def __init__(self, key: str, timeout_seconds: float) -> None:
        self.key = key
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Timed out after {timeout_seconds}s waiting for lock {key!r}")


class SequenceError(RuntimeError):
    """No sequential id could be assigned; the current operation must fail."""
