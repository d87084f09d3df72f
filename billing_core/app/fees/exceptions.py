"""Custom exceptions raised by fee persistence."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional


@dataclass
class FeeValidationError(ValueError):
    """A fee violated a data constraint and was not persisted."""

    code: str
    message: str
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def payload(self) -> Dict[str, Any]:
        """Serialized representation suitable for a failure result."""

        base_detail: Dict[str, Any] = {"error": self.code}
        if self.detail:
            base_detail.update(self.detail)
        return base_detail
