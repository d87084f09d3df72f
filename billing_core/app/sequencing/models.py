"""Models describing where a gapless sequence applies."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class SequenceScope(BaseModel):
    """Grouping key within which sequential ids must be contiguous."""

    entity: str = Field(min_length=1, description="Record type, e.g. ``invoice``")
    owner_id: str = Field(min_length=1, description="Owning entity, e.g. an organization id")

    model_config = ConfigDict(frozen=True)

    @property
    def lock_key(self) -> str:
        return f"{self.entity}_lock:{self.owner_id}"
