from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


SYSTEM_FIELDS = ("id", "created_at")


class Row(BaseModel):
    """
    One record of a local table, serialized as a JSON object.

    Fields
    - id: opaque unique identifier assigned at insertion (never changes).
    - created_at: ISO-8601 timestamp assigned at insertion (never changes).
    - anything else: caller-defined and carried through untouched; the store
      never interprets these values (they are usually encryption envelopes).
    """

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1, description="Opaque row identifier")
    created_at: str = Field(..., description="ISO-8601 insertion timestamp")

    def fields(self) -> Dict[str, Any]:
        """Caller-defined fields only (system fields stripped)."""
        return {k: v for k, v in self.to_dict().items() if k not in SYSTEM_FIELDS}

    def created(self) -> datetime:
        return datetime.fromisoformat(self.created_at.replace("Z", "+00:00"))

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class Child(Row):
    """A subject of logging, stored in the reserved "children" table."""

    name: str
