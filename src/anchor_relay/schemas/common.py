"""Shared Pydantic configuration for API payloads."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from anchor_relay.db.time import ensure_utc


class CamelModel(BaseModel):
    """Base model that speaks camelCase on the wire and accepts snake_case."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from SQLite."""
    return ensure_utc(value) if value is not None else None
