"""Receipt-related Pydantic schemas."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import Field, field_validator

from .bridge import CrossChainStatusResponse
from .common import CamelModel, as_utc

CONTENT_HASH_PATTERN = r"^0x[0-9a-fA-F]{64}$"

ReceiptType = Literal["message", "meeting", "money"]


class ReceiptCreate(CamelModel):
    """Schema for anchoring a new receipt."""

    type: ReceiptType = Field(..., description="Kind of event the receipt proves")
    subject_id: str = Field(..., min_length=1, max_length=255)
    content_hash: str = Field(..., pattern=CONTENT_HASH_PATTERN)
    proof_blob: dict[str, Any] = Field(default_factory=dict)

    @field_validator("content_hash")
    @classmethod
    def _lowercase_hash(cls, value: str) -> str:
        return value.lower()


class ReceiptResponse(CamelModel):
    """Schema for receipt information returned by the API."""

    id: str
    type: str
    subject_id: str
    content_hash: str
    proof_blob: dict[str, Any]
    immutable_seq: int
    created_at: datetime
    created_by: str

    @field_validator("created_at")
    @classmethod
    def _utc_created_at(cls, value: datetime) -> datetime | None:
        return as_utc(value)


class ReceiptLookupResponse(CamelModel):
    """A receipt together with its relay state, if it has been relayed."""

    receipt: ReceiptResponse
    cross_chain_status: CrossChainStatusResponse | None = None
