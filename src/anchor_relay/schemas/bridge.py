"""Bridge relay Pydantic schemas."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, Field, field_validator

from anchor_relay.services.chains import SUPPORTED_CHAINS, TargetChain, is_supported_chain

from .common import CamelModel, as_utc


class RelayRequest(CamelModel):
    """Schema for relaying a receipt to one or more target chains."""

    receipt_id: str = Field(..., min_length=1)
    target_chains: list[TargetChain] = Field(..., min_length=1)
    metadata: dict[str, Any] | None = None

    @field_validator("target_chains", mode="before")
    @classmethod
    def _check_chains(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        names = [str(item).strip().lower() for item in value]
        unsupported = [name for name in names if not is_supported_chain(name)]
        if unsupported:
            raise ValueError(
                f"Unsupported target chain(s): {', '.join(unsupported)}. "
                f"Supported chains: {', '.join(SUPPORTED_CHAINS)}"
            )
        # Each chain gets at most one job per request.
        return list(dict.fromkeys(names))


class BridgeJobResponse(CamelModel):
    """Schema for a bridge job returned by the API."""

    id: str
    receipt_id: str
    doc_hash: str
    source_chain: str
    target_chain: str
    status: str
    tx_hash: str | None = None
    block_number: int | None = None
    confirmations: int
    required_confirmations: int
    attempts: int
    max_attempts: int
    last_error: str | None = None
    failure_stage: str | None = None
    # ORM rows expose the JSON column as ``metadata_``.
    metadata: dict[str, Any] | None = Field(
        default=None,
        validation_alias=AliasChoices("metadata_", "metadata"),
        serialization_alias="metadata",
    )
    version: int
    created_at: datetime
    updated_at: datetime
    confirmed_at: datetime | None = None

    @field_validator("created_at", "updated_at", "confirmed_at")
    @classmethod
    def _utc_timestamps(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class RelayResponse(CamelModel):
    """Jobs created by a relay request."""

    receipt_id: str
    doc_hash: str
    jobs: list[BridgeJobResponse]


class ChainStatusResponse(CamelModel):
    """Relay state on a single chain."""

    job_id: str
    status: str
    tx_hash: str | None = None
    confirmations: int
    required_confirmations: int
    last_error: str | None = None
    updated_at: datetime

    @field_validator("updated_at")
    @classmethod
    def _utc_updated_at(cls, value: datetime) -> datetime | None:
        return as_utc(value)


class CrossChainStatusResponse(CamelModel):
    """Relay state of a document hash across chains."""

    doc_hash: str
    overall_status: str
    chains: dict[str, ChainStatusResponse] = Field(default_factory=dict)


class RelayStatusResponse(CamelModel):
    """Completion summary for a receipt."""

    receipt_id: str
    status: str
    completed: bool
    completed_chains: list[str]
    pending_chains: list[str]
    failed_chains: list[str]


class ChainStatsResponse(CamelModel):
    """Per-chain relay counters."""

    total: int
    confirmed: int
    failed: int
    pending: int
    average_confirmation_seconds: float | None = None


class MonitorStatsResponse(CamelModel):
    """Relay counters across every chain."""

    total_relays: int
    successful_relays: int
    failed_relays: int
    pending_relays: int
    chains: dict[str, ChainStatsResponse] = Field(default_factory=dict)
