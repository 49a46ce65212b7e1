# src/anchor_relay/models/bridge_job.py
"""SQLAlchemy model for per-chain relay jobs and their state machine."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from anchor_relay.db.session import Base
from anchor_relay.db.time import utcnow

JOB_STATUS_PENDING = "pending"
JOB_STATUS_SUBMITTING = "submitting"
JOB_STATUS_PENDING_CONFIRMATION = "pending-confirmation"
JOB_STATUS_CONFIRMED = "confirmed"
JOB_STATUS_FAILED = "failed"
JOB_STATUS_TIMEOUT = "timeout"
JOB_STATUS_CANCELLED = "cancelled"

JOB_STATUSES = (
    JOB_STATUS_PENDING,
    JOB_STATUS_SUBMITTING,
    JOB_STATUS_PENDING_CONFIRMATION,
    JOB_STATUS_CONFIRMED,
    JOB_STATUS_FAILED,
    JOB_STATUS_TIMEOUT,
    JOB_STATUS_CANCELLED,
)

TERMINAL_STATUSES = frozenset(
    {JOB_STATUS_CONFIRMED, JOB_STATUS_FAILED, JOB_STATUS_TIMEOUT, JOB_STATUS_CANCELLED}
)
ACTIVE_STATUSES = frozenset(set(JOB_STATUSES) - TERMINAL_STATUSES)

# Statuses a job may move to from each non-terminal status. Terminal statuses
# have no entry: nothing leaves them.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    JOB_STATUS_PENDING: frozenset({JOB_STATUS_SUBMITTING, JOB_STATUS_CANCELLED}),
    JOB_STATUS_SUBMITTING: frozenset(
        {
            JOB_STATUS_SUBMITTING,
            JOB_STATUS_PENDING_CONFIRMATION,
            JOB_STATUS_FAILED,
            JOB_STATUS_CANCELLED,
        }
    ),
    JOB_STATUS_PENDING_CONFIRMATION: frozenset(
        {
            JOB_STATUS_PENDING_CONFIRMATION,
            JOB_STATUS_CONFIRMED,
            JOB_STATUS_FAILED,
            JOB_STATUS_TIMEOUT,
            JOB_STATUS_CANCELLED,
        }
    ),
}

FAILURE_STAGE_SUBMISSION = "submission"
FAILURE_STAGE_CONFIRMATION = "confirmation"


def sources_for(target_status: str) -> frozenset[str]:
    """Return every status from which ``target_status`` may be reached."""
    return frozenset(
        source for source, targets in ALLOWED_TRANSITIONS.items() if target_status in targets
    )


class BridgeJob(Base):
    """Work item for relaying one receipt to one target chain.

    Rows are never deleted; terminal jobs remain as an audit trail.
    """

    __tablename__ = "bridge_job"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    receipt_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("receipt.id"), nullable=False, index=True
    )
    # Denormalized from the receipt for status lookups by hash.
    doc_hash: Mapped[str] = mapped_column(String(66), nullable=False, index=True)
    source_chain: Mapped[str] = mapped_column(String(32), nullable=False, default="base")
    target_chain: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=JOB_STATUS_PENDING, index=True
    )
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    block_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    required_confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=12)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_stage: Mapped[str | None] = mapped_column(String(16), nullable=True)
    # Column is named "metadata" in the database; the attribute avoids
    # shadowing DeclarativeBase.metadata.
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    # Bumped on every write; used for compare-and-set updates.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        """Return True when no further transition is allowed."""
        return self.status in TERMINAL_STATUSES
