# src/anchor_relay/models/receipt.py
"""SQLAlchemy model for anchored receipts."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from anchor_relay.db.session import Base
from anchor_relay.db.time import utcnow

RECEIPT_TYPES = ("message", "meeting", "money")


class Receipt(Base):
    """Immutable record proving that an event was anchored.

    Rows are written once by the anchoring endpoint and never updated.
    """

    __tablename__ = "receipt"
    __table_args__ = (
        UniqueConstraint("subject_id", "immutable_seq", name="uq_receipt_subject_seq"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    subject_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    content_hash: Mapped[str] = mapped_column(String(66), nullable=False, index=True)
    proof_blob: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    # Monotonic per subject; orders receipts of the same subject.
    immutable_seq: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    created_by: Mapped[str] = mapped_column(
        String(36), ForeignKey("operator.id"), nullable=False
    )
