"""Data access helpers for anchored receipts."""
from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from anchor_relay.models.receipt import Receipt

__all__ = ["ReceiptRepository"]


class ReceiptRepository:
    """Read and insert access to receipts. Receipts are never updated."""

    def __init__(self, session: Session) -> None:
        """Initialize the repository with a SQLAlchemy session."""
        self.session = session

    def get(self, receipt_id: str) -> Receipt | None:
        """Return a receipt by identifier."""
        return self.session.get(Receipt, receipt_id)

    def get_by_content_hash(self, content_hash: str) -> Receipt | None:
        """Return the earliest receipt anchoring ``content_hash``."""
        result = self.session.execute(
            select(Receipt)
            .where(func.lower(Receipt.content_hash) == content_hash.lower())
            .order_by(Receipt.created_at.asc())
            .limit(1)
        )
        return result.scalars().first()

    def find(self, hash_or_id: str) -> Receipt | None:
        """Resolve a receipt by content hash first, then by id."""
        return self.get_by_content_hash(hash_or_id) or self.get(hash_or_id)

    def last_seq(self, subject_id: str) -> int:
        """Return the highest sequence number used for ``subject_id`` (0 if none)."""
        value = self.session.execute(
            select(func.max(Receipt.immutable_seq)).where(Receipt.subject_id == subject_id)
        ).scalar()
        return int(value or 0)

    def create(
        self,
        *,
        receipt_type: str,
        subject_id: str,
        content_hash: str,
        proof_blob: dict[str, Any],
        immutable_seq: int,
        created_by: str,
    ) -> Receipt:
        """Insert a new receipt and return the persisted ORM instance."""
        receipt = Receipt(
            type=receipt_type,
            subject_id=subject_id,
            content_hash=content_hash,
            proof_blob=proof_blob,
            immutable_seq=immutable_seq,
            created_by=created_by,
        )
        self.session.add(receipt)
        self.session.flush()
        return receipt
