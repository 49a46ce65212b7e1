"""Receipt anchoring and lookup."""
from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from anchor_relay.models.operator import Operator
from anchor_relay.models.receipt import Receipt
from anchor_relay.repositories.receipt_repo import ReceiptRepository
from anchor_relay.schemas.receipt import ReceiptCreate

__all__ = ["ReceiptSequenceConflict", "anchor_receipt", "find_receipt"]

logger = logging.getLogger(__name__)


class ReceiptSequenceConflict(RuntimeError):
    """Raised when another receipt took the same sequence number first."""


def anchor_receipt(db: Session, operator: Operator, data: ReceiptCreate) -> Receipt:
    """Persist a receipt with the next sequence number of its subject."""
    repo = ReceiptRepository(db)
    next_seq = repo.last_seq(data.subject_id) + 1
    try:
        receipt = repo.create(
            receipt_type=data.type,
            subject_id=data.subject_id,
            content_hash=data.content_hash,
            proof_blob=data.proof_blob,
            immutable_seq=next_seq,
            created_by=operator.id,
        )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ReceiptSequenceConflict(
            f"Sequence {next_seq} for subject {data.subject_id!r} is already taken"
        ) from exc

    db.refresh(receipt)
    logger.info(
        "Anchored %s receipt %s for %s at seq %d",
        receipt.type,
        receipt.id,
        receipt.subject_id,
        receipt.immutable_seq,
    )
    return receipt


def find_receipt(db: Session, hash_or_id: str) -> Receipt | None:
    """Return the receipt with this content hash, or with this id."""
    return ReceiptRepository(db).find(hash_or_id)
