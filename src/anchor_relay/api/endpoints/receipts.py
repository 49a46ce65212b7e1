# src/anchor_relay/api/endpoints/receipts.py
"""Receipt anchoring and lookup endpoints."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from anchor_relay.api.dependencies import AdminContextDep, SessionDep
from anchor_relay.repositories.bridge_job_repo import BridgeJobRepository
from anchor_relay.schemas.bridge import CrossChainStatusResponse
from anchor_relay.schemas.receipt import ReceiptCreate, ReceiptLookupResponse, ReceiptResponse
from anchor_relay.services.monitor import get_cross_chain_status
from anchor_relay.services.receipts import (
    ReceiptSequenceConflict,
    anchor_receipt,
    find_receipt,
)

router = APIRouter(prefix="/receipts", tags=["receipts"])


@router.post("", response_model=ReceiptResponse, status_code=status.HTTP_201_CREATED)
async def create_receipt(
    payload: ReceiptCreate,
    context: AdminContextDep,
    db: SessionDep,
) -> ReceiptResponse:
    """Anchor a receipt under the next sequence number of its subject."""
    try:
        receipt = anchor_receipt(db, context.operator, payload)
    except ReceiptSequenceConflict as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return ReceiptResponse.model_validate(receipt)


@router.get("/{hash_or_id}", response_model=ReceiptLookupResponse)
async def get_receipt(hash_or_id: str, db: SessionDep) -> ReceiptLookupResponse:
    """Look a receipt up by content hash or id, with its relay state."""
    receipt = find_receipt(db, hash_or_id)
    if receipt is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Receipt not found")

    jobs = BridgeJobRepository(db).list_by_receipt(receipt.id)
    cross_chain = (
        CrossChainStatusResponse.model_validate(
            get_cross_chain_status(receipt.content_hash, jobs)
        )
        if jobs
        else None
    )
    return ReceiptLookupResponse(
        receipt=ReceiptResponse.model_validate(receipt),
        cross_chain_status=cross_chain,
    )
