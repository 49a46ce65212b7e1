# src/anchor_relay/api/endpoints/bridge.py
"""Bridge relay endpoints."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status

from anchor_relay.api.dependencies import (
    AdminContextDep,
    CoordinatorDep,
    GatewayDep,
    SessionDep,
)
from anchor_relay.core.settings import settings
from anchor_relay.models.bridge_job import JOB_STATUS_CONFIRMED, JOB_STATUSES, BridgeJob
from anchor_relay.repositories.bridge_job_repo import BridgeJobRepository
from anchor_relay.repositories.receipt_repo import ReceiptRepository
from anchor_relay.schemas.bridge import (
    BridgeJobResponse,
    CrossChainStatusResponse,
    MonitorStatsResponse,
    RelayRequest,
    RelayResponse,
    RelayStatusResponse,
)
from anchor_relay.services.chains import ChainConfigurationError, TargetChain
from anchor_relay.services.monitor import (
    RELAY_COMPLETED,
    compute_relay_stats,
    get_cross_chain_status,
    summarize_relay,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bridge", tags=["bridge"])


def _get_job_or_404(repo: BridgeJobRepository, job_id: str) -> BridgeJob:
    job = repo.get(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bridge job not found")
    return job


@router.post("/relay", response_model=RelayResponse, status_code=status.HTTP_201_CREATED)
async def relay_receipt(
    payload: RelayRequest,
    context: AdminContextDep,
    db: SessionDep,
    gateway: GatewayDep,
    coordinator: CoordinatorDep,
) -> RelayResponse:
    """Create one pending job per requested chain and start relaying them.

    Returns as soon as the jobs exist; relaying continues in the background.
    """
    receipt = ReceiptRepository(db).get(payload.receipt_id)
    if receipt is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Receipt not found")

    # Resolve every threshold first so a misconfigured chain creates no jobs.
    try:
        thresholds = {
            chain.value: gateway.required_confirmations(chain.value)
            for chain in payload.target_chains
        }
    except ChainConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc

    repo = BridgeJobRepository(db)
    jobs = [
        repo.create(
            receipt_id=receipt.id,
            doc_hash=receipt.content_hash,
            source_chain=settings.source_chain,
            target_chain=chain,
            required_confirmations=required,
            max_attempts=settings.relay_max_attempts,
            metadata=payload.metadata,
        )
        for chain, required in thresholds.items()
    ]
    db.commit()

    created = [BridgeJobResponse.model_validate(job) for job in jobs]
    for job in created:
        coordinator.dispatch(job.id)

    logger.info(
        "[%s] %s queued relay of receipt %s to %s",
        context.request_id,
        context.operator.id,
        receipt.id,
        ", ".join(thresholds),
    )
    return RelayResponse(receipt_id=receipt.id, doc_hash=receipt.content_hash, jobs=created)


@router.get("/status/{doc_hash}", response_model=CrossChainStatusResponse)
async def get_doc_status(doc_hash: str, db: SessionDep) -> CrossChainStatusResponse:
    """Return relay state of a document hash on every chain it was sent to."""
    normalized = doc_hash.lower()
    jobs = BridgeJobRepository(db).list_by_doc_hash(normalized)
    return CrossChainStatusResponse.model_validate(get_cross_chain_status(normalized, jobs))


@router.get("/relay/{receipt_id}/status", response_model=RelayStatusResponse)
async def get_relay_status(receipt_id: str, db: SessionDep) -> RelayStatusResponse:
    """Summarize which chains a receipt has been relayed to."""
    if ReceiptRepository(db).get(receipt_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Receipt not found")

    progress = summarize_relay(BridgeJobRepository(db).list_by_receipt(receipt_id))
    return RelayStatusResponse(
        receipt_id=receipt_id,
        status=progress.status,
        completed=progress.status == RELAY_COMPLETED,
        completed_chains=progress.completed_chains,
        pending_chains=progress.pending_chains,
        failed_chains=progress.failed_chains,
    )


@router.get("/jobs", response_model=list[BridgeJobResponse])
async def list_jobs(
    db: SessionDep,
    job_status: Annotated[str | None, Query(alias="status")] = None,
    target_chain: Annotated[TargetChain | None, Query(alias="targetChain")] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> list[BridgeJobResponse]:
    """List bridge jobs, newest first."""
    if job_status is not None and job_status not in JOB_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown status {job_status!r}; expected one of {', '.join(JOB_STATUSES)}",
        )
    jobs = BridgeJobRepository(db).list_jobs(
        status=job_status,
        target_chain=target_chain.value if target_chain else None,
        limit=limit,
    )
    return [BridgeJobResponse.model_validate(job) for job in jobs]


@router.get("/jobs/{job_id}", response_model=BridgeJobResponse)
async def get_job(job_id: str, db: SessionDep) -> BridgeJobResponse:
    """Return a single bridge job."""
    return BridgeJobResponse.model_validate(_get_job_or_404(BridgeJobRepository(db), job_id))


@router.post(
    "/jobs/{job_id}/retry",
    response_model=BridgeJobResponse,
    status_code=status.HTTP_201_CREATED,
)
async def retry_job(
    job_id: str,
    context: AdminContextDep,
    db: SessionDep,
    gateway: GatewayDep,
    coordinator: CoordinatorDep,
) -> BridgeJobResponse:
    """Relay again after a failure by creating a fresh job for the same chain.

    The original job is left untouched as an audit record.
    """
    repo = BridgeJobRepository(db)
    job = _get_job_or_404(repo, job_id)
    if not job.is_terminal or job.status == JOB_STATUS_CONFIRMED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Only failed, timed out or cancelled jobs can be retried (job is {job.status})",
        )

    latest = repo.latest_for_chain(job.receipt_id, job.target_chain)
    if latest is not None and latest.id != job.id and not latest.is_terminal:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job {latest.id} is already relaying this receipt to {job.target_chain}",
        )

    try:
        required = gateway.required_confirmations(job.target_chain)
    except ChainConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    metadata = dict(job.metadata_ or {})
    metadata["retryOf"] = job.id
    new_job = repo.create(
        receipt_id=job.receipt_id,
        doc_hash=job.doc_hash,
        source_chain=job.source_chain,
        target_chain=job.target_chain,
        required_confirmations=required,
        max_attempts=settings.relay_max_attempts,
        metadata=metadata,
    )
    db.commit()

    response = BridgeJobResponse.model_validate(new_job)
    coordinator.dispatch(response.id)
    logger.info(
        "[%s] %s retried bridge job %s as %s",
        context.request_id,
        context.operator.id,
        job_id,
        response.id,
    )
    return response


@router.post("/jobs/{job_id}/cancel", response_model=BridgeJobResponse)
async def cancel_job(
    job_id: str,
    context: AdminContextDep,
    db: SessionDep,
    coordinator: CoordinatorDep,
) -> BridgeJobResponse:
    """Cancel a job that has not reached a terminal status."""
    repo = BridgeJobRepository(db)
    job = _get_job_or_404(repo, job_id)
    if job.is_terminal or not coordinator.cancel(job_id):
        db.refresh(job)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job is already {job.status}",
        )

    db.refresh(job)
    logger.info("[%s] %s cancelled bridge job %s", context.request_id, context.operator.id, job_id)
    return BridgeJobResponse.model_validate(job)


@router.get("/monitor/stats", response_model=MonitorStatsResponse)
async def get_monitor_stats(db: SessionDep) -> MonitorStatsResponse:
    """Return relay counters for dashboards."""
    repo = BridgeJobRepository(db)
    stats = compute_relay_stats(repo.count_by_chain_and_status(), repo.confirmation_times())
    return MonitorStatsResponse.model_validate(stats)
