"""Tests for the background relay pipeline against a real database."""

import asyncio

import httpx
import pytest
from sqlalchemy.orm import Session

from anchor_relay.db.time import utcnow
from anchor_relay.models.bridge_job import (
    FAILURE_STAGE_CONFIRMATION,
    FAILURE_STAGE_SUBMISSION,
    BridgeJob,
)
from anchor_relay.models.receipt import Receipt
from anchor_relay.repositories.bridge_job_repo import BridgeJobRepository
from anchor_relay.services.chains import (
    ChainConfig,
    ChainGateway,
    JsonRpcChainBackend,
    RelayPayload,
)
from anchor_relay.services.monitor import ConfirmationUpdate
from anchor_relay.services.pipeline import JobStateConflict, RelayCoordinator
from anchor_relay.services.relay import BackoffPolicy, RelayService


def make_job(db: Session, receipt, chain: str, status: str = "pending", **values) -> BridgeJob:
    repo = BridgeJobRepository(db)
    job = repo.create(
        receipt_id=receipt.id,
        doc_hash=receipt.content_hash,
        source_chain="base",
        target_chain=chain,
        required_confirmations={"polygon": 12, "arbitrum": 20, "optimism": 10}[chain],
        max_attempts=3,
    )
    job.status = status
    for key, value in values.items():
        setattr(job, key, value)
    db.commit()
    return job


def reload(db: Session, job_id: str) -> BridgeJob:
    db.expire_all()
    job = db.get(BridgeJob, job_id)
    assert job is not None
    return job


@pytest.mark.asyncio
async def test_job_is_relayed_and_confirmed(coordinator, db_session, make_receipt):
    job_id = make_job(db_session, make_receipt(), "polygon").id

    coordinator.dispatch(job_id)
    await coordinator.drain()

    job = reload(db_session, job_id)
    assert job.status == "confirmed"
    assert job.confirmations == 15
    assert job.attempts == 1
    assert job.tx_hash and job.tx_hash.startswith("0x")
    assert job.block_number is not None
    assert job.confirmed_at is not None
    assert job.failure_stage is None
    assert job.version > 1


@pytest.mark.asyncio
async def test_failing_chain_exhausts_attempts(coordinator, db_session, make_receipt):
    job_id = make_job(db_session, make_receipt(), "arbitrum").id

    coordinator.dispatch(job_id)
    await coordinator.drain()

    job = reload(db_session, job_id)
    assert job.status == "failed"
    assert job.attempts == 3
    assert job.tx_hash is None
    assert "Simulated submission failure" in job.last_error
    assert job.failure_stage == FAILURE_STAGE_SUBMISSION


@pytest.mark.asyncio
async def test_chains_progress_independently(coordinator, db_session, make_receipt):
    receipt = make_receipt()
    polygon_id = make_job(db_session, receipt, "polygon").id
    arbitrum_id = make_job(db_session, receipt, "arbitrum").id
    optimism_id = make_job(db_session, receipt, "optimism").id

    for job_id in (polygon_id, arbitrum_id, optimism_id):
        coordinator.dispatch(job_id)
    await coordinator.drain()

    assert reload(db_session, polygon_id).status == "confirmed"
    assert reload(db_session, arbitrum_id).status == "failed"
    optimism = reload(db_session, optimism_id)
    assert optimism.status == "confirmed"
    assert optimism.confirmations == 10


@pytest.mark.asyncio
async def test_dispatch_is_single_flight(coordinator, db_session, make_receipt):
    job_id = make_job(db_session, make_receipt(), "polygon").id

    first = coordinator.dispatch(job_id)
    second = coordinator.dispatch(job_id)

    assert first is second
    assert coordinator.active_job_ids == [job_id]
    await coordinator.drain()
    assert coordinator.active_job_ids == []
    assert reload(db_session, job_id).attempts == 1


@pytest.mark.asyncio
async def test_job_that_is_not_pending_is_left_alone(coordinator, db_session, make_receipt):
    job_id = make_job(db_session, make_receipt(), "polygon", status="cancelled").id

    coordinator.dispatch(job_id)
    await coordinator.drain()

    job = reload(db_session, job_id)
    assert job.status == "cancelled"
    assert job.attempts == 0


@pytest.mark.asyncio
async def test_cancel_stops_the_task(coordinator, db_session, make_receipt):
    job_id = make_job(db_session, make_receipt(), "polygon").id

    task = coordinator.dispatch(job_id)
    assert coordinator.cancel(job_id) is True
    await coordinator.drain()

    assert task.cancelled()
    job = reload(db_session, job_id)
    assert job.status == "cancelled"
    assert job.attempts == 0


@pytest.mark.asyncio
async def test_cancel_terminal_job_is_rejected(coordinator, db_session, make_receipt):
    job_id = make_job(db_session, make_receipt(), "polygon", status="confirmed").id

    assert coordinator.cancel(job_id) is False
    assert coordinator.cancel("missing") is False
    assert reload(db_session, job_id).status == "confirmed"


@pytest.mark.asyncio
async def test_confirmation_after_cancel_is_rejected(coordinator, db_session, make_receipt):
    job_id = make_job(db_session, make_receipt(), "polygon", status="cancelled").id

    with pytest.raises(JobStateConflict):
        await coordinator._persist_confirmation(
            job_id,
            ConfirmationUpdate(status="confirmed", confirmations=12, required_confirmations=12),
        )

    job = reload(db_session, job_id)
    assert job.status == "cancelled"
    assert job.confirmations == 0


@pytest.mark.asyncio
async def test_timeout_records_confirmation_stage(coordinator, db_session, make_receipt):
    job_id = make_job(
        db_session, make_receipt(), "polygon", status="pending-confirmation", tx_hash="0x01"
    ).id

    await coordinator._persist_confirmation(
        job_id,
        ConfirmationUpdate(
            status="timeout", confirmations=4, required_confirmations=12, error="too slow"
        ),
    )

    job = reload(db_session, job_id)
    assert job.status == "timeout"
    assert job.last_error == "too slow"
    assert job.failure_stage == FAILURE_STAGE_CONFIRMATION


@pytest.mark.asyncio
async def test_recover_resumes_interrupted_work(coordinator, gateway, db_session, make_receipt):
    receipt = make_receipt()
    tx_hash = await gateway.submit_relay(
        "polygon",
        RelayPayload(
            job_id="earlier",
            doc_hash=receipt.content_hash,
            source_chain="base",
            receipt_type=receipt.type,
            subject_id=receipt.subject_id,
            content_hash=receipt.content_hash,
            proof_blob=receipt.proof_blob,
            immutable_seq=receipt.immutable_seq,
        ),
    )
    pending_id = make_job(db_session, receipt, "optimism").id
    stale_id = make_job(db_session, receipt, "arbitrum", status="submitting", attempts=1).id
    watching_id = make_job(
        db_session,
        receipt,
        "polygon",
        status="pending-confirmation",
        tx_hash=tx_hash,
        attempts=1,
        confirmations=2,
    ).id
    orphan_id = make_job(db_session, receipt, "polygon", status="pending-confirmation").id

    summary = coordinator.recover()
    await coordinator.drain()

    assert summary == {"dispatched": 1, "resumed": 1, "failed": 2}
    assert reload(db_session, pending_id).status == "confirmed"
    stale = reload(db_session, stale_id)
    assert stale.status == "failed"
    assert stale.failure_stage == FAILURE_STAGE_SUBMISSION
    assert stale.attempts == 1
    watching = reload(db_session, watching_id)
    assert watching.status == "confirmed"
    assert watching.attempts == 1
    assert reload(db_session, orphan_id).status == "failed"


@pytest.mark.asyncio
async def test_shutdown_cancels_running_tasks(coordinator, db_session, make_receipt):
    job_id = make_job(db_session, make_receipt(), "polygon").id

    task = coordinator.dispatch(job_id)
    await coordinator.shutdown()

    assert task.done()
    assert coordinator.active_job_ids == []


@pytest.mark.asyncio
async def test_non_object_rpc_reply_fails_the_job(
    session_factory, db_session, make_receipt, no_sleep
):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=["unexpected"])

    backend = JsonRpcChainBackend(
        ChainConfig(
            chain="polygon",
            rpc_url="http://rpc.test",
            sender_address="0x" + "1" * 40,
            contract_address="0x" + "2" * 40,
            timeout_seconds=5.0,
            required_confirmations=12,
        )
    )
    backend._client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://rpc.test"
    )
    gateway = ChainGateway({"polygon": backend}, {"polygon": 12})
    coordinator = RelayCoordinator(
        gateway,
        session_factory=session_factory,
        relay_service=RelayService(
            gateway, BackoffPolicy(base_seconds=0.0, factor=1.0, max_seconds=0.0), sleep=no_sleep
        ),
    )
    job_id = make_job(db_session, make_receipt(), "polygon").id

    coordinator.dispatch(job_id)
    await coordinator.drain()

    job = reload(db_session, job_id)
    assert job.status == "failed"
    assert job.attempts == 3
    assert "non-object reply" in job.last_error
    assert not coordinator.is_running(job_id)
    await gateway.close()


@pytest.mark.asyncio
async def test_unexpected_relay_error_fails_the_claimed_job(
    coordinator, db_session, make_receipt, mocker
):
    mocker.patch.object(
        coordinator.relay_service,
        "retry_relay",
        side_effect=AttributeError("'list' object has no attribute 'get'"),
    )
    job_id = make_job(db_session, make_receipt(), "polygon").id

    coordinator.dispatch(job_id)
    await coordinator.drain()

    job = reload(db_session, job_id)
    assert job.status == "failed"
    assert "AttributeError" in job.last_error
    assert job.failure_stage == FAILURE_STAGE_SUBMISSION


@pytest.mark.asyncio
async def test_unexpected_monitoring_error_fails_the_job(
    coordinator, db_session, make_receipt, mocker
):
    mocker.patch.object(coordinator.monitor, "poll", side_effect=TypeError("bad receipt"))
    job_id = make_job(
        db_session, make_receipt(), "polygon", status="pending-confirmation", tx_hash="0x01"
    ).id

    coordinator.resume_monitoring(job_id)
    await coordinator.drain()

    job = reload(db_session, job_id)
    assert job.status == "failed"
    assert "TypeError" in job.last_error
    assert job.failure_stage == FAILURE_STAGE_CONFIRMATION


@pytest.mark.asyncio
async def test_job_with_missing_receipt_is_failed_not_retried(
    coordinator, db_session, make_receipt
):
    receipt = make_receipt()
    job_id = make_job(db_session, receipt, "polygon").id
    db_session.delete(db_session.get(Receipt, receipt.id))
    db_session.commit()

    coordinator.dispatch(job_id)
    await coordinator.drain()

    job = reload(db_session, job_id)
    assert job.status == "failed"
    assert "not found" in job.last_error
    assert job.failure_stage == FAILURE_STAGE_SUBMISSION
    assert coordinator.recover()["dispatched"] == 0


class TestTransitionGuards:
    def test_terminal_status_is_never_left(self, db_session, make_receipt):
        job = make_job(db_session, make_receipt(), "polygon", status="confirmed")
        repo = BridgeJobRepository(db_session)

        for target in ("pending-confirmation", "failed", "cancelled", "submitting"):
            assert repo.transition(job.id, target) is False
        db_session.commit()
        assert reload(db_session, job.id).status == "confirmed"

    def test_attempts_cannot_exceed_budget(self, db_session, make_receipt):
        job = make_job(db_session, make_receipt(), "polygon", status="submitting")
        repo = BridgeJobRepository(db_session)

        assert repo.transition(job.id, "submitting", attempts=4) is False
        assert repo.transition(job.id, "submitting", attempts=3) is True

    def test_confirmations_cannot_go_down(self, db_session, make_receipt):
        job = make_job(
            db_session, make_receipt(), "polygon", status="pending-confirmation", confirmations=6
        )
        repo = BridgeJobRepository(db_session)

        assert repo.transition(job.id, "pending-confirmation", confirmations=5) is False
        assert repo.transition(job.id, "pending-confirmation", confirmations=6) is True

    def test_claim_only_from_pending(self, db_session, make_receipt):
        job = make_job(db_session, make_receipt(), "polygon", status="submitting")
        repo = BridgeJobRepository(db_session)

        assert repo.transition(job.id, "submitting", from_statuses=("pending",)) is False

    def test_every_write_bumps_version(self, db_session, make_receipt):
        job = make_job(db_session, make_receipt(), "polygon")
        before = job.version
        repo = BridgeJobRepository(db_session)

        assert repo.transition(job.id, "submitting", attempts=1)
        db_session.commit()
        assert reload(db_session, job.id).version == before + 1


def test_coordinator_uses_shared_gateway(gateway, session_factory):
    coordinator = RelayCoordinator(gateway, session_factory=session_factory)
    assert coordinator.relay_service.gateway is gateway
    assert coordinator.monitor.gateway is gateway
    assert asyncio.iscoroutinefunction(coordinator.drain)


def test_dashboard_queries_aggregate_in_the_database(db_session, make_receipt):
    receipt = make_receipt()
    make_job(db_session, receipt, "polygon", status="confirmed", confirmed_at=utcnow())
    make_job(db_session, receipt, "polygon", status="failed")
    make_job(db_session, receipt, "arbitrum", status="failed")
    make_job(db_session, receipt, "arbitrum", status="confirmed")
    repo = BridgeJobRepository(db_session)

    assert sorted(repo.count_by_chain_and_status()) == [
        ("arbitrum", "confirmed", 1),
        ("arbitrum", "failed", 1),
        ("polygon", "confirmed", 1),
        ("polygon", "failed", 1),
    ]
    times = repo.confirmation_times()
    assert [chain for chain, _, _ in times] == ["polygon"]
