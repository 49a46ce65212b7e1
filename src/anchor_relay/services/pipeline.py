"""Background relay pipeline.

The coordinator runs one asyncio task per bridge job: submit through
:class:`RelayService`, then poll through :class:`BridgeMonitor`. Every status
change is written back with a compare-and-set so that a cancelled or finished
job cannot be revived by a task that is still running.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from functools import partial
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from anchor_relay.db.session import SessionLocal
from anchor_relay.db.time import utcnow
from anchor_relay.models.bridge_job import (
    FAILURE_STAGE_CONFIRMATION,
    FAILURE_STAGE_SUBMISSION,
    JOB_STATUS_CANCELLED,
    JOB_STATUS_CONFIRMED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_STATUS_PENDING_CONFIRMATION,
    JOB_STATUS_SUBMITTING,
    JOB_STATUS_TIMEOUT,
    BridgeJob,
)
from anchor_relay.models.receipt import Receipt
from anchor_relay.repositories.bridge_job_repo import BridgeJobRepository
from anchor_relay.services.chains import ChainGateway, get_chain_gateway
from anchor_relay.services.monitor import (
    CONFIRMATION_CONFIRMED,
    CONFIRMATION_FAILED,
    CONFIRMATION_TIMEOUT,
    BridgeMonitor,
    ConfirmationUpdate,
)
from anchor_relay.services.relay import (
    ReceiptData,
    RelayError,
    RelayJob,
    RelayPreconditionError,
    RelayService,
    RelayUpdate,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

_CONFIRMATION_STATUS = {
    CONFIRMATION_CONFIRMED: JOB_STATUS_CONFIRMED,
    CONFIRMATION_FAILED: JOB_STATUS_FAILED,
    CONFIRMATION_TIMEOUT: JOB_STATUS_TIMEOUT,
}


class JobStateConflict(RelayError):
    """Raised when a job write loses its compare-and-set."""


class RelayCoordinator:
    """Owns the relay and monitoring tasks of bridge jobs."""

    def __init__(
        self,
        gateway: ChainGateway | None = None,
        *,
        session_factory: SessionFactory = SessionLocal,
        relay_service: RelayService | None = None,
        monitor: BridgeMonitor | None = None,
    ) -> None:
        self.gateway = gateway or get_chain_gateway()
        self.relay_service = relay_service or RelayService(self.gateway)
        self.monitor = monitor or BridgeMonitor(self.gateway)
        self._session_factory = session_factory
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def active_job_ids(self) -> list[str]:
        return sorted(job_id for job_id, task in self._tasks.items() if not task.done())

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    def dispatch(self, job_id: str) -> asyncio.Task[None]:
        """Start relaying ``job_id`` unless a task for it is already running."""
        return self._start(job_id, self._run_pipeline)

    def resume_monitoring(self, job_id: str) -> asyncio.Task[None]:
        """Resume confirmation polling for a job that already has a transaction."""
        return self._start(job_id, self._run_monitoring)

    def _start(
        self,
        job_id: str,
        runner: Callable[[str], Coroutine[Any, Any, None]],
    ) -> asyncio.Task[None]:
        existing = self._tasks.get(job_id)
        if existing is not None and not existing.done():
            logger.debug("Job %s already has a running task", job_id)
            return existing
        task = asyncio.create_task(runner(job_id), name=f"relay:{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(partial(self._forget, job_id))
        return task

    def _forget(self, job_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Relay task for job %s crashed", job_id, exc_info=exc)

    def cancel(self, job_id: str) -> bool:
        """Cancel a non-terminal job and stop its task.

        Returns:
            False if the job is unknown or already terminal.
        """
        with self._session_factory() as db:
            repo = BridgeJobRepository(db)
            if not repo.transition(job_id, JOB_STATUS_CANCELLED):
                db.rollback()
                return False
            db.commit()

        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            task.cancel()
        logger.info("Cancelled bridge job %s", job_id)
        return True

    def recover(self) -> dict[str, int]:
        """Pick up jobs left behind by a previous process.

        Pending jobs are dispatched and jobs waiting for confirmations resume
        polling. Jobs caught mid-submission are failed, since whether their
        transaction went out is unknown.
        """
        summary = {"dispatched": 0, "resumed": 0, "failed": 0}
        with self._session_factory() as db:
            repo = BridgeJobRepository(db)
            stale = [
                job.id
                for job in repo.list_by_statuses([JOB_STATUS_SUBMITTING])
                if not self.is_running(job.id)
            ]
            orphaned = [
                job.id
                for job in repo.list_by_statuses([JOB_STATUS_PENDING_CONFIRMATION])
                if job.tx_hash is None and not self.is_running(job.id)
            ]
            for job_id in stale:
                if repo.transition(
                    job_id,
                    JOB_STATUS_FAILED,
                    from_statuses=(JOB_STATUS_SUBMITTING,),
                    last_error="Submission interrupted; transaction outcome unknown",
                    failure_stage=FAILURE_STAGE_SUBMISSION,
                ):
                    summary["failed"] += 1
            for job_id in orphaned:
                if repo.transition(
                    job_id,
                    JOB_STATUS_FAILED,
                    from_statuses=(JOB_STATUS_PENDING_CONFIRMATION,),
                    last_error="No transaction hash recorded for confirmation polling",
                    failure_stage=FAILURE_STAGE_CONFIRMATION,
                ):
                    summary["failed"] += 1
            db.commit()

            pending = [job.id for job in repo.list_by_statuses([JOB_STATUS_PENDING])]
            watching = [
                job.id for job in repo.list_by_statuses([JOB_STATUS_PENDING_CONFIRMATION])
            ]

        for job_id in pending:
            if not self.is_running(job_id):
                self.dispatch(job_id)
                summary["dispatched"] += 1
        for job_id in watching:
            if not self.is_running(job_id):
                self.resume_monitoring(job_id)
                summary["resumed"] += 1

        if any(summary.values()):
            logger.info(
                "Recovered bridge jobs: %d dispatched, %d resumed, %d failed",
                summary["dispatched"],
                summary["resumed"],
                summary["failed"],
            )
        return summary

    async def drain(self) -> None:
        """Wait until every running task has finished."""
        while True:
            running = [task for task in self._tasks.values() if not task.done()]
            if not running:
                return
            await asyncio.gather(*running, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every running task and wait for them to unwind."""
        running = [task for task in self._tasks.values() if not task.done()]
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        self._tasks.clear()

    # pipeline stages

    async def _run_pipeline(self, job_id: str) -> None:
        try:
            relay_job = self._claim(job_id)
            if relay_job is None:
                return
            result = await self.relay_service.retry_relay(
                relay_job, partial(self._persist_relay_update, job_id)
            )
            if not result.success or result.tx_hash is None:
                return
            required = self._required_confirmations(job_id)
        except RelayPreconditionError as exc:
            logger.error("Bridge job %s cannot be relayed: %s", job_id, exc)
            self._fail(job_id, str(exc), FAILURE_STAGE_SUBMISSION)
            return
        except JobStateConflict as exc:
            logger.info("Stopped relaying job %s: %s", job_id, exc)
            return
        except Exception as exc:
            logger.error("Relaying bridge job %s failed unexpectedly", job_id, exc_info=exc)
            self._fail(job_id, f"Unexpected relay error: {exc!r}", FAILURE_STAGE_SUBMISSION)
            return

        await self._poll(
            job_id,
            doc_hash=relay_job.doc_hash,
            target_chain=relay_job.target_chain,
            tx_hash=result.tx_hash,
            required=required,
            confirmations=0,
        )

    async def _run_monitoring(self, job_id: str) -> None:
        with self._session_factory() as db:
            job = BridgeJobRepository(db).get(job_id)
            if job is None or job.status != JOB_STATUS_PENDING_CONFIRMATION or not job.tx_hash:
                return
            doc_hash = job.doc_hash
            target_chain = job.target_chain
            tx_hash = job.tx_hash
            required = job.required_confirmations
            confirmations = job.confirmations

        await self._poll(
            job_id,
            doc_hash=doc_hash,
            target_chain=target_chain,
            tx_hash=tx_hash,
            required=required,
            confirmations=confirmations,
        )

    async def _poll(
        self,
        job_id: str,
        *,
        doc_hash: str,
        target_chain: str,
        tx_hash: str,
        required: int,
        confirmations: int,
    ) -> None:
        try:
            await self.monitor.poll(
                doc_hash,
                target_chain,
                tx_hash,
                partial(self._persist_confirmation, job_id),
                required_confirmations=required,
                confirmations=confirmations,
            )
        except JobStateConflict as exc:
            logger.info("Stopped monitoring job %s: %s", job_id, exc)
        except Exception as exc:
            logger.error("Monitoring bridge job %s failed unexpectedly", job_id, exc_info=exc)
            self._fail(job_id, f"Unexpected monitoring error: {exc!r}", FAILURE_STAGE_CONFIRMATION)

    def _claim(self, job_id: str) -> RelayJob | None:
        """Move a pending job to submitting and describe it for the relay service.

        Raises:
            RelayPreconditionError: the job's receipt no longer exists. The
                job is already claimed at that point, so the caller fails it.
        """
        with self._session_factory() as db:
            repo = BridgeJobRepository(db)
            job = repo.get(job_id)
            if job is None:
                logger.warning("Bridge job %s not found", job_id)
                return None
            if not repo.transition(
                job_id, JOB_STATUS_SUBMITTING, from_statuses=(JOB_STATUS_PENDING,)
            ):
                db.rollback()
                logger.info("Bridge job %s was claimed elsewhere or is no longer pending", job_id)
                return None
            db.commit()

            db.refresh(job)
            receipt = db.get(Receipt, job.receipt_id)
            if receipt is None:
                raise RelayPreconditionError(f"Receipt {job.receipt_id} not found")
            return _relay_job_from(job, receipt)

    def _fail(self, job_id: str, error: str, stage: str) -> None:
        """Write a terminal failure; losing the compare-and-set is only logged."""
        try:
            self._write(job_id, JOB_STATUS_FAILED, last_error=error, failure_stage=stage)
        except JobStateConflict as exc:
            logger.info("Bridge job %s was not marked failed: %s", job_id, exc)
        except SQLAlchemyError as exc:
            logger.error("Could not record failure of bridge job %s", job_id, exc_info=exc)

    def _required_confirmations(self, job_id: str) -> int:
        with self._session_factory() as db:
            job = BridgeJobRepository(db).get(job_id)
            if job is None:
                raise JobStateConflict(f"Bridge job {job_id} disappeared")
            return job.required_confirmations

    def _write(self, job_id: str, status: str, **values: Any) -> None:
        with self._session_factory() as db:
            if not BridgeJobRepository(db).transition(job_id, status, **values):
                db.rollback()
                raise JobStateConflict(f"Bridge job {job_id} rejected transition to {status}")
            db.commit()

    async def _persist_relay_update(self, job_id: str, update: RelayUpdate) -> None:
        values: dict[str, Any] = {"attempts": update.attempts}
        if update.error is not None:
            values["last_error"] = update.error
        if update.tx_hash is not None:
            values["tx_hash"] = update.tx_hash
        if update.status == JOB_STATUS_FAILED:
            values["failure_stage"] = FAILURE_STAGE_SUBMISSION
        self._write(job_id, update.status, **values)

    async def _persist_confirmation(self, job_id: str, update: ConfirmationUpdate) -> None:
        status = _CONFIRMATION_STATUS.get(update.status, JOB_STATUS_PENDING_CONFIRMATION)
        values: dict[str, Any] = {"confirmations": update.confirmations}
        if update.block_number is not None:
            values["block_number"] = update.block_number
        if status == JOB_STATUS_CONFIRMED:
            values["confirmed_at"] = utcnow()
        elif status in (JOB_STATUS_FAILED, JOB_STATUS_TIMEOUT):
            values["last_error"] = update.error
            values["failure_stage"] = FAILURE_STAGE_CONFIRMATION
        self._write(job_id, status, **values)


def _relay_job_from(job: BridgeJob, receipt: Receipt) -> RelayJob:
    return RelayJob(
        job_id=job.id,
        doc_hash=job.doc_hash,
        target_chain=job.target_chain,
        receipt=ReceiptData(
            receipt_type=receipt.type,
            subject_id=receipt.subject_id,
            content_hash=receipt.content_hash,
            proof_blob=dict(receipt.proof_blob or {}),
            immutable_seq=receipt.immutable_seq,
        ),
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        status=JOB_STATUS_SUBMITTING,
        source_chain=job.source_chain,
    )


class _RelayCoordinatorSingleton:
    """Singleton wrapper for RelayCoordinator."""

    _instance: RelayCoordinator | None = None

    @classmethod
    def get_instance(cls) -> RelayCoordinator:
        """Get or create the singleton RelayCoordinator instance."""
        if cls._instance is None:
            cls._instance = RelayCoordinator()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None


def get_relay_coordinator() -> RelayCoordinator:
    """Return the process-wide relay coordinator."""
    return _RelayCoordinatorSingleton.get_instance()
