"""Data access helpers for bridge jobs."""
from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from anchor_relay.db.time import utcnow
from anchor_relay.models.bridge_job import (
    JOB_STATUS_CONFIRMED,
    JOB_STATUS_PENDING,
    BridgeJob,
    sources_for,
)

__all__ = ["BridgeJobRepository"]


class BridgeJobRepository:
    """Thin wrapper around database access for bridge jobs.

    Mutations go through :meth:`transition`, which issues a single conditional
    UPDATE so that concurrent writers cannot overwrite each other or revive a
    terminal job.
    """

    def __init__(self, session: Session) -> None:
        """Initialize the repository with a SQLAlchemy session."""
        self.session = session

    def get(self, job_id: str) -> BridgeJob | None:
        """Return a job by identifier."""
        return self.session.get(BridgeJob, job_id)

    def list_by_doc_hash(self, doc_hash: str) -> list[BridgeJob]:
        """Return every job relaying the given content hash, oldest first."""
        result = self.session.execute(
            select(BridgeJob)
            .where(BridgeJob.doc_hash == doc_hash)
            .order_by(BridgeJob.created_at.asc())
        )
        return list(result.scalars())

    def list_by_receipt(self, receipt_id: str) -> list[BridgeJob]:
        """Return every job created for a receipt, oldest first."""
        result = self.session.execute(
            select(BridgeJob)
            .where(BridgeJob.receipt_id == receipt_id)
            .order_by(BridgeJob.created_at.asc())
        )
        return list(result.scalars())

    def list_jobs(
        self,
        *,
        status: str | None = None,
        target_chain: str | None = None,
        limit: int | None = None,
    ) -> list[BridgeJob]:
        """Return jobs matching optional filters, newest first."""
        stmt = select(BridgeJob)
        if status is not None:
            stmt = stmt.where(BridgeJob.status == status)
        if target_chain is not None:
            stmt = stmt.where(BridgeJob.target_chain == target_chain)
        stmt = stmt.order_by(BridgeJob.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars())

    def list_by_statuses(self, statuses: Iterable[str]) -> list[BridgeJob]:
        """Return jobs currently in any of the given statuses, oldest first."""
        result = self.session.execute(
            select(BridgeJob)
            .where(BridgeJob.status.in_(list(statuses)))
            .order_by(BridgeJob.created_at.asc())
        )
        return list(result.scalars())

    def latest_for_chain(self, receipt_id: str, target_chain: str) -> BridgeJob | None:
        """Return the most recently created job for a receipt and chain."""
        result = self.session.execute(
            select(BridgeJob)
            .where(
                BridgeJob.receipt_id == receipt_id,
                BridgeJob.target_chain == target_chain,
            )
            .order_by(BridgeJob.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    def count_by_chain_and_status(self) -> list[tuple[str, str, int]]:
        """Return ``(target_chain, status, count)`` rows for dashboards."""
        rows = self.session.execute(
            select(BridgeJob.target_chain, BridgeJob.status, func.count(BridgeJob.id))
            .group_by(BridgeJob.target_chain, BridgeJob.status)
        ).all()
        return [(chain, status, int(count)) for chain, status, count in rows]

    def confirmation_times(self) -> list[tuple[str, datetime, datetime]]:
        """Return ``(target_chain, created_at, confirmed_at)`` for confirmed jobs."""
        rows = self.session.execute(
            select(BridgeJob.target_chain, BridgeJob.created_at, BridgeJob.confirmed_at).where(
                BridgeJob.status == JOB_STATUS_CONFIRMED,
                BridgeJob.confirmed_at.is_not(None),
            )
        ).all()
        return [(chain, created_at, confirmed_at) for chain, created_at, confirmed_at in rows]

    def create(
        self,
        *,
        receipt_id: str,
        doc_hash: str,
        source_chain: str,
        target_chain: str,
        required_confirmations: int,
        max_attempts: int,
        metadata: dict[str, Any] | None = None,
    ) -> BridgeJob:
        """Insert a new pending job and return the persisted ORM instance."""
        job = BridgeJob(
            receipt_id=receipt_id,
            doc_hash=doc_hash,
            source_chain=source_chain,
            target_chain=target_chain,
            status=JOB_STATUS_PENDING,
            confirmations=0,
            required_confirmations=required_confirmations,
            attempts=0,
            max_attempts=max_attempts,
            metadata_=metadata,
            version=0,
        )
        self.session.add(job)
        self.session.flush()
        return job

    def transition(
        self,
        job_id: str,
        to_status: str,
        *,
        from_statuses: Iterable[str] | None = None,
        **values: Any,
    ) -> bool:
        """Atomically move a job to ``to_status`` and apply ``values``.

        The update only matches when the job currently sits in a status from
        which ``to_status`` is reachable, narrowed to ``from_statuses`` when
        given. Additional guards keep ``attempts`` within ``max_attempts`` and
        stop ``confirmations`` from going down.

        Returns:
            True if exactly one row was updated, False if the compare-and-set
            lost (unknown job, terminal job, or guard violated).
        """
        sources = sources_for(to_status)
        if from_statuses is not None:
            sources = sources & frozenset(from_statuses)
        if not sources:
            return False

        stmt = update(BridgeJob).where(
            BridgeJob.id == job_id,
            BridgeJob.status.in_(sorted(sources)),
        )
        if "attempts" in values:
            stmt = stmt.where(BridgeJob.max_attempts >= values["attempts"])
        if "confirmations" in values:
            stmt = stmt.where(BridgeJob.confirmations <= values["confirmations"])

        stmt = stmt.values(
            status=to_status,
            version=BridgeJob.version + 1,
            updated_at=utcnow(),
            **values,
        ).execution_options(synchronize_session=False)

        result = self.session.execute(stmt)
        self.session.expire_all()
        return result.rowcount == 1
