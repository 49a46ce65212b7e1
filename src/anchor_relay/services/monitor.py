"""Confirmation polling and cross-chain status aggregation.

``BridgeMonitor`` watches a relay transaction until it reaches the depth the
target chain requires, the chain reports it dropped or reverted, or the
polling budget runs out. The aggregation helpers at the bottom of the module
are pure functions over job rows.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from anchor_relay.core.settings import Settings, settings
from anchor_relay.db.time import ensure_utc
from anchor_relay.models.bridge_job import (
    JOB_STATUS_CONFIRMED,
    TERMINAL_STATUSES,
)
from anchor_relay.services.chains import (
    ChainConfigurationError,
    ChainError,
    ChainGateway,
    get_chain_gateway,
)

logger = logging.getLogger(__name__)

CONFIRMATION_PENDING = "pending"
CONFIRMATION_CONFIRMED = "confirmed"
CONFIRMATION_FAILED = "failed"
CONFIRMATION_TIMEOUT = "timeout"

TERMINAL_CONFIRMATION_STATUSES = frozenset(
    {CONFIRMATION_CONFIRMED, CONFIRMATION_FAILED, CONFIRMATION_TIMEOUT}
)

OVERALL_NONE = "none"
OVERALL_PENDING = "pending"
OVERALL_PARTIAL = "partial"
OVERALL_COMPLETE = "complete"
OVERALL_FAILED = "failed"

RELAY_NOT_STARTED = "not_started"
RELAY_IN_PROGRESS = "in_progress"
RELAY_COMPLETED = "completed"
RELAY_PARTIAL = "partial"
RELAY_FAILED = "failed"


@dataclass(frozen=True)
class ConfirmationUpdate:
    """Result of one confirmation poll."""

    status: str
    confirmations: int
    required_confirmations: int
    block_number: int | None = None
    error: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_CONFIRMATION_STATUSES


@dataclass(frozen=True)
class PollingLimits:
    """Polling cadence and the bounds that stop a poll loop."""

    interval_seconds: float = 5.0
    max_polls: int = 360
    max_duration_seconds: float = 1800.0

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> PollingLimits:
        cfg = source or settings
        return cls(
            interval_seconds=cfg.monitor_poll_interval_seconds,
            max_polls=cfg.monitor_max_polls,
            max_duration_seconds=cfg.monitor_max_duration_seconds,
        )


ConfirmationCallback = Callable[[ConfirmationUpdate], Awaitable[None]]


class BridgeMonitor:
    """Polls target chains for the confirmation depth of relay transactions."""

    def __init__(
        self,
        gateway: ChainGateway | None = None,
        limits: PollingLimits | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.gateway = gateway or get_chain_gateway()
        self.limits = limits or PollingLimits.from_settings()
        self._sleep = sleep
        self._clock = clock

    def start_polling(
        self,
        doc_hash: str,
        target_chain: str,
        tx_hash: str,
        on_confirmation: ConfirmationCallback,
        *,
        required_confirmations: int | None = None,
        confirmations: int = 0,
    ) -> asyncio.Task[ConfirmationUpdate]:
        """Start :meth:`poll` as a background task and return the task."""
        return asyncio.create_task(
            self.poll(
                doc_hash,
                target_chain,
                tx_hash,
                on_confirmation,
                required_confirmations=required_confirmations,
                confirmations=confirmations,
            ),
            name=f"confirm:{target_chain}:{tx_hash}",
        )

    async def poll(
        self,
        doc_hash: str,
        target_chain: str,
        tx_hash: str,
        on_confirmation: ConfirmationCallback,
        *,
        required_confirmations: int | None = None,
        confirmations: int = 0,
    ) -> ConfirmationUpdate:
        """Poll until the transaction reaches a terminal confirmation status.

        ``on_confirmation`` is awaited after every successful lookup. Ticks
        whose lookup raises a transient ``ChainError`` are skipped but still
        count toward ``max_polls``. Reported depth never goes down, even if
        the node briefly reports fewer confirmations.
        """
        required = required_confirmations or self.gateway.required_confirmations(target_chain)
        best = max(0, confirmations)
        block_number: int | None = None
        started = self._clock()
        polls = 0

        while polls < self.limits.max_polls:
            if self._clock() - started >= self.limits.max_duration_seconds:
                break
            polls += 1
            try:
                state = await self.gateway.get_transaction_state(target_chain, tx_hash)
            except ChainConfigurationError as exc:
                update = ConfirmationUpdate(
                    status=CONFIRMATION_FAILED,
                    confirmations=best,
                    required_confirmations=required,
                    block_number=block_number,
                    error=str(exc),
                )
                await on_confirmation(update)
                return update
            except ChainError as exc:
                logger.warning(
                    "Confirmation lookup for %s on %s failed (poll %d): %s",
                    tx_hash,
                    target_chain,
                    polls,
                    exc,
                )
            else:
                best = max(best, state.confirmations)
                block_number = state.block_number or block_number
                if state.failed:
                    reason = "reverted" if state.reverted else "dropped"
                    update = ConfirmationUpdate(
                        status=CONFIRMATION_FAILED,
                        confirmations=best,
                        required_confirmations=required,
                        block_number=block_number,
                        error=f"Transaction {tx_hash} was {reason} on {target_chain}",
                    )
                elif best >= required:
                    update = ConfirmationUpdate(
                        status=CONFIRMATION_CONFIRMED,
                        confirmations=best,
                        required_confirmations=required,
                        block_number=block_number,
                    )
                else:
                    update = ConfirmationUpdate(
                        status=CONFIRMATION_PENDING,
                        confirmations=best,
                        required_confirmations=required,
                        block_number=block_number,
                    )
                await on_confirmation(update)
                if update.terminal:
                    logger.info(
                        "Relay of %s to %s finished polling: %s (%d/%d)",
                        doc_hash,
                        target_chain,
                        update.status,
                        best,
                        required,
                    )
                    return update

            if polls < self.limits.max_polls:
                await self._sleep(self.limits.interval_seconds)

        update = ConfirmationUpdate(
            status=CONFIRMATION_TIMEOUT,
            confirmations=min(best, required - 1),
            required_confirmations=required,
            block_number=block_number,
            error=(
                f"Transaction {tx_hash} reached {best}/{required} confirmations "
                f"on {target_chain} after {polls} polls"
            ),
        )
        logger.warning("Confirmation polling timed out for %s on %s", tx_hash, target_chain)
        await on_confirmation(update)
        return update

    def get_cross_chain_status(self, doc_hash: str, jobs: Iterable[JobView]) -> CrossChainStatus:
        """Aggregate jobs for ``doc_hash``; see :func:`get_cross_chain_status`."""
        return get_cross_chain_status(doc_hash, jobs)


class JobView(Protocol):
    """Attributes of a bridge job read by the aggregation helpers."""

    id: str
    target_chain: str
    status: str
    tx_hash: str | None
    confirmations: int
    required_confirmations: int
    last_error: str | None
    created_at: datetime
    updated_at: datetime
    confirmed_at: datetime | None


@dataclass(frozen=True)
class ChainStatus:
    """Best-known relay state on one chain."""

    job_id: str
    status: str
    tx_hash: str | None
    confirmations: int
    required_confirmations: int
    last_error: str | None
    updated_at: datetime


@dataclass(frozen=True)
class CrossChainStatus:
    """Relay state of one document hash across every chain it was sent to."""

    doc_hash: str
    overall_status: str
    chains: dict[str, ChainStatus] = field(default_factory=dict)


@dataclass(frozen=True)
class RelayProgress:
    """Completion summary of every chain a receipt was relayed to."""

    status: str
    completed_chains: list[str]
    pending_chains: list[str]
    failed_chains: list[str]


def latest_jobs_by_chain(jobs: Iterable[JobView]) -> dict[str, JobView]:
    """Return the most recently created job for each target chain.

    Manual retries add new jobs for a chain; the newest one represents it.
    Ties on ``created_at`` go to the job that appears later in ``jobs``.
    """
    ranked = sorted(
        enumerate(jobs), key=lambda item: (ensure_utc(item[1].created_at), item[0])
    )
    latest: dict[str, JobView] = {}
    for _, job in ranked:
        latest[job.target_chain] = job
    return latest


def _overall_status(statuses: Sequence[str]) -> str:
    if not statuses:
        return OVERALL_NONE
    confirmed = sum(1 for status in statuses if status == JOB_STATUS_CONFIRMED)
    if confirmed == len(statuses):
        return OVERALL_COMPLETE
    if confirmed:
        return OVERALL_PARTIAL
    if all(status in TERMINAL_STATUSES for status in statuses):
        return OVERALL_FAILED
    return OVERALL_PENDING


def get_cross_chain_status(doc_hash: str, jobs: Iterable[JobView]) -> CrossChainStatus:
    """Aggregate bridge jobs into a per-chain view.

    Pure: the result depends only on the arguments, and contains exactly the
    target chains present in ``jobs``, failed ones included.
    """
    latest = latest_jobs_by_chain(jobs)
    chains = {
        chain: ChainStatus(
            job_id=job.id,
            status=job.status,
            tx_hash=job.tx_hash,
            confirmations=job.confirmations,
            required_confirmations=job.required_confirmations,
            last_error=job.last_error,
            updated_at=job.updated_at,
        )
        for chain, job in sorted(latest.items())
    }
    return CrossChainStatus(
        doc_hash=doc_hash,
        overall_status=_overall_status([entry.status for entry in chains.values()]),
        chains=chains,
    )


def summarize_relay(jobs: Iterable[JobView]) -> RelayProgress:
    """Summarize which chains have completed, are in flight, or failed."""
    latest = latest_jobs_by_chain(jobs)
    completed = sorted(c for c, j in latest.items() if j.status == JOB_STATUS_CONFIRMED)
    pending = sorted(c for c, j in latest.items() if j.status not in TERMINAL_STATUSES)
    failed = sorted(
        c
        for c, j in latest.items()
        if j.status in TERMINAL_STATUSES and j.status != JOB_STATUS_CONFIRMED
    )

    if not latest:
        status = RELAY_NOT_STARTED
    elif pending:
        status = RELAY_IN_PROGRESS
    elif len(completed) == len(latest):
        status = RELAY_COMPLETED
    elif completed:
        status = RELAY_PARTIAL
    else:
        status = RELAY_FAILED
    return RelayProgress(
        status=status,
        completed_chains=completed,
        pending_chains=pending,
        failed_chains=failed,
    )


def compute_relay_stats(
    counts: Iterable[tuple[str, str, int]],
    confirmation_times: Iterable[tuple[str, datetime, datetime]] = (),
) -> dict[str, Any]:
    """Return dashboard counters grouped by target chain.

    ``counts`` holds ``(target_chain, status, count)`` rows and
    ``confirmation_times`` holds ``(target_chain, created_at, confirmed_at)``
    for confirmed jobs.
    """
    totals = {"total": 0, "confirmed": 0, "failed": 0, "pending": 0}
    per_chain: dict[str, dict[str, Any]] = {}

    for chain, status, count in counts:
        bucket = per_chain.setdefault(
            chain, {"total": 0, "confirmed": 0, "failed": 0, "pending": 0}
        )
        if status == JOB_STATUS_CONFIRMED:
            key = "confirmed"
        elif status in TERMINAL_STATUSES:
            key = "failed"
        else:
            key = "pending"
        for counter in (bucket, totals):
            counter["total"] += count
            counter[key] += count

    durations: dict[str, list[float]] = {}
    for chain, created_at, confirmed_at in confirmation_times:
        elapsed = ensure_utc(confirmed_at) - ensure_utc(created_at)
        durations.setdefault(chain, []).append(elapsed.total_seconds())

    for chain, bucket in per_chain.items():
        samples = durations.get(chain)
        bucket["average_confirmation_seconds"] = (
            sum(samples) / len(samples) if samples else None
        )

    return {
        "total_relays": totals["total"],
        "successful_relays": totals["confirmed"],
        "failed_relays": totals["failed"],
        "pending_relays": totals["pending"],
        "chains": dict(sorted(per_chain.items())),
    }
