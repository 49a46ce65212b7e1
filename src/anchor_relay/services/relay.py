"""Relay submission with bounded retries.

``RelayService.retry_relay`` submits a receipt's proof to one target chain.
Transient chain failures are retried with a non-decreasing backoff until the
job's attempt budget is spent. Progress is reported through a callback after
every attempt; persisting it is the caller's job.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from anchor_relay.core.settings import Settings, settings
from anchor_relay.models.bridge_job import (
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING_CONFIRMATION,
    JOB_STATUS_SUBMITTING,
    TERMINAL_STATUSES,
)
from anchor_relay.services.chains import (
    ChainConfigurationError,
    ChainError,
    ChainGateway,
    RelayPayload,
    get_chain_gateway,
    is_supported_chain,
)

logger = logging.getLogger(__name__)


class RelayError(RuntimeError):
    """Base exception raised for relay pipeline failures."""


class RelayPreconditionError(RelayError):
    """Raised when a job cannot be relayed (budget spent, terminal, bad chain)."""


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff capped at ``max_seconds``.

    ``delay(n)`` is the wait after the n-th failed attempt and never
    decreases as ``n`` grows.
    """

    base_seconds: float = 2.0
    factor: float = 2.0
    max_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.base_seconds < 0 or self.max_seconds < 0:
            raise ValueError("backoff delays must be non-negative")
        if self.factor < 1:
            raise ValueError("backoff factor must be >= 1")

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> BackoffPolicy:
        cfg = source or settings
        return cls(
            base_seconds=cfg.relay_backoff_base_seconds,
            factor=cfg.relay_backoff_factor,
            max_seconds=cfg.relay_backoff_max_seconds,
        )

    def delay(self, failed_attempts: int) -> float:
        """Return the wait in seconds after ``failed_attempts`` failures."""
        if failed_attempts < 1:
            return 0.0
        return min(self.max_seconds, self.base_seconds * self.factor ** (failed_attempts - 1))


@dataclass(frozen=True)
class ReceiptData:
    """The parts of a receipt that are relayed."""

    receipt_type: str
    subject_id: str
    content_hash: str
    proof_blob: Mapping[str, Any]
    immutable_seq: int


@dataclass(frozen=True)
class RelayJob:
    """Job descriptor handed to the relay service."""

    job_id: str
    doc_hash: str
    target_chain: str
    receipt: ReceiptData
    attempts: int = 0
    max_attempts: int = 3
    status: str = JOB_STATUS_SUBMITTING
    source_chain: str = "base"

    def payload(self) -> RelayPayload:
        return RelayPayload(
            job_id=self.job_id,
            doc_hash=self.doc_hash,
            source_chain=self.source_chain,
            receipt_type=self.receipt.receipt_type,
            subject_id=self.receipt.subject_id,
            content_hash=self.receipt.content_hash,
            proof_blob=self.receipt.proof_blob,
            immutable_seq=self.receipt.immutable_seq,
        )


@dataclass(frozen=True)
class RelayUpdate:
    """Outcome of one submission attempt."""

    status: str
    attempts: int
    tx_hash: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class RelayResult:
    """Final outcome of ``retry_relay``."""

    success: bool
    attempts: int
    tx_hash: str | None = None
    error: str | None = None

    @property
    def status(self) -> str:
        return JOB_STATUS_PENDING_CONFIRMATION if self.success else JOB_STATUS_FAILED


UpdateCallback = Callable[[RelayUpdate], Awaitable[None]]
SleepFunc = Callable[[float], Awaitable[Any]]


class RelayService:
    """Submits relay transactions, retrying transient failures."""

    def __init__(
        self,
        gateway: ChainGateway | None = None,
        backoff: BackoffPolicy | None = None,
        *,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.gateway = gateway or get_chain_gateway()
        self.backoff = backoff or BackoffPolicy.from_settings()
        self._sleep = sleep

    def _check_preconditions(self, job: RelayJob) -> None:
        if job.status in TERMINAL_STATUSES:
            raise RelayPreconditionError(f"Job {job.job_id} is already {job.status}")
        if job.attempts >= job.max_attempts:
            raise RelayPreconditionError(
                f"Job {job.job_id} has used {job.attempts}/{job.max_attempts} attempts"
            )
        if not is_supported_chain(job.target_chain):
            raise RelayPreconditionError(f"Unsupported target chain {job.target_chain!r}")

    async def retry_relay(self, job: RelayJob, on_update: UpdateCallback) -> RelayResult:
        """Submit ``job`` until it succeeds or its attempt budget is exhausted.

        ``on_update`` is awaited after every attempt, before the next one
        starts. Errors raised by the callback propagate and stop the relay.

        Args:
            job: Descriptor of the job; ``attempts`` counts attempts already made.
            on_update: Receives the status after each attempt.

        Returns:
            The final result. ``success`` implies a transaction hash.

        Raises:
            RelayPreconditionError: If the job has no attempts left, is
                terminal, or targets an unsupported chain.
        """
        self._check_preconditions(job)

        payload = job.payload()
        attempts = job.attempts
        last_error: str | None = None

        while attempts < job.max_attempts:
            attempts += 1
            try:
                tx_hash = await self.gateway.submit_relay(job.target_chain, payload)
            except ChainConfigurationError as exc:
                last_error = str(exc)
                logger.error(
                    "Relay job %s cannot reach %s: %s", job.job_id, job.target_chain, exc
                )
                await on_update(
                    RelayUpdate(status=JOB_STATUS_FAILED, attempts=attempts, error=last_error)
                )
                return RelayResult(success=False, attempts=attempts, error=last_error)
            except ChainError as exc:
                last_error = str(exc)
                exhausted = attempts >= job.max_attempts
                logger.warning(
                    "Relay job %s to %s failed (attempt %d/%d): %s",
                    job.job_id,
                    job.target_chain,
                    attempts,
                    job.max_attempts,
                    exc,
                )
                await on_update(
                    RelayUpdate(
                        status=JOB_STATUS_FAILED if exhausted else JOB_STATUS_SUBMITTING,
                        attempts=attempts,
                        error=last_error,
                    )
                )
                if exhausted:
                    break
                await self._sleep(self.backoff.delay(attempts - job.attempts))
                continue

            logger.info(
                "Relay job %s submitted to %s: %s", job.job_id, job.target_chain, tx_hash
            )
            await on_update(
                RelayUpdate(
                    status=JOB_STATUS_PENDING_CONFIRMATION,
                    attempts=attempts,
                    tx_hash=tx_hash,
                )
            )
            return RelayResult(success=True, attempts=attempts, tx_hash=tx_hash)

        return RelayResult(success=False, attempts=attempts, error=last_error)
