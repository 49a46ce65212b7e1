"""Target-chain access for relay submission and confirmation lookups.

This module provides everything the relay pipeline needs to talk to the
chains a receipt can be relayed to:

- the enumerated set of supported target chains
- a JSON-RPC backend (httpx) with a circuit breaker and metrics per chain
- an in-process simulated backend for chains without an RPC endpoint
- ``ChainGateway``, which routes calls to the backend configured for a chain
"""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from anchor_relay.core.settings import Settings, settings

# Configure logger for this module
logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
TX_STATUS_REVERTED = "0x0"


class TargetChain(str, Enum):
    """Chains a receipt can be relayed to."""

    POLYGON = "polygon"
    ARBITRUM = "arbitrum"
    OPTIMISM = "optimism"


SUPPORTED_CHAINS: tuple[str, ...] = tuple(chain.value for chain in TargetChain)


def is_supported_chain(name: str) -> bool:
    """Return True if ``name`` is one of the enumerated target chains."""
    return name in SUPPORTED_CHAINS


class ChainError(RuntimeError):
    """Base exception raised for chain access failures.

    Plain ``ChainError`` instances are transient and worth retrying.
    """


class ChainConfigurationError(ChainError):
    """Raised when a chain cannot be used at all (missing RPC, sender or contract).

    Retrying does not help, so the relay service fails the job immediately.
    """


class ChainUnavailableError(ChainError):
    """Raised when the circuit breaker for a chain is open."""


class CircuitState(Enum):
    """Circuit breaker states for fault tolerance."""

    CLOSED = "closed"      # Normal operation - requests allowed
    OPEN = "open"          # Circuit is open - requests blocked
    HALF_OPEN = "half_open"  # Testing if the node is back - limited requests allowed


@dataclass
class ChainMetrics:
    """Metrics collection for RPC calls against one chain."""

    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_response_time: float = 0.0
    min_response_time: float = float('inf')
    max_response_time: float = 0.0
    error_counts_by_type: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    method_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_request(
        self, method: str, response_time: float, success: bool, error_type: str | None = None
    ) -> None:
        """Record a request metric."""
        self.request_count += 1
        self.total_response_time += response_time
        self.min_response_time = min(self.min_response_time, response_time)
        self.max_response_time = max(self.max_response_time, response_time)
        self.method_counts[method] += 1

        if success:
            self.success_count += 1
        else:
            self.error_count += 1
            if error_type:
                self.error_counts_by_type[error_type] += 1

    def get_average_response_time(self) -> float:
        """Get average response time."""
        return self.total_response_time / self.request_count if self.request_count > 0 else 0.0

    def get_success_rate(self) -> float:
        """Get success rate as a percentage."""
        return (self.success_count / self.request_count * 100) if self.request_count > 0 else 0.0

    def as_dict(self) -> dict[str, Any]:
        """Return a JSON-friendly snapshot."""
        return {
            "request_count": self.request_count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "success_rate": self.get_success_rate(),
            "average_response_time": self.get_average_response_time(),
            "min_response_time": (
                self.min_response_time if self.min_response_time != float('inf') else 0.0
            ),
            "max_response_time": self.max_response_time,
            "error_counts_by_type": dict(self.error_counts_by_type),
            "method_counts": dict(self.method_counts),
        }


@dataclass
class CircuitBreaker:
    """Circuit breaker guarding one chain's RPC endpoint."""

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    success_threshold: int = 3

    _state: CircuitState = CircuitState.CLOSED
    _failure_count: int = 0
    _success_count: int = 0
    _last_failure_time: float = 0.0

    def is_open(self) -> bool:
        """Check if circuit is open."""
        if self._state == CircuitState.OPEN:
            # Check if we should transition to half-open
            if time.time() - self._last_failure_time > self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
            return self._state == CircuitState.OPEN
        return False

    def record_success(self) -> None:
        """Record a successful operation."""
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def record_failure(self) -> None:
        """Record a failed operation."""
        self._failure_count += 1
        self._last_failure_time = time.time()

        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN

    def get_state(self) -> CircuitState:
        """Get the current circuit breaker state."""
        return self._state

    def status(self) -> dict[str, Any]:
        """Return the breaker state for health endpoints."""
        return {
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "last_failure_time": self._last_failure_time,
            "is_open": self.is_open(),
        }


@dataclass(frozen=True)
class ChainConfig:
    """Immutable configuration for one target chain."""

    chain: str
    rpc_url: str | None
    sender_address: str | None
    contract_address: str | None
    timeout_seconds: float
    required_confirmations: int


@dataclass(frozen=True)
class RelayPayload:
    """Receipt data submitted to a target chain."""

    job_id: str
    doc_hash: str
    source_chain: str
    receipt_type: str
    subject_id: str
    content_hash: str
    proof_blob: Mapping[str, Any]
    immutable_seq: int

    def canonical_bytes(self) -> bytes:
        """Return a deterministic serialization of the payload."""
        body = {
            "docHash": self.doc_hash,
            "sourceChain": self.source_chain,
            "type": self.receipt_type,
            "subjectId": self.subject_id,
            "contentHash": self.content_hash,
            "proof": self.proof_blob,
            "immutableSeq": self.immutable_seq,
        }
        return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def calldata(self) -> str:
        """Return the payload as hex calldata for the relay contract."""
        return "0x" + self.canonical_bytes().hex()


@dataclass(frozen=True)
class TransactionState:
    """Snapshot of a relay transaction as reported by the target chain."""

    confirmations: int
    block_number: int | None = None
    dropped: bool = False
    reverted: bool = False

    @property
    def failed(self) -> bool:
        """Return True when the chain reports the transaction will never confirm."""
        return self.dropped or self.reverted


def load_chain_configs(source: Settings | None = None) -> dict[str, ChainConfig]:
    """Build per-chain configuration objects from settings."""
    cfg = source or settings
    rpc_urls = cfg.chain_rpc_urls
    required = cfg.required_confirmations
    return {
        chain: ChainConfig(
            chain=chain,
            rpc_url=rpc_urls.get(chain),
            sender_address=cfg.relay_sender_address,
            contract_address=cfg.relay_contract_address,
            timeout_seconds=float(cfg.chain_http_timeout_seconds),
            required_confirmations=required[chain],
        )
        for chain in SUPPORTED_CHAINS
    }


class ChainBackend(ABC):
    """Access to a single target chain."""

    chain: str

    @abstractmethod
    async def submit(self, payload: RelayPayload) -> str:
        """Submit ``payload`` and return the transaction hash."""

    @abstractmethod
    async def get_transaction_state(self, tx_hash: str) -> TransactionState:
        """Return the confirmation state of ``tx_hash``."""

    @abstractmethod
    def describe(self) -> dict[str, Any]:
        """Return backend health and metrics for monitoring endpoints."""

    async def close(self) -> None:
        """Release network resources."""
        return None


class JsonRpcChainBackend(ChainBackend):
    """EVM JSON-RPC backend using an unlocked relayer account on the node."""

    def __init__(self, config: ChainConfig) -> None:
        self.chain = config.chain
        self.config = config
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._circuit_breaker = CircuitBreaker()
        self._metrics = ChainMetrics()
        self._ids = itertools.count(1)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if not self.config.rpc_url:
            raise ChainConfigurationError(f"No RPC endpoint configured for {self.chain}")

        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.rpc_url,
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                )
        return self._client

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        if self._circuit_breaker.is_open():
            raise ChainUnavailableError(f"{self.chain} circuit breaker is open")

        client = await self._ensure_client()
        body = {"jsonrpc": JSONRPC_VERSION, "id": next(self._ids), "method": method, "params": params}

        start_time = time.time()
        error_type: str | None = None
        try:
            response = await client.post("", json=body)
            if response.status_code >= httpx.codes.INTERNAL_SERVER_ERROR:
                error_type = f"http_{response.status_code}"
                raise ChainError(f"{self.chain} RPC responded with {response.status_code}")
            payload = response.json()
            if not isinstance(payload, dict):
                error_type = "invalid_payload"
                raise ChainError(f"{self.chain} RPC returned a non-object reply")
        except httpx.HTTPError as exc:
            error_type = "network_error"
            self._circuit_breaker.record_failure()
            raise ChainError(f"{self.chain} RPC request failed: {exc}") from exc
        except ChainError:
            self._circuit_breaker.record_failure()
            raise
        except ValueError as exc:
            error_type = "invalid_json"
            self._circuit_breaker.record_failure()
            raise ChainError(f"{self.chain} RPC returned invalid JSON") from exc
        finally:
            self._metrics.record_request(
                method, time.time() - start_time, error_type is None, error_type
            )

        # The node answered; a JSON-RPC error is an application failure, not an outage.
        self._circuit_breaker.record_success()
        if payload.get("error"):
            error = payload["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ChainError(f"{self.chain} {method} failed: {message}")
        return payload.get("result")

    async def submit(self, payload: RelayPayload) -> str:
        if not (self.config.sender_address and self.config.contract_address):
            raise ChainConfigurationError(
                "RELAY_SENDER_ADDRESS and RELAY_CONTRACT_ADDRESS must be set to relay"
            )
        tx_hash = await self._rpc(
            "eth_sendTransaction",
            [
                {
                    "from": self.config.sender_address,
                    "to": self.config.contract_address,
                    "data": payload.calldata(),
                }
            ],
        )
        if not isinstance(tx_hash, str) or not tx_hash.startswith("0x"):
            raise ChainError(f"{self.chain} returned an invalid transaction hash: {tx_hash!r}")
        return tx_hash

    async def get_transaction_state(self, tx_hash: str) -> TransactionState:
        receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
        if receipt is None:
            transaction = await self._rpc("eth_getTransactionByHash", [tx_hash])
            if transaction is None:
                return TransactionState(confirmations=0, dropped=True)
            return TransactionState(confirmations=0)
        if not isinstance(receipt, dict):
            raise ChainError(f"{self.chain} returned a malformed receipt for {tx_hash}")

        block_number = _hex_to_int(receipt.get("blockNumber"))
        if receipt.get("status") == TX_STATUS_REVERTED:
            return TransactionState(confirmations=0, block_number=block_number, reverted=True)
        if block_number is None:
            return TransactionState(confirmations=0)

        head = _hex_to_int(await self._rpc("eth_blockNumber", []))
        if head is None:
            raise ChainError(f"{self.chain} returned no block number")
        return TransactionState(
            confirmations=max(0, head - block_number + 1),
            block_number=block_number,
        )

    def describe(self) -> dict[str, Any]:
        return {
            "backend": "json-rpc",
            "circuit_breaker": self._circuit_breaker.status(),
            "metrics": self._metrics.as_dict(),
        }

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None


def _hex_to_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 16)
    except ValueError as exc:
        raise ChainError(f"Invalid hex quantity from RPC: {value!r}") from exc


class SimulatedChainBackend(ChainBackend):
    """In-process stand-in for a chain, meant for development and tests only.

    Every confirmation lookup advances the simulated head by
    ``blocks_per_poll``. Chains listed as failing reject every submission.
    A transaction is forgotten once a lookup reports ``settle_depth``
    confirmations; later lookups of it report it dropped.
    """

    def __init__(
        self,
        chain: str,
        *,
        blocks_per_poll: int = 3,
        fail_submissions: bool = False,
        settle_depth: int | None = None,
    ) -> None:
        self.chain = chain
        self.blocks_per_poll = max(1, blocks_per_poll)
        self.fail_submissions = fail_submissions
        self.settle_depth = settle_depth
        self._head = 1_000
        self._mined_at: dict[str, int] = {}
        self._nonce = itertools.count()
        self._metrics = ChainMetrics()

    async def submit(self, payload: RelayPayload) -> str:
        start_time = time.time()
        if self.fail_submissions:
            self._metrics.record_request(
                "submit", time.time() - start_time, False, "simulated_failure"
            )
            raise ChainError(f"Simulated submission failure on {self.chain}")

        seed = f"{self.chain}:{payload.job_id}:{payload.content_hash}:{next(self._nonce)}"
        tx_hash = "0x" + hashlib.sha256(seed.encode("utf-8")).hexdigest()
        # Mined in the next block; the first lookup sees it.
        self._mined_at[tx_hash] = self._head + 1
        self._metrics.record_request("submit", time.time() - start_time, True)
        return tx_hash

    async def get_transaction_state(self, tx_hash: str) -> TransactionState:
        start_time = time.time()
        mined_at = self._mined_at.get(tx_hash)
        if mined_at is None:
            self._metrics.record_request("get_transaction_state", time.time() - start_time, True)
            return TransactionState(confirmations=0, dropped=True)

        self._head += self.blocks_per_poll
        confirmations = max(0, self._head - mined_at + 1)
        if self.settle_depth is not None and confirmations >= self.settle_depth:
            del self._mined_at[tx_hash]
        self._metrics.record_request("get_transaction_state", time.time() - start_time, True)
        return TransactionState(confirmations=confirmations, block_number=mined_at)

    def describe(self) -> dict[str, Any]:
        return {
            "backend": "simulated",
            "fail_submissions": self.fail_submissions,
            "head": self._head,
            "tracked_transactions": len(self._mined_at),
            "metrics": self._metrics.as_dict(),
        }


class ChainGateway:
    """Routes relay calls to the backend configured for each target chain."""

    def __init__(
        self,
        backends: Mapping[str, ChainBackend],
        required_confirmations: Mapping[str, int] | None = None,
    ) -> None:
        self._backends = dict(backends)
        self._required = dict(required_confirmations or settings.required_confirmations)

    @property
    def chains(self) -> list[str]:
        """Return the chains that have a backend."""
        return sorted(self._backends)

    def backend(self, chain: str) -> ChainBackend:
        """Return the backend for ``chain`` or raise if none is configured."""
        if not is_supported_chain(chain):
            raise ChainConfigurationError(
                f"Unsupported chain {chain!r}; supported: {', '.join(SUPPORTED_CHAINS)}"
            )
        backend = self._backends.get(chain)
        if backend is None:
            raise ChainConfigurationError(f"No backend configured for {chain}")
        return backend

    def required_confirmations(self, chain: str) -> int:
        """Return the confirmation depth required on ``chain``."""
        if chain not in self._required:
            raise ChainConfigurationError(f"No confirmation threshold configured for {chain}")
        return self._required[chain]

    async def submit_relay(self, chain: str, payload: RelayPayload) -> str:
        """Submit a relay transaction to ``chain``."""
        return await self.backend(chain).submit(payload)

    async def get_transaction_state(self, chain: str, tx_hash: str) -> TransactionState:
        """Return the confirmation state of ``tx_hash`` on ``chain``."""
        return await self.backend(chain).get_transaction_state(tx_hash)

    def describe(self) -> dict[str, Any]:
        """Return per-chain backend information."""
        return {
            chain: {
                **backend.describe(),
                "required_confirmations": self._required.get(chain),
            }
            for chain, backend in sorted(self._backends.items())
        }

    async def close(self) -> None:
        """Close every backend."""
        for backend in self._backends.values():
            await backend.close()


def build_chain_gateway(
    source: Settings | None = None,
    *,
    chains: Iterable[str] = SUPPORTED_CHAINS,
) -> ChainGateway:
    """Create a gateway from settings.

    Chains with an RPC URL use JSON-RPC; the rest use the simulator when
    simulation is enabled and are left unconfigured otherwise.
    """
    cfg = source or settings
    configs = load_chain_configs(cfg)
    failing = {name.lower() for name in cfg.simulated_failing_chains}
    backends: dict[str, ChainBackend] = {}
    for chain in chains:
        config = configs[chain]
        if config.rpc_url:
            backends[chain] = JsonRpcChainBackend(config)
        elif cfg.chain_simulation_enabled:
            backends[chain] = SimulatedChainBackend(
                chain,
                blocks_per_poll=cfg.simulated_blocks_per_poll,
                fail_submissions=chain in failing,
                settle_depth=cfg.required_confirmations.get(chain),
            )
        else:
            logger.warning("No RPC endpoint for %s and simulation disabled", chain)
    return ChainGateway(backends, cfg.required_confirmations)


class _ChainGatewaySingleton:
    """Singleton wrapper for ChainGateway."""

    _instance: ChainGateway | None = None

    @classmethod
    def get_instance(cls) -> ChainGateway:
        """Get or create the singleton ChainGateway instance."""
        if cls._instance is None:
            cls._instance = build_chain_gateway()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None


def get_chain_gateway() -> ChainGateway:
    """Return a singleton chain gateway instance."""
    return _ChainGatewaySingleton.get_instance()
