"""System and operational endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from anchor_relay.api.dependencies import CoordinatorDep, GatewayDep
from anchor_relay.core.settings import settings
from anchor_relay.services.chains import SUPPORTED_CHAINS

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/config")
async def get_public_config() -> dict[str, Any]:
    """Return a sanitized snapshot of runtime configuration.

    Excludes secrets, RPC URLs and connection strings.
    """
    return {
        "app": {
            "name": settings.app_name,
            "version": settings.app_version,
        },
        "chains": {
            "source": settings.source_chain,
            "targets": list(SUPPORTED_CHAINS),
            "requiredConfirmations": settings.required_confirmations,
            "simulation": settings.chain_simulation_enabled,
            "rpcConfigured": {
                chain: bool(url) for chain, url in settings.chain_rpc_urls.items()
            },
        },
        "relay": {
            "maxAttempts": settings.relay_max_attempts,
            "backoffBaseSeconds": settings.relay_backoff_base_seconds,
            "backoffFactor": settings.relay_backoff_factor,
            "backoffMaxSeconds": settings.relay_backoff_max_seconds,
        },
        "monitor": {
            "pollIntervalSeconds": settings.monitor_poll_interval_seconds,
            "maxPolls": settings.monitor_max_polls,
            "maxDurationSeconds": settings.monitor_max_duration_seconds,
        },
    }


@router.get("/chains/health")
async def get_chain_health(
    gateway: GatewayDep,
    coordinator: CoordinatorDep,
) -> dict[str, Any]:
    """Return per-chain backend state, circuit breakers and RPC metrics."""
    return {
        "chains": gateway.describe(),
        "activeJobs": len(coordinator.active_job_ids),
    }
