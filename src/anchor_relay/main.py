# src/anchor_relay/main.py
"""Main entry point for the Anchor Relay service."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from anchor_relay.api.endpoints import bridge_router, receipts_router, system_router
from anchor_relay.core.settings import settings
from anchor_relay.services.chains import get_chain_gateway
from anchor_relay.services.pipeline import RelayCoordinator, get_relay_coordinator

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Anchor Relay API",
    description="Relays anchored receipts from the source chain to target chains",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(bridge_router, prefix="/api")
app.include_router(receipts_router, prefix="/api")
app.include_router(system_router, prefix="/api")


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@app.on_event("startup")
async def on_startup() -> None:
    configure_logging()
    coordinator = get_relay_coordinator()
    app.state.relay_coordinator = coordinator
    if settings.relay_recover_on_startup:
        coordinator.recover()
    logger.info("Relaying to %s", ", ".join(coordinator.gateway.chains) or "no chains")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    coordinator: RelayCoordinator | None = getattr(app.state, "relay_coordinator", None)
    if coordinator:
        await coordinator.shutdown()
    await get_chain_gateway().close()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": "Relays anchored receipts from the source chain to target chains",
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("anchor_relay.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
