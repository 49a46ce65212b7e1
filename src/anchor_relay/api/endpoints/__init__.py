# src/anchor_relay/api/endpoints/__init__.py
"""API endpoint modules."""

from .bridge import router as bridge_router
from .receipts import router as receipts_router
from .system import router as system_router

__all__ = [
    "bridge_router",
    "receipts_router",
    "system_router",
]
