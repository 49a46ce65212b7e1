# src/anchor_relay/services/__init__.py
"""Business logic services for the relay."""

from .monitor import BridgeMonitor
from .pipeline import RelayCoordinator
from .relay import RelayService

__all__ = [
    "BridgeMonitor",
    "RelayCoordinator",
    "RelayService",
]
