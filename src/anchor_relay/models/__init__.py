# src/anchor_relay/models/__init__.py
"""SQLAlchemy models for the anchor relay service."""

from .bridge_job import BridgeJob
from .operator import Operator
from .receipt import Receipt

__all__ = [
    "BridgeJob",
    "Operator",
    "Receipt",
]
