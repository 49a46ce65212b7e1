# src/anchor_relay/schemas/__init__.py
"""
Pydantic schemas for API request/response models.

All payloads use camelCase field names on the wire.
"""

from .bridge import (
    BridgeJobResponse,
    CrossChainStatusResponse,
    MonitorStatsResponse,
    RelayRequest,
    RelayResponse,
    RelayStatusResponse,
)
from .receipt import ReceiptCreate, ReceiptLookupResponse, ReceiptResponse

__all__ = [
    "BridgeJobResponse", "CrossChainStatusResponse",
    "MonitorStatsResponse", "RelayRequest",
    "RelayResponse", "RelayStatusResponse",
    "ReceiptCreate", "ReceiptLookupResponse", "ReceiptResponse",
]
