"""Live observer fan-out."""

from .hub import (
    ERROR,
    INITIAL_DATA,
    QUERY,
    QUERY_RESULT,
    UPDATE,
    BroadcastHub,
    Observer,
    encode_message,
)
from .registry import HubRegistry

__all__ = [
    "BroadcastHub",
    "HubRegistry",
    "Observer",
    "encode_message",
    "INITIAL_DATA",
    "UPDATE",
    "QUERY",
    "QUERY_RESULT",
    "ERROR",
]
