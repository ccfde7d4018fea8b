"""Realtime push channel: websocket transport and frame envelope."""

from .envelope import Envelope, RealtimeEvent
from .transport import STATE_CHANGED, RealtimeTransport, TransportState

__all__ = [
    "RealtimeTransport",
    "TransportState",
    "STATE_CHANGED",
    "Envelope",
    "RealtimeEvent",
]
