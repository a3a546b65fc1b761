"""Message bridge between the browser agent and the editor backend.

The bridge turns a fire-and-forget duplex channel into awaitable requests,
responses and a subscribable event stream.  Transports are interchangeable as
long as they implement :class:`~bridge.transports.Transport`.
"""

from __future__ import annotations

from .correlation import CorrelationStore, PendingRequest
from .message_bridge import CONNECTED, DISCONNECTED, MessageBridge, Subscription
from .messages import BridgeMessage, MessageKind, Origin
from .transports import (
    LoopbackTransport,
    NativeProcessTransport,
    StdioTransport,
    Transport,
    WebSocketTransport,
)

__all__ = [
    "BridgeMessage",
    "MessageKind",
    "Origin",
    "CorrelationStore",
    "PendingRequest",
    "MessageBridge",
    "Subscription",
    "CONNECTED",
    "DISCONNECTED",
    "Transport",
    "LoopbackTransport",
    "NativeProcessTransport",
    "StdioTransport",
    "WebSocketTransport",
]
