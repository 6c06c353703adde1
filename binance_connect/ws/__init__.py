"""
Streaming connectivity

One WebSocket session multiplexes every subscription:
- ConnectionManager: connection lifecycle and state transitions
- SubscriptionRegistry: desired streams, kept across reconnects
- EventDemultiplexer: control responses vs. data frames
- ReconnectSupervisor: backoff, reconnect and subscription replay
- StreamingSession: consumer-facing facade
"""

from . import streams
from .base import ConnectionState, IWebSocketConnection, IWebSocketTransport
from .connection import ConnectionManager
from .demux import EventDemultiplexer, PendingRequest, PendingRequests
from .messages import ControlMethod, StreamError, StreamEvent, StreamItem, build_command
from .registry import SubscriptionRegistry, SubscriptionState
from .session import StreamingSession
from .streams import ChartInterval
from .supervisor import ReconnectSupervisor
from .transport import WebsocketsConnection, WebsocketsTransport

__all__ = [
    "streams",
    "ChartInterval",
    # Connection
    "ConnectionState",
    "IWebSocketConnection",
    "IWebSocketTransport",
    "ConnectionManager",
    "WebsocketsConnection",
    "WebsocketsTransport",
    # Subscriptions
    "SubscriptionRegistry",
    "SubscriptionState",
    # Frames
    "EventDemultiplexer",
    "PendingRequest",
    "PendingRequests",
    "ControlMethod",
    "StreamEvent",
    "StreamError",
    "StreamItem",
    "build_command",
    # Session
    "ReconnectSupervisor",
    "StreamingSession",
]
