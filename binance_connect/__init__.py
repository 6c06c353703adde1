"""
Binance Connect

Connectivity core for the Binance spot and futures APIs:
- Request signing (HMAC-SHA256 over a canonical query)
- Shared fixed-window rate limiting with server feedback
- REST dispatch with bounded retries and error classification
- Multiplexed WebSocket streams that survive disconnects

Usage (REST):
    async with BinanceClient() as client:
        ticker = await client.call(EndpointDescriptor.build(
            "GET", "/api/v3/ticker/price", {"symbol": "BTCUSDT"}, weight=2
        ))

Usage (Streaming):
    session = client.stream()
    await session.start()
    await session.subscribe(streams.agg_trade("BTCUSDT"))

    async for item in session.events():
        ...
"""

from .client import BinanceClient
from .clock import Clock, SystemClock
from .config import Market, RestSettings, Settings, StreamSettings
from .credentials import Credential, CredentialStore
from .errors import (
    BinanceConnectError,
    ClockSkewError,
    ConfigurationError,
    ConnectionLostError,
    DecodeError,
    ErrorKind,
    FirewallRejectedError,
    InvalidSignatureError,
    NotConnectedError,
    ProtocolError,
    RateLimitedError,
    RateLimitReason,
    RejectedError,
    RequestCancelledError,
    RequestTimeoutError,
    ServerError,
    SessionTerminatedError,
    StreamRequestError,
    TransportError,
    UnexpectedResponseError,
)
from .log_config import configure_logging
from .rest import EndpointDescriptor, HttpMethod, SecurityTier
from .ws import StreamError, StreamEvent, StreamingSession, streams

__version__ = "0.1.0"

__all__ = [
    # Client
    "BinanceClient",
    "Clock",
    "SystemClock",
    "configure_logging",
    # Configuration
    "Settings",
    "RestSettings",
    "StreamSettings",
    "Market",
    # Credentials
    "Credential",
    "CredentialStore",
    # REST
    "EndpointDescriptor",
    "HttpMethod",
    "SecurityTier",
    # Streaming
    "StreamingSession",
    "StreamEvent",
    "StreamError",
    "streams",
    # Errors
    "BinanceConnectError",
    "ErrorKind",
    "ConfigurationError",
    "RateLimitedError",
    "RateLimitReason",
    "TransportError",
    "ServerError",
    "NotConnectedError",
    "ConnectionLostError",
    "RequestTimeoutError",
    "RequestCancelledError",
    "SessionTerminatedError",
    "ProtocolError",
    "DecodeError",
    "UnexpectedResponseError",
    "RejectedError",
    "ClockSkewError",
    "InvalidSignatureError",
    "FirewallRejectedError",
    "StreamRequestError",
]
