"""
Error taxonomy for the connectivity layer

Every failure raised by the REST and streaming paths derives from
BinanceConnectError and carries an ErrorKind:

- CONFIGURATION: bad credential or descriptor, never retried
- RATE_LIMITED: local admission refused or server-reported limit
- TRANSPORT: connection / timeout / 5xx failures, retried with backoff
- PROTOCOL: malformed or unexpected server response
- REJECTED: 4xx semantic rejection, surfaced verbatim, never retried
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Top-level error classification"""
    CONFIGURATION = "configuration"
    RATE_LIMITED = "rate_limited"
    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    REJECTED = "rejected"


class BinanceConnectError(Exception):
    """Base class for all connectivity errors"""

    kind: ErrorKind = ErrorKind.PROTOCOL
    retryable: bool = False


class ConfigurationError(BinanceConnectError):
    """Bad credential, endpoint descriptor or missing configuration"""
    kind = ErrorKind.CONFIGURATION


class RateLimitReason(str, Enum):
    """Why a call was refused by a rate limit"""
    WAIT_TOO_LONG = "wait_too_long"  # Local wait exceeds caller bound
    OVER_CAPACITY = "over_capacity"  # Weight larger than a bucket budget
    TOO_MANY_REQUESTS = "too_many_requests"  # 429 / -1003
    IP_BANNED = "ip_banned"  # 418


class RateLimitedError(BinanceConnectError):
    """Call refused by the local limiter or by the server"""
    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        reason: RateLimitReason = RateLimitReason.TOO_MANY_REQUESTS,
        source: str = "server",
        retry_at: Optional[float] = None,
    ):
        super().__init__(message)
        self.reason = reason
        self.source = source
        self.retry_at = retry_at

    @property
    def is_ip_ban(self) -> bool:
        return self.reason == RateLimitReason.IP_BANNED


class TransportError(BinanceConnectError):
    """Connection, timeout or server-side failure"""
    kind = ErrorKind.TRANSPORT
    retryable = True


class ServerError(TransportError):
    """5xx response from the exchange"""

    def __init__(self, message: str, status: int, code: Optional[int] = None):
        super().__init__(message)
        self.status = status
        self.code = code


class NotConnectedError(TransportError):
    """Send attempted while the connection is not CONNECTED"""
    retryable = False


class ConnectionLostError(TransportError):
    """Transport closed or errored underneath an open connection"""


class RequestTimeoutError(TransportError):
    """Control request did not receive its response in time"""


class RequestCancelledError(TransportError):
    """Pending control request dropped because its connection went away"""


class SessionTerminatedError(TransportError):
    """Streaming session gave up reconnecting or was closed"""
    retryable = False


class ProtocolError(BinanceConnectError):
    """Malformed or unexpected response"""
    kind = ErrorKind.PROTOCOL


class DecodeError(ProtocolError):
    """Frame or body could not be decoded"""


class UnexpectedResponseError(ProtocolError):
    """Control response with no matching pending request"""

    def __init__(self, message: str, correlation_id=None):
        super().__init__(message)
        self.correlation_id = correlation_id


class RejectedError(BinanceConnectError):
    """Request rejected by the exchange (4xx semantic rejection)"""
    kind = ErrorKind.REJECTED

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[int] = None,
    ):
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message

    def __str__(self) -> str:
        if self.code is not None:
            return f"({self.code}) {self.message}"
        return self.message


class ClockSkewError(RejectedError):
    """Request timestamp outside the server's recvWindow (-1021)"""


class InvalidSignatureError(RejectedError):
    """Signature rejected by the server (-1022)"""


class FirewallRejectedError(RejectedError):
    """Web application firewall limit reached (HTTP 403)"""


class StreamRequestError(RejectedError):
    """Control request rejected by the stream server"""
