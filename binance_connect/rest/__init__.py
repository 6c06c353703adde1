"""
REST connectivity

Endpoint descriptor -> signer -> rate limiter -> transport -> classified result.
"""

from .dispatcher import API_KEY_HEADER, RestDispatcher
from .endpoint import ORDERS, REQUEST_WEIGHT, EndpointDescriptor, HttpMethod, SecurityTier
from .error_codes import CommonCode, StreamErrorCode, code_range, describe_code
from .rate_limiter import (
    FUTURES_LIMITS,
    SPOT_LIMITS,
    Admission,
    AdmissionVerdict,
    FixedWindowRateLimiter,
    IRateLimiter,
    RateLimit,
    Reservation,
    create_rate_limiter,
)
from .signer import RequestSigner, canonicalize, sign, verify
from .transport import AiohttpTransport, HttpResponse, IHttpTransport

__all__ = [
    # Dispatch
    "RestDispatcher",
    "API_KEY_HEADER",
    # Endpoints
    "EndpointDescriptor",
    "HttpMethod",
    "SecurityTier",
    "REQUEST_WEIGHT",
    "ORDERS",
    # Error codes
    "CommonCode",
    "StreamErrorCode",
    "code_range",
    "describe_code",
    # Rate limiting
    "IRateLimiter",
    "FixedWindowRateLimiter",
    "RateLimit",
    "Admission",
    "AdmissionVerdict",
    "Reservation",
    "SPOT_LIMITS",
    "FUTURES_LIMITS",
    "create_rate_limiter",
    # Signing
    "RequestSigner",
    "canonicalize",
    "sign",
    "verify",
    # Transport
    "IHttpTransport",
    "AiohttpTransport",
    "HttpResponse",
]
