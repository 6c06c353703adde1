"""
Request signing

Signed endpoints authenticate with an HMAC-SHA256 tag over the query string.
Parameters are canonicalized (sorted by key) before signing so that the same
semantic request always yields the same signature, whatever order the caller
supplied them in.
"""
import hashlib
import hmac
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Union
from urllib.parse import urlencode

from ..clock import Clock, SystemClock
from ..credentials import Credential

Params = Union[Mapping[str, Any], Iterable[tuple[str, Any]]]


def _format_value(value: Any) -> str:
    """Render a parameter value the way the exchange expects"""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(f'"{_format_value(v)}"' for v in value) + "]"
    return str(value)


def canonicalize(params: Params) -> str:
    """
    Encode parameters as a key-sorted query string

    Args:
        params: Mapping or iterable of (key, value) pairs

    Returns:
        URL-encoded query string, keys in lexicographic order
    """
    items = params.items() if isinstance(params, Mapping) else params
    pairs = sorted(
        ((str(k), _format_value(v)) for k, v in items if v is not None),
        key=lambda kv: kv[0],
    )
    return urlencode(pairs)


def sign(canonical_params: str, secret: str) -> str:
    """HMAC-SHA256 of the canonical query, hex encoded"""
    return hmac.new(
        secret.encode("utf-8"),
        canonical_params.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def verify(canonical_params: str, secret: str, signature: str) -> bool:
    """Constant-time check of a signature against the canonical query"""
    return hmac.compare_digest(sign(canonical_params, secret), signature)


class RequestSigner:
    """
    Builds signed query strings for one credential

    The timestamp is taken from the clock when sign_query() runs, which the
    dispatcher calls immediately before each transport attempt.
    """

    def __init__(
        self,
        credential: Credential,
        clock: Optional[Clock] = None,
        recv_window: Optional[int] = None
    ):
        self.credential = credential
        self.clock = clock or SystemClock()
        self.recv_window = recv_window

    def sign_query(self, params: Params) -> str:
        """
        Canonicalize, stamp and sign request parameters

        Args:
            params: Caller parameters (without timestamp/signature)

        Returns:
            Query string ending in '&signature=<hex>'
        """
        items = dict(params.items() if isinstance(params, Mapping) else params)
        items["timestamp"] = self.clock.time_ms()
        if self.recv_window is not None and "recvWindow" not in items:
            items["recvWindow"] = self.recv_window

        query = canonicalize(items)
        signature = sign(query, self.credential.secret)
        return f"{query}&signature={signature}"
