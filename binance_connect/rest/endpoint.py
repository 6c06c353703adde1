"""
Endpoint descriptors

An EndpointDescriptor is everything the dispatcher needs to issue one REST
call: verb, path, ordered parameters, security tier, rate-limit weight and
the limit buckets the call counts against. Descriptors are built per call by
the endpoint wrapper layer and never shared.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Union

from ..errors import ConfigurationError


class HttpMethod(str, Enum):
    """HTTP verbs used by the exchange"""
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"


class SecurityTier(str, Enum):
    """How a call is authenticated"""
    NONE = "none"  # Public market data
    SIGNED = "signed"  # Api-key header + timestamp + HMAC signature
    API_KEY = "api_key"  # Api-key header only (e.g. listen keys)

    @property
    def needs_api_key(self) -> bool:
        return self is not SecurityTier.NONE

    @property
    def needs_signature(self) -> bool:
        return self is SecurityTier.SIGNED


# Bucket names used by the default limit configuration
REQUEST_WEIGHT = "REQUEST_WEIGHT"
ORDERS = "ORDERS"

ParamsInput = Union[Mapping[str, Any], Iterable[tuple[str, Any]], None]


@dataclass(frozen=True)
class EndpointDescriptor:
    """
    Description of a single REST call

    Attributes:
        method: HTTP verb
        path: Path below the API host, starting with '/'
        params: Ordered (key, value) pairs
        security: Security tier
        weight: Rate-limit cost of the call (positive)
        limits: Names of the limit buckets this call counts against
    """
    method: HttpMethod
    path: str
    params: tuple[tuple[str, Any], ...] = ()
    security: SecurityTier = SecurityTier.NONE
    weight: int = 1
    limits: tuple[str, ...] = field(default=(REQUEST_WEIGHT,))

    def __post_init__(self) -> None:
        if not isinstance(self.method, HttpMethod):
            try:
                object.__setattr__(self, "method", HttpMethod(str(self.method).upper()))
            except ValueError:
                raise ConfigurationError(f"Unsupported HTTP method: {self.method}") from None
        if not self.path.startswith("/"):
            raise ConfigurationError(f"Endpoint path must start with '/': {self.path!r}")
        if not isinstance(self.weight, int) or isinstance(self.weight, bool) or self.weight <= 0:
            raise ConfigurationError(f"Endpoint weight must be a positive integer: {self.weight!r}")
        keys = [key for key, _ in self.params]
        if len(keys) != len(set(keys)):
            raise ConfigurationError(f"Duplicate parameter keys for {self.path}")
        for reserved in ("signature", "timestamp"):
            if self.security.needs_signature and reserved in keys:
                raise ConfigurationError(f"'{reserved}' is set by the signer, not the caller")

    @classmethod
    def build(
        cls,
        method: Union[HttpMethod, str],
        path: str,
        params: ParamsInput = None,
        security: SecurityTier = SecurityTier.NONE,
        weight: int = 1,
        limits: Iterable[str] = (REQUEST_WEIGHT,),
    ) -> "EndpointDescriptor":
        """
        Convenience constructor accepting a mapping or pair list

        None-valued parameters are dropped, as optional request fields are.
        """
        if params is None:
            pairs: list[tuple[str, Any]] = []
        elif isinstance(params, Mapping):
            pairs = list(params.items())
        else:
            pairs = list(params)

        return cls(
            method=method,
            path=path,
            params=tuple((str(k), v) for k, v in pairs if v is not None),
            security=security,
            weight=weight,
            limits=tuple(limits),
        )

    def describe(self) -> str:
        return f"{self.method.value} {self.path}"
