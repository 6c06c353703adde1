"""
Credential store

Holds the API key/secret pair owned by one client instance. A malformed
credential is rejected here, at construction, so the signer never sees one.
"""
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from .errors import ConfigurationError


@dataclass(frozen=True)
class Credential:
    """API key and secret (immutable)"""
    key: str
    secret: str

    def __post_init__(self) -> None:
        for name in ("key", "secret"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise ConfigurationError(f"API {name} must be a non-empty string")
            if value != value.strip() or any(c.isspace() for c in value):
                raise ConfigurationError(f"API {name} must not contain whitespace")
            if not value.isascii():
                raise ConfigurationError(f"API {name} must be ASCII")

    def __repr__(self) -> str:
        return f"Credential(key={self.key[:4]}..., secret=***)"


class CredentialStore:
    """
    Stateless lookup of the client's credential

    Public endpoints work without one; SIGNED and API-KEY-ONLY endpoints
    require it.
    """

    def __init__(self, credential: Optional[Credential] = None):
        self._credential = credential

    @classmethod
    def from_keys(
        cls,
        api_key: Optional[str],
        api_secret: Optional[str]
    ) -> "CredentialStore":
        """
        Build a store from raw key/secret values

        Both or neither must be given.
        """
        if not api_key and not api_secret:
            return cls()
        if not api_key or not api_secret:
            raise ConfigurationError("API key and secret must be provided together")
        return cls(Credential(api_key, api_secret))

    @property
    def has_credential(self) -> bool:
        return self._credential is not None

    def get(self) -> Optional[Credential]:
        return self._credential

    def require(self, purpose: str = "this call") -> Credential:
        """
        Return the credential or fail

        Raises:
            ConfigurationError: If no credential is configured
        """
        if self._credential is None:
            logger.error(f"Credential required for {purpose} but none configured")
            raise ConfigurationError(f"API credential required for {purpose}")
        return self._credential
