"""
HTTP transport

The dispatcher talks to the network through IHttpTransport so the REST path
can be exercised without I/O. AiohttpTransport is the production
implementation; it keeps one ClientSession per transport.
"""
import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import aiohttp
from loguru import logger

from ..errors import DecodeError, TransportError


@dataclass
class HttpResponse:
    """Raw response as seen by the dispatcher"""
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""

    def json(self) -> Any:
        """
        Decode the body as JSON

        An empty body decodes to an empty dict.

        Raises:
            DecodeError: If the body is not valid JSON
        """
        if not self.body:
            return {}
        try:
            return json.loads(self.body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise DecodeError(f"Invalid JSON body (status {self.status}): {e}") from e

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup"""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class IHttpTransport(ABC):
    """Interface for performing one HTTP exchange"""

    @abstractmethod
    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None
    ) -> HttpResponse:
        """
        Send a request and read the full response

        Raises:
            TransportError: Connection or timeout failure
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release network resources"""
        pass


class AiohttpTransport(IHttpTransport):
    """HTTP transport backed by a shared aiohttp ClientSession"""

    def __init__(
        self,
        timeout: float = 10.0,
        headers: Optional[dict[str, str]] = None
    ):
        """
        Initialize transport

        Args:
            timeout: Total request timeout in seconds
            headers: Default headers for every request
        """
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.headers = headers or {
            "User-Agent": "binance-connect/0.1.0"
        }
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=self.headers)
        return self._session

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None
    ) -> HttpResponse:
        session = self._get_session()
        try:
            async with session.request(method, url, headers=dict(headers or {})) as response:
                body = await response.read()
                return HttpResponse(
                    status=response.status,
                    headers=dict(response.headers),
                    body=body,
                )
        except aiohttp.ClientError as e:
            logger.warning(f"HTTP {method} {url.split('?', 1)[0]} failed: {e}")
            raise TransportError(f"HTTP request failed: {e}") from e
        except asyncio.TimeoutError as e:
            logger.warning(f"HTTP {method} {url.split('?', 1)[0]} timed out")
            raise TransportError("HTTP request timed out") from e

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
            logger.info("Closed HTTP session")
        self._session = None
