"""
WebSocket transport backed by the websockets library

Protocol-level ping/pong is answered by the library; ping_interval and
ping_timeout make a silent connection fail instead of hanging.
"""
import asyncio
from typing import Optional

import websockets
from loguru import logger
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import ConnectionLostError, TransportError
from .base import Frame, IWebSocketConnection, IWebSocketTransport


class WebsocketsConnection(IWebSocketConnection):
    """Adapter over a websockets client connection"""

    def __init__(self, ws, url: str):
        self.ws = ws
        self.url = url

    async def send(self, data: str) -> None:
        try:
            await self.ws.send(data)
        except ConnectionClosed as e:
            raise ConnectionLostError(f"WebSocket closed while sending: {e}") from e
        except WebSocketException as e:
            raise ConnectionLostError(f"WebSocket send failed: {e}") from e

    async def recv(self) -> Frame:
        try:
            return await self.ws.recv()
        except ConnectionClosed as e:
            raise ConnectionLostError(f"WebSocket connection closed: {e}") from e
        except WebSocketException as e:
            raise ConnectionLostError(f"WebSocket receive failed: {e}") from e

    async def close(self) -> None:
        try:
            await self.ws.close()
        except WebSocketException as e:
            logger.debug(f"Error closing WebSocket {self.url}: {e}")


class WebsocketsTransport(IWebSocketTransport):
    """Opens connections with websockets.connect()"""

    def __init__(
        self,
        ping_interval: Optional[float] = 20.0,
        ping_timeout: Optional[float] = 20.0,
        open_timeout: float = 10.0,
        max_size: Optional[int] = 2 ** 22
    ):
        """
        Initialize transport

        Args:
            ping_interval: Seconds between keepalive pings
            ping_timeout: Seconds to wait for a pong
            open_timeout: Handshake timeout
            max_size: Largest accepted frame in bytes
        """
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.open_timeout = open_timeout
        self.max_size = max_size

    async def connect(self, url: str) -> IWebSocketConnection:
        try:
            ws = await websockets.connect(
                url,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
                open_timeout=self.open_timeout,
                max_size=self.max_size,
            )
        except (WebSocketException, OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"Failed to connect to {url}: {e}") from e

        return WebsocketsConnection(ws, url)
