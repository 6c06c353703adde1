"""
Base interfaces for the streaming layer

The connection manager never touches the websockets library directly: it
works against IWebSocketTransport / IWebSocketConnection so the whole
reconnect-and-replay state machine can be driven by an in-memory transport.
"""
from abc import ABC, abstractmethod
from enum import Enum
from typing import Union


class ConnectionState(str, Enum):
    """Connection state"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


Frame = Union[str, bytes]


class IWebSocketConnection(ABC):
    """One open WebSocket connection"""

    @abstractmethod
    async def send(self, data: str) -> None:
        """
        Send a text frame

        Raises:
            ConnectionLostError: Connection is gone
        """
        pass

    @abstractmethod
    async def recv(self) -> Frame:
        """
        Receive the next frame

        Raises:
            ConnectionLostError: Connection closed or errored
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection"""
        pass


class IWebSocketTransport(ABC):
    """Factory for WebSocket connections"""

    @abstractmethod
    async def connect(self, url: str) -> IWebSocketConnection:
        """
        Open a connection

        Raises:
            TransportError: Connection could not be established
        """
        pass
