"""
WebSocket connection manager

Owns a single transport connection and its state:

    DISCONNECTED -> CONNECTING -> CONNECTED -> CLOSING -> DISCONNECTED
                         |             |
                         +-------------+--> DISCONNECTED (failure)

Failure is detected from transport close/error events raised by send() and
recv(), never by polling. The manager does not reconnect by itself; state
listeners (the reconnect supervisor) react to the transitions.
"""
import asyncio
import json
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

from loguru import logger

from ..errors import ConnectionLostError, NotConnectedError, TransportError
from .base import ConnectionState, Frame, IWebSocketConnection, IWebSocketTransport

StateListener = Callable[[ConnectionState], Awaitable[None]]


class ConnectionManager:
    """
    Lifecycle of one WebSocket connection at a time

    Sends are serialized (single writer); receiving runs independently.
    """

    def __init__(
        self,
        url: str,
        transport: IWebSocketTransport,
        on_state_change: Optional[StateListener] = None
    ):
        """
        Initialize connection manager

        Args:
            url: WebSocket URL
            transport: Transport that opens connections
            on_state_change: Callback for connection state changes
        """
        self.url = url
        self.transport = transport
        self.state = ConnectionState.DISCONNECTED
        self.connection_id = 0

        self._conn: Optional[IWebSocketConnection] = None
        self._send_lock = asyncio.Lock()
        self._listeners: list[StateListener] = []
        if on_state_change:
            self._listeners.append(on_state_change)

    def add_listener(self, listener: StateListener) -> None:
        """Register a callback for state transitions"""
        self._listeners.append(listener)

    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    async def connect(self) -> None:
        """
        Open a new connection

        Raises:
            TransportError: Connection failed (state returns to DISCONNECTED)
        """
        if self.state == ConnectionState.CONNECTED:
            return
        if self.state != ConnectionState.DISCONNECTED:
            raise TransportError(f"Cannot connect while {self.state.value}")

        await self._set_state(ConnectionState.CONNECTING)
        try:
            conn = await self.transport.connect(self.url)
        except TransportError as e:
            logger.warning(f"Failed to connect to WebSocket {self.url}: {e}")
            await self._set_state(ConnectionState.DISCONNECTED)
            raise
        except asyncio.CancelledError:
            await self._set_state(ConnectionState.DISCONNECTED)
            raise

        self._conn = conn
        self.connection_id += 1
        logger.info(f"Connected to WebSocket: {self.url} (connection {self.connection_id})")
        await self._set_state(ConnectionState.CONNECTED)

    async def send(self, frame: Union[str, dict[str, Any]]) -> None:
        """
        Send a frame (dicts are JSON encoded)

        Raises:
            NotConnectedError: State is not CONNECTED
            ConnectionLostError: Transport failed during the send
        """
        conn = self._conn
        if self.state != ConnectionState.CONNECTED or conn is None:
            raise NotConnectedError(f"Cannot send while {self.state.value}")

        data = frame if isinstance(frame, str) else json.dumps(frame)
        async with self._send_lock:
            try:
                await conn.send(data)
            except ConnectionLostError as e:
                await self._fail(conn, e)
                raise

    async def receive(self) -> AsyncIterator[Frame]:
        """
        Yield inbound frames in receipt order

        The sequence ends quietly when close() is called and raises
        ConnectionLostError when the transport fails. A new sequence needs a
        new connection.
        """
        conn = self._conn
        if self.state != ConnectionState.CONNECTED or conn is None:
            raise NotConnectedError(f"Cannot receive while {self.state.value}")

        while True:
            try:
                frame = await conn.recv()
            except ConnectionLostError as e:
                if conn is not self._conn:
                    return
                await self._fail(conn, e)
                raise
            yield frame

    async def close(self) -> None:
        """Close the current connection"""
        conn = self._conn
        if conn is None:
            if self.state != ConnectionState.DISCONNECTED:
                await self._set_state(ConnectionState.DISCONNECTED)
            return

        await self._set_state(ConnectionState.CLOSING)
        self._conn = None
        await conn.close()
        await self._set_state(ConnectionState.DISCONNECTED)
        logger.info(f"Closed WebSocket connection {self.connection_id}")

    async def _fail(self, conn: IWebSocketConnection, exc: Exception) -> None:
        """Drop a connection that failed underneath us"""
        if conn is not self._conn:
            return
        self._conn = None
        logger.warning(f"WebSocket connection {self.connection_id} lost: {exc}")
        await conn.close()
        await self._set_state(ConnectionState.DISCONNECTED)

    async def _set_state(self, new_state: ConnectionState) -> None:
        """
        Update connection state

        Args:
            new_state: New connection state
        """
        if self.state != new_state:
            old_state = self.state
            self.state = new_state

            logger.debug(f"WebSocket state: {old_state.value} -> {new_state.value}")

            for listener in list(self._listeners):
                try:
                    await listener(new_state)
                except Exception as e:
                    logger.error(f"Error in state change callback: {e}")
