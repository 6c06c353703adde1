"""
Streaming session

Consumer-facing facade over the streaming components: one connection
manager, one subscription registry, one pending-request arena, one
demultiplexer and the reconnect supervisor that ties them together.

Usage:
    session = StreamingSession(url, WebsocketsTransport())
    await session.start()
    await session.subscribe(streams.agg_trade("BTCUSDT"))

    async for item in session.events():
        if item.is_error:
            ...
        else:
            print(item.stream, item.payload)

The event sequence is a single ordered stream of tagged items covering every
subscription; it spans reconnects and ends when the session is closed or
terminates.
"""
import asyncio
from typing import Any, AsyncIterator, Optional

from loguru import logger

from ..clock import Clock, SystemClock
from ..errors import (
    ConnectionLostError,
    NotConnectedError,
    RequestCancelledError,
    RequestTimeoutError,
    SessionTerminatedError,
    StreamRequestError,
)
from .base import IWebSocketTransport
from .connection import ConnectionManager
from .demux import EventDemultiplexer, PendingRequests
from .messages import ControlMethod, StreamItem
from .registry import SubscriptionRegistry
from .supervisor import ReconnectSupervisor

_CLOSED = object()


class StreamingSession:
    """Long-lived multiplexed stream session that survives disconnects"""

    def __init__(
        self,
        url: str,
        transport: IWebSocketTransport,
        clock: Optional[Clock] = None,
        request_timeout: float = 10.0,
        reconnect_initial_delay: float = 1.0,
        reconnect_max_delay: float = 60.0,
        reconnect_jitter: float = 1.0,
        max_reconnect_attempts: Optional[int] = None,
        sweep_interval: Optional[float] = 1.0,
        reconnect_stable_after: float = 10.0,
        event_queue_size: int = 10000,
        default_stream: Optional[str] = None
    ):
        """
        Initialize session

        Args:
            url: Stream endpoint URL
            transport: WebSocket transport
            clock: Time source
            request_timeout: Seconds to wait for a control response
            reconnect_initial_delay: First reconnect delay
            reconnect_max_delay: Cap on reconnect delay
            reconnect_jitter: Maximum jitter added to each delay
            max_reconnect_attempts: Attempts per reconnect cycle (None = unbounded)
            sweep_interval: Seconds between pending-request sweeps
            reconnect_stable_after: Uptime after which a lost connection resets the backoff
            event_queue_size: Capacity of the event sequence buffer
            default_stream: Stream id tagged on every raw frame
        """
        self.clock = clock or SystemClock()
        self.request_timeout = request_timeout

        self.connection = ConnectionManager(url, transport)
        self.registry = SubscriptionRegistry()
        self.pending = PendingRequests(clock=self.clock, timeout=request_timeout)
        self.demux = EventDemultiplexer(self.pending, default_stream=default_stream)
        self.supervisor = ReconnectSupervisor(
            self.connection,
            self.registry,
            self.pending,
            self.demux,
            emit=self._emit,
            clock=self.clock,
            initial_delay=reconnect_initial_delay,
            max_delay=reconnect_max_delay,
            jitter=reconnect_jitter,
            max_attempts=max_reconnect_attempts,
            sweep_interval=sweep_interval,
            stable_after=reconnect_stable_after,
        )

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=event_queue_size)
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def url(self) -> str:
        return self.connection.url

    @property
    def is_ready(self) -> bool:
        return self.supervisor.ready.is_set()

    @property
    def is_closed(self) -> bool:
        return self._closed or self.supervisor.terminated.is_set()

    async def start(self) -> None:
        """Start connecting in the background"""
        if self._closed:
            raise SessionTerminatedError("Session is closed")
        if self._task is None:
            logger.info(f"Starting stream session: {self.url}")
            self._task = asyncio.create_task(self._run())

    async def wait_ready(self, timeout: Optional[float] = None) -> None:
        """
        Wait until the session is connected and resubscribed

        Raises:
            SessionTerminatedError: Session ended before becoming ready
            asyncio.TimeoutError: Not ready within timeout
        """
        if self._task is None:
            await self.start()

        ready = asyncio.create_task(self.supervisor.ready.wait())
        terminated = asyncio.create_task(self.supervisor.terminated.wait())
        try:
            done, _ = await asyncio.wait(
                {ready, terminated},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            ready.cancel()
            terminated.cancel()

        if self.supervisor.ready.is_set():
            return
        if not done:
            raise asyncio.TimeoutError(f"Stream session not ready after {timeout}s")
        raise self.supervisor.termination_error or SessionTerminatedError("Session closed")

    async def subscribe(self, stream_id: str) -> None:
        """
        Subscribe to a stream

        The intent is recorded first; if the session is not ready the
        subscribe command is sent by the next replay. When ready, waits for
        the server's acknowledgement.

        Raises:
            StreamRequestError: Server rejected the subscription
            RequestTimeoutError: No acknowledgement in time
            SessionTerminatedError: Session closed
        """
        self._ensure_open()
        added = self.registry.add(stream_id)
        if not self.is_ready:
            logger.debug(f"Session not ready, {stream_id} will be sent on replay")
            return
        if not added and stream_id in self.supervisor.confirmed:
            return

        try:
            future = await self.supervisor.send_subscribe(stream_id)
        except (NotConnectedError, ConnectionLostError):
            logger.debug(f"Connection dropped, {stream_id} will be sent on replay")
            return

        try:
            await asyncio.wait_for(asyncio.shield(future), self.request_timeout)
        except RequestCancelledError:
            logger.debug(f"Subscribe to {stream_id} interrupted by reconnect")
        except StreamRequestError:
            self.registry.discard(stream_id)
            raise
        except asyncio.TimeoutError:
            raise RequestTimeoutError(f"Subscribe to {stream_id} timed out") from None

    async def unsubscribe(self, stream_id: str) -> None:
        """
        Unsubscribe from a stream

        Removing a stream that is not subscribed is a no-op.
        """
        self._ensure_open()
        if not self.registry.remove(stream_id):
            return

        if not self.connection.is_connected():
            self.registry.discard(stream_id)
            return

        try:
            await self.request(ControlMethod.UNSUBSCRIBE, [stream_id])
        except (NotConnectedError, ConnectionLostError, RequestCancelledError):
            # The next connection starts without it
            logger.debug(f"Unsubscribe from {stream_id} completed by reconnect")
            return
        except StreamRequestError:
            self.registry.discard(stream_id)
            raise

        self.registry.confirm_removed(stream_id)
        self.supervisor.confirmed.discard(stream_id)
        logger.debug(f"Unsubscribed: {stream_id}")

    async def request(
        self,
        method: ControlMethod,
        params: Optional[list[Any]] = None,
        timeout: Optional[float] = None
    ) -> Any:
        """
        Send a control request and wait for its response

        Args:
            method: Control method
            params: Method parameters
            timeout: Seconds to wait (defaults to request_timeout)

        Returns:
            The response's result

        Raises:
            NotConnectedError: Not connected
            RequestTimeoutError: No response in time
            RequestCancelledError: Connection dropped before the response
            StreamRequestError: Server answered with an error
        """
        self._ensure_open()
        request = await self.supervisor.send_request(method, params)
        try:
            return await asyncio.wait_for(request.future, timeout or self.request_timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(
                f"{method.value} request {request.request_id} timed out"
            ) from None
        finally:
            self.pending.discard(request.request_id)

    async def list_subscriptions(self) -> list[str]:
        """Streams the server reports as subscribed on this connection"""
        result = await self.request(ControlMethod.LIST_SUBSCRIPTIONS)
        return list(result or [])

    async def get_property(self, name: str) -> Any:
        return await self.request(ControlMethod.GET_PROPERTY, [name])

    async def set_property(self, name: str, value: Any) -> None:
        await self.request(ControlMethod.SET_PROPERTY, [name, value])

    def subscriptions(self) -> frozenset[str]:
        """Streams this session wants active"""
        return self.registry.snapshot()

    async def events(self) -> AsyncIterator[StreamItem]:
        """Ordered sequence of events and error items until the session ends"""
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                # Leave the marker for any other consumer
                self._queue.put_nowait(_CLOSED)
                return
            yield item

    def __aiter__(self) -> AsyncIterator[StreamItem]:
        return self.events()

    async def close(self) -> None:
        """Close the session and end the event sequence"""
        if self._closed:
            return
        self._closed = True
        logger.info(f"Closing stream session: {self.url}")

        self.supervisor.stop()
        await self.connection.close()

        if self._task is not None and not self._task.done():
            self._task.cancel()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        else:
            self._finish()

        self.pending.fail_all(SessionTerminatedError("Session closed"))

    async def __aenter__(self) -> "StreamingSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def get_statistics(self) -> dict:
        return {**self.supervisor.get_statistics(), "queued_items": self._queue.qsize()}

    def _ensure_open(self) -> None:
        if self.is_closed:
            raise SessionTerminatedError("Session is closed")

    async def _run(self) -> None:
        try:
            await self.supervisor.run()
        finally:
            self._finish()

    async def _emit(self, item: StreamItem) -> None:
        await self._queue.put(item)

    def _finish(self) -> None:
        """Append the end-of-sequence marker, dropping the oldest item if full"""
        if self._queue.full():
            dropped = self._queue.get_nowait()
            logger.warning(f"Event queue full at close, dropped {type(dropped).__name__}")
        self._queue.put_nowait(_CLOSED)
