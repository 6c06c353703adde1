"""
Reconnect supervisor

Drives the streaming session across connections:

    connect (exponential backoff with cap and jitter)
      -> connection-established signal
      -> replay: one SUBSCRIBE per desired stream
      -> ready
      -> read until the connection fails
      -> fail pending requests, report the loss, reconnect

Data frames from a new connection are held back until every replay command
has been sent. While a data frame is held the reader stops, so frames behind
it (control responses included) wait too; replay only waits on its sends,
never on acknowledgements, so this cannot stall it.

A connection lost before it has been up for `stable_after` seconds counts as
a failed attempt: the backoff keeps growing across such drops and they count
against `max_attempts`. Losing a connection that stayed up starts a fresh
cycle whose first attempt is immediate.

If reconnect attempts are exhausted (or the backoff is cancelled) the
session ends with a fatal SessionTerminatedError item.
"""
import asyncio
from typing import Any, Awaitable, Callable, Optional

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    wait_exponential_jitter,
)

from ..clock import Clock, SystemClock
from ..errors import (
    ConnectionLostError,
    NotConnectedError,
    RequestCancelledError,
    RequestTimeoutError,
    SessionTerminatedError,
    StreamRequestError,
    TransportError,
)
from .base import ConnectionState
from .connection import ConnectionManager
from .demux import EventDemultiplexer, PendingRequest, PendingRequests
from .messages import ControlMethod, StreamError, StreamEvent, StreamItem, build_command
from .registry import SubscriptionRegistry

Emitter = Callable[[StreamItem], Awaitable[None]]


class ReconnectSupervisor:
    """
    Reconnect-and-replay state machine

    Shares the subscription registry with the session facade; owns the
    in-flight subscribe table so a stream never has two concurrent
    subscribe commands.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        registry: SubscriptionRegistry,
        pending: PendingRequests,
        demux: EventDemultiplexer,
        emit: Emitter,
        clock: Optional[Clock] = None,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: float = 1.0,
        max_attempts: Optional[int] = None,
        sweep_interval: Optional[float] = 1.0,
        stable_after: float = 10.0
    ):
        """
        Initialize supervisor

        Args:
            connection: Connection manager to drive
            registry: Desired subscriptions
            pending: Pending control requests
            demux: Frame classifier
            emit: Coroutine delivering items to the event sequence
            clock: Time source for backoff sleeps
            initial_delay: First reconnect delay (seconds)
            max_delay: Cap on a reconnect delay (seconds)
            jitter: Maximum random jitter added to each delay (seconds)
            max_attempts: Connect attempts per reconnect cycle (None = unbounded)
            sweep_interval: Seconds between pending-request expiry sweeps
                (None disables the sweep task)
            stable_after: Seconds a connection must stay up before its loss
                resets the backoff
        """
        self.connection = connection
        self.registry = registry
        self.pending = pending
        self.demux = demux
        self.emit = emit
        self.clock = clock or SystemClock()
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.max_attempts = max_attempts
        self.sweep_interval = sweep_interval
        self.stable_after = stable_after

        self.ready = asyncio.Event()
        self.terminated = asyncio.Event()
        self.termination_error: Optional[BaseException] = None
        self.confirmed: set[str] = set()

        self._established = asyncio.Event()
        self._replay_sent = asyncio.Event()
        self._in_flight: dict[str, asyncio.Future] = {}
        self._ack_tasks: set[asyncio.Task] = set()
        self._stopping = False

        self.stats = {
            "connects": 0,
            "connection_losses": 0,
            "unstable_connections": 0,
            "replayed_subscriptions": 0,
            "cancelled_requests": 0,
        }

        self.connection.add_listener(self._on_state_change)

    async def _on_state_change(self, state: ConnectionState) -> None:
        if state == ConnectionState.CONNECTED:
            self._established.set()
        elif state == ConnectionState.DISCONNECTED:
            self.ready.clear()
            self._replay_sent.clear()

    def stop(self) -> None:
        """Mark the supervisor as stopping; the run loop exits on the next transition"""
        self._stopping = True

    async def run(self) -> None:
        """Run until stopped, cancelled or out of reconnect attempts"""
        sweeper = None
        if self.sweep_interval:
            sweeper = asyncio.create_task(self._sweep_loop())

        try:
            while not self._stopping:
                if not await self._run_cycle():
                    break

        except TransportError as e:
            logger.error(f"Giving up on stream {self.connection.url}: {e}")
            await self._terminate(SessionTerminatedError(f"Reconnect attempts exhausted: {e}"))

        except asyncio.CancelledError:
            if not self._stopping:
                await self._terminate(SessionTerminatedError("Reconnect cancelled"))
            raise

        except Exception as e:
            logger.exception(f"Stream supervisor crashed: {e}")
            await self._terminate(SessionTerminatedError(f"Stream supervisor crashed: {e}"))

        finally:
            self.ready.clear()
            if sweeper:
                sweeper.cancel()
            for task in list(self._ack_tasks):
                task.cancel()
            self.terminated.set()

    async def _run_cycle(self) -> bool:
        """
        Connect and serve until a connection that stayed up is lost

        Returns:
            False once the connection was closed locally
        """
        retrying = AsyncRetrying(
            wait=wait_exponential_jitter(
                initial=self.initial_delay,
                max=self.max_delay,
                jitter=self.jitter,
            ),
            stop=stop_after_attempt(self.max_attempts) if self.max_attempts else stop_never,
            retry=retry_if_exception_type(TransportError),
            sleep=self.clock.sleep,
            before_sleep=self._log_reconnect,
            reraise=True,
        )

        closed_locally = False
        async for attempt in retrying:
            with attempt:
                closed_locally = await self._connect_and_serve()
        return not closed_locally

    async def _connect_and_serve(self) -> bool:
        """
        One attempt: connect, replay and read until the connection ends

        Returns:
            True if the connection was closed locally

        Raises:
            TransportError: Connect failed, or the connection was lost
                before it had been up for stable_after seconds
        """
        await self.connection.connect()
        self.stats["connects"] += 1
        await self._established.wait()
        self._established.clear()

        connected_at = self.clock.time()
        loss = await self._serve(self.connection.connection_id)
        if loss is None:
            return True
        await self._handle_loss(loss)

        if self.clock.time() - connected_at < self.stable_after:
            self.stats["unstable_connections"] += 1
            raise loss
        return False

    def _log_reconnect(self, retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"Connection attempt {retry_state.attempt_number} failed ({exc}); "
            f"reconnecting in {delay:.2f}s"
        )

    async def _serve(self, connection_id: int) -> Optional[TransportError]:
        """
        Replay and read one connection

        Returns:
            The failure that ended the connection, or None if it was closed
        """
        reader = asyncio.create_task(self._read(connection_id))
        try:
            await self._replay(connection_id)
            await reader
            return None
        except (ConnectionLostError, NotConnectedError) as e:
            if self._stopping:
                return None
            return e
        finally:
            if not reader.done():
                reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

    async def _read(self, connection_id: int) -> None:
        async for frame in self.connection.receive():
            item = self.demux.process(frame, connection_id)
            if item is None:
                continue
            if isinstance(item, StreamEvent) and not self._replay_sent.is_set():
                await self._replay_sent.wait()
            await self.emit(item)

    async def _replay(self, connection_id: int) -> None:
        """Send one SUBSCRIBE per desired stream, then signal ready"""
        purged = self.registry.purge_pending_removals()
        if purged:
            logger.debug(f"Dropped {len(purged)} pending removals on reconnect")

        sent: dict[str, asyncio.Future] = {}
        while True:
            # Streams added while replaying are picked up by the next snapshot
            todo = [stream_id for stream_id in self.registry.snapshot() if stream_id not in sent]
            if not todo:
                break
            for stream_id in sorted(todo):
                # Unsubscribed while earlier commands were being sent
                if stream_id not in self.registry:
                    continue
                sent[stream_id] = await self.send_subscribe(stream_id)

        self._replay_sent.set()
        self.ready.set()
        self.stats["replayed_subscriptions"] += len(sent)
        logger.info(
            f"Connection {connection_id} ready: replayed {len(sent)} subscription(s)"
        )

        if sent:
            task = asyncio.create_task(self._watch_acks(sent, connection_id))
            self._ack_tasks.add(task)
            task.add_done_callback(self._ack_tasks.discard)

    async def _watch_acks(self, futures: dict[str, asyncio.Future], connection_id: int) -> None:
        results = await asyncio.gather(*futures.values(), return_exceptions=True)
        for stream_id, result in zip(futures, results):
            if not isinstance(result, BaseException):
                continue
            if isinstance(result, RequestCancelledError):
                continue
            if isinstance(result, (StreamRequestError, RequestTimeoutError)):
                logger.error(f"Resubscribe to {stream_id} failed: {result}")
                if isinstance(result, StreamRequestError):
                    # Rejected streams are dropped, as for a live subscribe
                    self.registry.discard(stream_id)
                await self.emit(StreamError.from_exception(
                    result,
                    stream=stream_id,
                    connection_id=connection_id,
                ))

    async def send_request(self, method: ControlMethod, params: Optional[list[Any]] = None) -> PendingRequest:
        """
        Allocate a correlation id and send a control command

        Raises:
            NotConnectedError: Not connected
            ConnectionLostError: Connection failed during the send
        """
        request = self.pending.create(method, params, self.connection.connection_id)
        await self._transmit(request)
        return request

    async def send_subscribe(self, stream_id: str) -> asyncio.Future:
        """
        Send a SUBSCRIBE unless one is already in flight for the stream

        Returns:
            Future completed by the subscribe acknowledgement
        """
        existing = self._in_flight.get(stream_id)
        if existing is not None and not existing.done():
            return existing

        request = self.pending.create(ControlMethod.SUBSCRIBE, [stream_id], self.connection.connection_id)
        self._in_flight[stream_id] = request.future
        request.future.add_done_callback(lambda future: self._subscribe_done(stream_id, future))

        try:
            await self._transmit(request)
        except BaseException:
            if self._in_flight.get(stream_id) is request.future:
                del self._in_flight[stream_id]
            raise
        return request.future

    def _subscribe_done(self, stream_id: str, future: asyncio.Future) -> None:
        if self._in_flight.get(stream_id) is future:
            del self._in_flight[stream_id]
        if not future.cancelled() and future.exception() is None:
            self.confirmed.add(stream_id)
            logger.debug(f"Subscribed: {stream_id}")

    def in_flight(self, stream_id: str) -> bool:
        future = self._in_flight.get(stream_id)
        return future is not None and not future.done()

    async def _transmit(self, request: PendingRequest) -> None:
        frame = build_command(request.method, request.params or None, request.request_id)
        try:
            await self.connection.send(frame)
        except BaseException as e:
            self.pending.discard(request.request_id)
            if not request.future.done():
                request.future.set_exception(
                    RequestCancelledError(f"{request.method.value} not sent: {e}")
                )
                # Retrieved here so an unobserved future does not warn
                request.future.exception()
            raise
        logger.debug(f"Sent {request.method.value} {request.params} (id {request.request_id})")

    async def _handle_loss(self, exc: TransportError) -> None:
        connection_id = self.connection.connection_id
        self.stats["connection_losses"] += 1
        self.ready.clear()
        self._replay_sent.clear()

        cancelled = self.pending.fail_all(
            RequestCancelledError(f"Connection {connection_id} lost before response")
        )
        self.stats["cancelled_requests"] += cancelled
        self._in_flight.clear()
        self.confirmed.clear()

        logger.warning(
            f"Connection {connection_id} lost ({exc}); "
            f"cancelled {cancelled} pending request(s), reconnecting"
        )
        await self.emit(StreamError.from_exception(exc, connection_id=connection_id))

    async def _terminate(self, exc: SessionTerminatedError) -> None:
        self.termination_error = exc
        self.pending.fail_all(exc)
        self._in_flight.clear()
        await self.emit(StreamError.from_exception(
            exc,
            fatal=True,
            connection_id=self.connection.connection_id or None,
        ))

    async def _sweep_loop(self) -> None:
        while True:
            await self.clock.sleep(self.sweep_interval)
            self.pending.sweep()

    def get_statistics(self) -> dict:
        return {
            **self.stats,
            "state": self.connection.state.value,
            "connection_id": self.connection.connection_id,
            "ready": self.ready.is_set(),
            "subscriptions": len(self.registry.snapshot()),
            "confirmed": len(self.confirmed),
            "in_flight": len([s for s in self._in_flight if self.in_flight(s)]),
            **self.demux.get_statistics(),
        }
