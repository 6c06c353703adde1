"""
In-memory fakes for network I/O and time
"""
import asyncio
import json
from collections import deque
from typing import Any, Callable, Optional

from binance_connect.clock import Clock
from binance_connect.errors import ConnectionLostError, TransportError
from binance_connect.rest.transport import HttpResponse, IHttpTransport
from binance_connect.ws.base import IWebSocketConnection, IWebSocketTransport

# Aligned to 10s and 60s windows
START_TIME = 1_700_000_040.0


class FakeClock(Clock):
    """Manual clock: sleep() advances time instantly and yields to the loop"""

    def __init__(self, start: float = START_TIME):
        self.now = start
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self.now += seconds
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.now += seconds


def json_response(status: int = 200, payload: Any = None, headers: Optional[dict] = None) -> HttpResponse:
    body = b"" if payload is None else json.dumps(payload).encode()
    return HttpResponse(status=status, headers=headers or {}, body=body)


class FakeHttpTransport(IHttpTransport):
    """Replays scripted responses (or raises scripted exceptions) in order"""

    def __init__(self, *responses):
        self.responses = deque(responses)
        self.requests: list[tuple[str, str, dict]] = []
        self.closed = False

    def add(self, *responses) -> None:
        self.responses.extend(responses)

    async def request(self, method, url, headers=None) -> HttpResponse:
        self.requests.append((method, url, dict(headers or {})))
        await asyncio.sleep(0)
        item = self.responses.popleft() if self.responses else json_response(200, {})
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


_DROP = object()


class FakeConnection(IWebSocketConnection):
    """
    Scriptable server side of one connection

    With auto_ack the fake answers every control command the way the
    exchange does and keeps its own set of subscribed streams.
    """

    def __init__(
        self,
        url: str,
        auto_ack: bool = True,
        preload: Optional[list] = None,
        send_delay: float = 0.0,
        rejected: Optional[dict] = None
    ):
        self.url = url
        self.auto_ack = auto_ack
        self.send_delay = send_delay
        self.sent: list[dict] = []
        self.server_subscriptions: set[str] = set()
        self.properties: dict[str, Any] = {"combined": True}
        self.rejected: dict[str, tuple[int, str]] = dict(rejected or {})
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()
        for message in preload or []:
            self.feed(message)

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionLostError("Fake connection closed")
        if self.send_delay:
            # Real sockets yield while writing
            await asyncio.sleep(self.send_delay)
            if self.closed:
                raise ConnectionLostError("Fake connection closed")
        frame = json.loads(data)
        self.sent.append(frame)
        if self.auto_ack:
            self.respond(frame)

    def respond(self, frame: dict, result: Any = None) -> None:
        """Answer a control command"""
        method = frame["method"]
        params = frame.get("params", [])

        for stream in params:
            if method == "SUBSCRIBE" and stream in self.rejected:
                code, msg = self.rejected[stream]
                self.feed({"error": {"code": code, "msg": msg}, "id": frame["id"]})
                return

        if method == "SUBSCRIBE":
            self.server_subscriptions.update(params)
        elif method == "UNSUBSCRIBE":
            self.server_subscriptions.difference_update(params)
        elif method == "LIST_SUBSCRIPTIONS":
            result = sorted(self.server_subscriptions)
        elif method == "GET_PROPERTY":
            result = self.properties.get(params[0])
        elif method == "SET_PROPERTY":
            self.properties[params[0]] = params[1]

        self.feed({"result": result, "id": frame["id"]})

    def feed(self, message: Any) -> None:
        """Deliver a frame to the client"""
        self._inbox.put_nowait(message if isinstance(message, (str, bytes)) else json.dumps(message))

    def drop(self) -> None:
        """Simulate the server dropping the connection"""
        self.closed = True
        self._inbox.put_nowait(_DROP)

    def commands(self, method: str = "SUBSCRIBE") -> list[dict]:
        return [frame for frame in self.sent if frame.get("method") == method]

    def subscribed_streams(self) -> list[str]:
        return [stream for frame in self.commands("SUBSCRIBE") for stream in frame.get("params", [])]

    async def recv(self):
        item = await self._inbox.get()
        if item is _DROP:
            self.closed = True
            raise ConnectionLostError("Fake connection dropped")
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_DROP)


class FakeWebSocketTransport(IWebSocketTransport):
    """Hands out FakeConnections; can be told to refuse connects"""

    def __init__(self, auto_ack: bool = True):
        self.auto_ack = auto_ack
        self.connections: list[FakeConnection] = []
        self.connect_attempts = 0
        self.fail_next = 0
        self.always_fail = False
        self.preload: list = []
        self.send_delay = 0.0
        self.rejected: dict[str, tuple[int, str]] = {}

    async def connect(self, url: str) -> FakeConnection:
        self.connect_attempts += 1
        await asyncio.sleep(0)
        if self.always_fail or self.fail_next > 0:
            self.fail_next = max(0, self.fail_next - 1)
            raise TransportError(f"Connection refused: {url}")

        conn = FakeConnection(
            url,
            auto_ack=self.auto_ack,
            preload=self.preload,
            send_delay=self.send_delay,
            rejected=self.rejected,
        )
        self.preload = []
        self.connections.append(conn)
        return conn

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() holds (real loop time)"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.001)


async def next_item(iterator, timeout: float = 2.0):
    """Next item of an async iterator, failing the test on timeout"""
    return await asyncio.wait_for(iterator.__anext__(), timeout)
