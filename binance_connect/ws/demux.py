"""
Event demultiplexer and pending control requests

Every inbound frame is classified exactly once, in receipt order:

- control response whose id matches a pending request -> completes it
- control response with no pending request -> warning item (non-fatal)
- data frame (wrapped {"stream", "data"} or raw event) -> StreamEvent
- anything undecodable -> error item; the sequence continues

Pending requests live in an arena keyed by correlation id. Entries leave the
arena when answered, when swept after their timeout, or when their
connection drops.
"""
import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Optional

from loguru import logger

from ..clock import Clock, SystemClock
from ..errors import (
    DecodeError,
    ProtocolError,
    RequestTimeoutError,
    StreamRequestError,
    UnexpectedResponseError,
)
from .base import Frame
from .messages import ControlMethod, StreamError, StreamEvent, StreamItem
from .streams import stream_for_event


@dataclass
class PendingRequest:
    """Control request awaiting its response"""
    request_id: int
    method: ControlMethod
    params: list[Any]
    issued_at: float
    connection_id: int
    future: asyncio.Future = field(repr=False)

    @property
    def done(self) -> bool:
        return self.future.done()


class PendingRequests:
    """Arena of pending control requests keyed by correlation id"""

    def __init__(self, clock: Optional[Clock] = None, timeout: float = 10.0):
        """
        Initialize arena

        Args:
            clock: Time source for issue times and expiry
            timeout: Seconds before an unanswered request expires
        """
        self.clock = clock or SystemClock()
        self.timeout = timeout
        self._next_id = 1
        self._requests: dict[int, PendingRequest] = {}

    def create(
        self,
        method: ControlMethod,
        params: Optional[list[Any]] = None,
        connection_id: int = 0
    ) -> PendingRequest:
        """Allocate the next correlation id and a completion slot"""
        request = PendingRequest(
            request_id=self._next_id,
            method=method,
            params=list(params or []),
            issued_at=self.clock.time(),
            connection_id=connection_id,
            future=asyncio.get_running_loop().create_future(),
        )
        self._next_id += 1
        self._requests[request.request_id] = request
        return request

    def get(self, request_id: Any) -> Optional[PendingRequest]:
        return self._requests.get(request_id)

    def resolve(self, request_id: Any, result: Any) -> bool:
        """Fulfill a pending request; False if no such request"""
        request = self._requests.pop(request_id, None)
        if request is None:
            return False
        if not request.future.done():
            request.future.set_result(result)
        return True

    def reject(self, request_id: Any, exc: BaseException) -> bool:
        """Fail a pending request; False if no such request"""
        request = self._requests.pop(request_id, None)
        if request is None:
            return False
        if not request.future.done():
            request.future.set_exception(exc)
        return True

    def discard(self, request_id: Any) -> None:
        """Forget a request whose caller gave up"""
        self._requests.pop(request_id, None)

    def sweep(self) -> list[int]:
        """
        Expire requests older than the timeout

        Returns:
            Correlation ids that were expired
        """
        now = self.clock.time()
        expired = [
            request_id for request_id, request in self._requests.items()
            if now - request.issued_at >= self.timeout
        ]
        for request_id in expired:
            request = self._requests[request_id]
            logger.warning(
                f"Control request {request_id} ({request.method.value}) "
                f"timed out after {self.timeout:g}s"
            )
            self.reject(
                request_id,
                RequestTimeoutError(f"{request.method.value} request {request_id} timed out"),
            )
        return expired

    def fail_all(self, exc: BaseException) -> int:
        """Fail every pending request (connection dropped)"""
        request_ids = list(self._requests)
        for request_id in request_ids:
            self.reject(request_id, exc)
        return len(request_ids)

    def __len__(self) -> int:
        return len(self._requests)

    def __contains__(self, request_id: Any) -> bool:
        return request_id in self._requests


def _is_control_frame(message: Any) -> bool:
    if not isinstance(message, dict) or "id" not in message:
        return False
    if "stream" in message or "e" in message:
        return False
    return "result" in message or "error" in message or "code" in message


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class EventDemultiplexer:
    """Classifies inbound frames into request completions and event items"""

    def __init__(self, pending: PendingRequests, default_stream: Optional[str] = None):
        """
        Initialize demultiplexer

        Args:
            pending: Pending request arena to complete
            default_stream: Stream id for every raw frame (single-stream connection)
                (a user data stream, where the listen key is the stream)
        """
        self.pending = pending
        self.default_stream = default_stream

        self.stats = {
            "frames": 0,
            "events": 0,
            "responses": 0,
            "unexpected_responses": 0,
            "decode_errors": 0,
        }

    def process(self, raw: Frame, connection_id: int = 0) -> Optional[StreamItem]:
        """
        Classify one inbound frame

        Args:
            raw: Frame text (or bytes)
            connection_id: Connection generation that received it

        Returns:
            Item for the event sequence, or None when the frame completed a
            pending request
        """
        self.stats["frames"] += 1

        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as e:
            self.stats["decode_errors"] += 1
            logger.warning(f"Dropping undecodable frame: {e}")
            return StreamError.from_exception(
                DecodeError(f"Invalid JSON frame: {e}"),
                severity="warning",
                connection_id=connection_id,
            )

        if _is_control_frame(message):
            return self._process_response(message, connection_id)

        if isinstance(message, dict) and "stream" in message and "data" in message:
            return self._event(message["stream"], message["data"], connection_id)

        # A single-stream connection tags every raw frame with its stream
        stream = self.default_stream or stream_for_event(message)
        if stream is None:
            self.stats["decode_errors"] += 1
            logger.warning(f"Dropping unrecognized frame: {str(raw)[:200]}")
            return StreamError.from_exception(
                ProtocolError("Unrecognized frame"),
                severity="warning",
                connection_id=connection_id,
            )
        return self._event(stream, message, connection_id)

    def _process_response(self, message: dict, connection_id: int) -> Optional[StreamItem]:
        request_id = message.get("id")
        error = message.get("error")
        if error is None and "code" in message:
            error = message

        known = isinstance(request_id, (int, str)) and request_id in self.pending
        if not known:
            self.stats["unexpected_responses"] += 1
            logger.warning(f"Control response with no pending request: id={request_id}")
            return StreamError.from_exception(
                UnexpectedResponseError(
                    f"Response for unknown request id {request_id}",
                    correlation_id=request_id,
                ),
                severity="warning",
                connection_id=connection_id,
            )

        self.stats["responses"] += 1
        if error is not None:
            code = _as_int(error.get("code")) if isinstance(error, dict) else None
            msg = error.get("msg", "") if isinstance(error, dict) else str(error)
            self.pending.reject(request_id, StreamRequestError(msg or "Request rejected", code=code))
        else:
            self.pending.resolve(request_id, message.get("result"))
        return None

    def _event(self, stream: str, data: Any, connection_id: int) -> StreamEvent:
        self.stats["events"] += 1
        fields = data if isinstance(data, dict) else {}
        symbol = fields.get("s")
        return StreamEvent(
            stream=stream,
            event_type=fields.get("e"),
            symbol=symbol if isinstance(symbol, str) else None,
            event_time=_as_int(fields.get("E")),
            payload=data,
            connection_id=connection_id,
        )

    def get_statistics(self) -> dict:
        return {**self.stats, "pending_requests": len(self.pending)}
