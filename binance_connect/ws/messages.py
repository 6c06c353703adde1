"""
Streaming message models

Everything a streaming session delivers to its consumer is either a
StreamEvent (a decoded data frame) or a StreamError (an error-tagged item).
Both are immutable and self-describing so one ordered sequence can carry
traffic for every subscribed stream.
"""
import time
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..errors import BinanceConnectError, ErrorKind


class ControlMethod(str, Enum):
    """Control-channel request methods"""
    SUBSCRIBE = "SUBSCRIBE"
    UNSUBSCRIBE = "UNSUBSCRIBE"
    LIST_SUBSCRIPTIONS = "LIST_SUBSCRIPTIONS"
    SET_PROPERTY = "SET_PROPERTY"
    GET_PROPERTY = "GET_PROPERTY"


def build_command(method: ControlMethod, params: Optional[list[Any]], request_id: int) -> dict[str, Any]:
    """
    Build a control frame

    Args:
        method: Control method
        params: Method parameters (stream ids, property name/value)
        request_id: Correlation id

    Returns:
        Frame dict ready for JSON encoding
    """
    frame: dict[str, Any] = {"method": ControlMethod(method).value}
    if params is not None:
        frame["params"] = list(params)
    frame["id"] = request_id
    return frame


class StreamEvent(BaseModel):
    """
    Decoded data frame

    The payload is the exchange's event object as received; decoding it into
    typed models is left to the consumer.
    """
    model_config = ConfigDict(frozen=True)

    stream: str = Field(description="Stream identifier, e.g. 'btcusdt@aggTrade'")
    event_type: Optional[str] = Field(
        default=None,
        description="Exchange event type ('e' field), e.g. 'aggTrade'"
    )
    symbol: Optional[str] = Field(default=None, description="Exchange symbol ('s' field)")
    event_time: Optional[int] = Field(
        default=None,
        description="Exchange event time in milliseconds ('E' field)"
    )
    payload: Any = Field(description="Raw event payload")
    connection_id: int = Field(description="Connection generation that delivered the frame")
    received_at: float = Field(
        default_factory=time.time,
        description="Local receipt time in seconds"
    )

    @property
    def is_error(self) -> bool:
        return False


class StreamError(BaseModel):
    """Error-tagged item on the event sequence"""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kind: ErrorKind
    message: str
    error_type: str = Field(description="Exception class name")
    fatal: bool = Field(default=False, description="True when the session has terminated")
    severity: str = "error"  # "warning", "error", "critical"
    stream: Optional[str] = None
    connection_id: Optional[int] = None
    exception: Optional[BaseException] = Field(default=None, exclude=True, repr=False)
    received_at: float = Field(default_factory=time.time)

    @property
    def is_error(self) -> bool:
        return True

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        *,
        fatal: bool = False,
        severity: Optional[str] = None,
        stream: Optional[str] = None,
        connection_id: Optional[int] = None
    ) -> "StreamError":
        """Wrap an exception as an event-sequence item"""
        kind = exc.kind if isinstance(exc, BinanceConnectError) else ErrorKind.PROTOCOL
        return cls(
            kind=kind,
            message=str(exc),
            error_type=type(exc).__name__,
            fatal=fatal,
            severity=severity or ("critical" if fatal else "error"),
            stream=stream,
            connection_id=connection_id,
            exception=exc,
        )


StreamItem = Union[StreamEvent, StreamError]
