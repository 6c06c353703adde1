"""
Stream identifiers

Helpers that build the exchange's stream names. Symbols are lower-cased;
the exchange treats stream names case-sensitively.

Usage:
    from binance_connect.ws import streams

    await session.subscribe(streams.agg_trade("BTCUSDT"))        # btcusdt@aggTrade
    await session.subscribe(streams.kline("ETHUSDT", "1m"))      # ethusdt@kline_1m
    await session.subscribe(streams.depth("BTCUSDT", 10, "100ms"))
"""
from enum import Enum
from typing import Any, Optional, Union

from ..errors import ConfigurationError


class ChartInterval(str, Enum):
    """Kline intervals"""
    ONE_MINUTE = "1m"
    THREE_MINUTES = "3m"
    FIVE_MINUTES = "5m"
    FIFTEEN_MINUTES = "15m"
    THIRTY_MINUTES = "30m"
    ONE_HOUR = "1h"
    TWO_HOURS = "2h"
    FOUR_HOURS = "4h"
    SIX_HOURS = "6h"
    EIGHT_HOURS = "8h"
    TWELVE_HOURS = "12h"
    ONE_DAY = "1d"
    THREE_DAYS = "3d"
    ONE_WEEK = "1w"
    ONE_MONTH = "1M"


DEPTH_LEVELS = (5, 10, 20)
DEPTH_SPEEDS = ("0ms", "100ms", "500ms")

ALL_BOOK_TICKER = "!bookTicker"
ALL_FORCE_ORDER = "!forceOrder@arr"
ALL_MINI_TICKER = "!miniTicker@arr"
ALL_TICKER = "!ticker@arr"


def _symbol(symbol: str) -> str:
    if not symbol or not symbol.strip():
        raise ConfigurationError("Stream symbol must not be empty")
    return symbol.strip().lower()


def agg_trade(symbol: str) -> str:
    return f"{_symbol(symbol)}@aggTrade"


def trade(symbol: str) -> str:
    return f"{_symbol(symbol)}@trade"


def kline(symbol: str, interval: Union[ChartInterval, str]) -> str:
    try:
        interval = ChartInterval(interval)
    except ValueError:
        raise ConfigurationError(f"Unknown kline interval: {interval}")
    return f"{_symbol(symbol)}@kline_{interval.value}"


def depth(symbol: str, levels: Optional[int] = None, speed: Optional[str] = None) -> str:
    """
    Order book stream

    Args:
        symbol: Exchange symbol
        levels: Partial book depth (5, 10 or 20); None for the diff stream
        speed: Update speed ('0ms', '100ms', '500ms'); None for the default

    Returns:
        e.g. 'btcusdt@depth', 'btcusdt@depth10@100ms'
    """
    if levels is not None and levels not in DEPTH_LEVELS:
        raise ConfigurationError(f"Depth levels must be one of {DEPTH_LEVELS}, got {levels}")
    if speed is not None and speed not in DEPTH_SPEEDS:
        raise ConfigurationError(f"Depth speed must be one of {DEPTH_SPEEDS}, got {speed}")

    stream = f"{_symbol(symbol)}@depth{levels or ''}"
    if speed:
        stream = f"{stream}@{speed}"
    return stream


def book_ticker(symbol: str) -> str:
    return f"{_symbol(symbol)}@bookTicker"


def ticker(symbol: str) -> str:
    return f"{_symbol(symbol)}@ticker"


def mini_ticker(symbol: str) -> str:
    return f"{_symbol(symbol)}@miniTicker"


def mark_price(symbol: str, every_second: bool = False) -> str:
    stream = f"{_symbol(symbol)}@markPrice"
    return f"{stream}@1s" if every_second else stream


def all_mark_price(every_second: bool = False) -> str:
    return "!markPrice@arr@1s" if every_second else "!markPrice@arr"


def force_order(symbol: str) -> str:
    return f"{_symbol(symbol)}@forceOrder"


def user_data(listen_key: str) -> str:
    """User data stream; the listen key is the stream name, used verbatim"""
    if not listen_key or not listen_key.strip():
        raise ConfigurationError("Listen key must not be empty")
    return listen_key.strip()


# Raw event type -> stream suffix
_EVENT_STREAMS = {
    "aggTrade": "aggTrade",
    "trade": "trade",
    "depthUpdate": "depth",
    "bookTicker": "bookTicker",
    "24hrTicker": "ticker",
    "24hrMiniTicker": "miniTicker",
    "markPriceUpdate": "markPrice",
    "forceOrder": "forceOrder",
}

# Raw event type -> all-market array stream
_ARRAY_STREAMS = {
    "24hrTicker": ALL_TICKER,
    "24hrMiniTicker": ALL_MINI_TICKER,
    "markPriceUpdate": "!markPrice@arr",
}


def stream_for_event(payload: Any) -> Optional[str]:
    """
    Derive the stream identifier of a raw (unwrapped) data frame

    Args:
        payload: Decoded frame; an event dict or an all-market array

    Returns:
        Stream identifier, or None when the frame does not name one
    """
    if isinstance(payload, list):
        if payload and isinstance(payload[0], dict):
            return _ARRAY_STREAMS.get(payload[0].get("e"))
        return None

    if not isinstance(payload, dict):
        return None

    event_type = payload.get("e")
    symbol = payload.get("s")
    if event_type == "forceOrder" and isinstance(payload.get("o"), dict):
        symbol = payload["o"].get("s")

    # Spot book ticker frames carry no event type
    if event_type is None and {"u", "s", "b", "a"} <= payload.keys():
        event_type = "bookTicker"

    if event_type is None or not symbol:
        return None

    if event_type == "kline" and isinstance(payload.get("k"), dict):
        return f"{symbol.lower()}@kline_{payload['k'].get('i')}"

    suffix = _EVENT_STREAMS.get(event_type, event_type)
    return f"{symbol.lower()}@{suffix}"
