"""
Configuration management using Pydantic Settings
"""
from dataclasses import replace
from enum import Enum
from typing import Optional

from loguru import logger
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..rest.endpoint import ORDERS, REQUEST_WEIGHT
from ..rest.rate_limiter import FUTURES_LIMITS, SPOT_LIMITS, RateLimit


class Market(str, Enum):
    """Exchange market"""
    SPOT = "spot"
    FUTURES = "futures"


# (rest_url, ws_url) per market, live then testnet
_HOSTS = {
    (Market.SPOT, False): ("https://api.binance.com", "wss://stream.binance.com:9443/stream"),
    (Market.SPOT, True): ("https://testnet.binance.vision", "wss://testnet.binance.vision/stream"),
    (Market.FUTURES, False): ("https://fapi.binance.com", "wss://fstream.binance.com/stream"),
    (Market.FUTURES, True): ("https://testnet.binancefuture.com", "wss://stream.binancefuture.com/stream"),
}


class RestSettings(BaseSettings):
    """REST dispatch configuration"""

    base_url: Optional[str] = Field(default=None, description="Override the market's REST host")
    timeout: float = Field(default=10.0, description="HTTP request timeout (seconds)")

    max_attempts: int = Field(default=3, ge=1, description="Attempts per call, including the first")
    backoff_multiplier: float = Field(default=0.5, description="Base retry delay (seconds)")
    backoff_max: float = Field(default=8.0, description="Cap on a single retry delay (seconds)")

    recv_window: Optional[int] = Field(default=None, description="recvWindow for signed calls (ms)")
    max_rate_limit_wait: Optional[float] = Field(
        default=None,
        description="Longest a call waits for local rate-limit admission (seconds, None = unbounded)"
    )

    # Bucket budgets; None keeps the exchange's published limit
    request_weight_per_minute: Optional[int] = Field(default=None, description="REQUEST_WEIGHT budget per minute")
    orders_per_10s: Optional[int] = Field(default=None, description="ORDERS budget per 10 seconds")
    orders_per_minute: Optional[int] = Field(default=None, description="ORDERS budget per minute (futures)")
    orders_per_day: Optional[int] = Field(default=None, description="ORDERS budget per day (spot)")

    model_config = SettingsConfigDict(env_prefix="BINANCE_REST_")


class StreamSettings(BaseSettings):
    """WebSocket session configuration"""

    url: Optional[str] = Field(default=None, description="Override the market's stream URL")
    request_timeout: float = Field(default=10.0, description="Control request timeout (seconds)")

    reconnect_initial_delay: float = Field(default=1.0, description="First reconnect delay (seconds)")
    reconnect_max_delay: float = Field(default=60.0, description="Cap on reconnect delay (seconds)")
    reconnect_jitter: float = Field(default=1.0, description="Maximum jitter per delay (seconds)")
    max_reconnect_attempts: Optional[int] = Field(
        default=None,
        description="Connect attempts per reconnect cycle (None = retry until cancelled)"
    )
    reconnect_stable_after: float = Field(
        default=10.0,
        description="Uptime after which a lost connection starts a fresh backoff cycle (seconds)"
    )

    ping_interval: Optional[float] = Field(default=20.0, description="Keepalive ping interval (seconds)")
    ping_timeout: Optional[float] = Field(default=20.0, description="Keepalive pong timeout (seconds)")
    sweep_interval: Optional[float] = Field(default=1.0, description="Pending request sweep interval (seconds)")
    event_queue_size: int = Field(default=10000, ge=1, description="Event sequence buffer size")

    model_config = SettingsConfigDict(env_prefix="BINANCE_WS_")


class Settings(BaseSettings):
    """Main client settings"""

    api_key: Optional[str] = Field(default=None, description="API key")
    api_secret: Optional[str] = Field(default=None, description="API secret")

    market: Market = Field(default=Market.SPOT, description="Market: spot or futures")
    testnet: bool = Field(default=False, description="Use testnet hosts")

    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[str] = Field(default=None, description="Log file path")

    # Sub-configurations
    rest: RestSettings = Field(default_factory=RestSettings)
    ws: StreamSettings = Field(default_factory=StreamSettings)

    model_config = SettingsConfigDict(
        env_prefix="BINANCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore"
    )

    @property
    def rest_url(self) -> str:
        """REST host for the configured market"""
        return self.rest.base_url or _HOSTS[(self.market, self.testnet)][0]

    @property
    def ws_url(self) -> str:
        """Combined stream URL for the configured market"""
        return self.ws.url or _HOSTS[(self.market, self.testnet)][1]

    def rate_limits(self) -> list[RateLimit]:
        """Rate-limit buckets for the configured market, with budget overrides applied"""
        defaults = FUTURES_LIMITS if self.market == Market.FUTURES else SPOT_LIMITS
        overrides = {
            (REQUEST_WEIGHT, 60.0): self.rest.request_weight_per_minute,
            (ORDERS, 10.0): self.rest.orders_per_10s,
            (ORDERS, 60.0): self.rest.orders_per_minute,
            (ORDERS, 86400.0): self.rest.orders_per_day,
        }

        limits = []
        for limit in defaults:
            budget = overrides.pop((limit.kind, limit.window_seconds), None)
            limits.append(replace(limit, budget=budget) if budget else limit)

        for (kind, window), budget in overrides.items():
            if budget:
                logger.warning(
                    f"Ignoring {kind}/{window:g}s budget override: "
                    f"no such bucket on {self.market.value}"
                )
        return limits
