"""
Client facade

Wires the credential store, the shared rate limiter and the REST dispatcher
from settings, and creates streaming sessions against the configured
stream endpoint.

Usage:
    async with BinanceClient(Settings(api_key=..., api_secret=...)) as client:
        server_time = await client.call(
            EndpointDescriptor.build("GET", "/api/v3/time")
        )

        session = client.stream()
        await session.start()
        await session.subscribe(streams.trade("BTCUSDT"))
"""
from typing import Any, Optional

from loguru import logger

from .clock import Clock, SystemClock
from .config.settings import Settings
from .credentials import Credential, CredentialStore
from .log_config import configure_logging
from .rest.dispatcher import RestDispatcher
from .rest.endpoint import EndpointDescriptor
from .rest.rate_limiter import FixedWindowRateLimiter
from .rest.transport import AiohttpTransport, IHttpTransport
from .ws.base import IWebSocketTransport
from .ws.session import StreamingSession
from .ws.streams import user_data
from .ws.transport import WebsocketsTransport


class BinanceClient:
    """
    Exchange connectivity client

    REST calls issued through one client share a single rate limiter; every
    session created by stream() is closed with the client.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        credential: Optional[Credential] = None,
        http_transport: Optional[IHttpTransport] = None,
        ws_transport: Optional[IWebSocketTransport] = None,
        clock: Optional[Clock] = None,
        configure_logs: bool = False
    ):
        """
        Initialize client

        Args:
            settings: Client settings (read from the environment if omitted)
            credential: Credential overriding the settings' key/secret
            http_transport: HTTP transport (aiohttp by default)
            ws_transport: WebSocket transport (websockets by default)
            clock: Time source shared by every component
            configure_logs: Install log sinks from settings.log_level and
                settings.log_file (for applications; libraries leave it off)
        """
        self.settings = settings or Settings()
        self.clock = clock or SystemClock()

        if configure_logs:
            configure_logging(self.settings.log_level, self.settings.log_file)

        if credential is not None:
            self.credentials = CredentialStore(credential)
        else:
            self.credentials = CredentialStore.from_keys(
                self.settings.api_key,
                self.settings.api_secret,
            )

        rest = self.settings.rest
        self.http_transport = http_transport or AiohttpTransport(timeout=rest.timeout)
        self.ws_transport = ws_transport or WebsocketsTransport(
            ping_interval=self.settings.ws.ping_interval,
            ping_timeout=self.settings.ws.ping_timeout,
        )

        self.rate_limiter = FixedWindowRateLimiter(self.settings.rate_limits(), clock=self.clock)
        self.dispatcher = RestDispatcher(
            base_url=self.settings.rest_url,
            transport=self.http_transport,
            rate_limiter=self.rate_limiter,
            credentials=self.credentials,
            clock=self.clock,
            max_attempts=rest.max_attempts,
            backoff_multiplier=rest.backoff_multiplier,
            backoff_max=rest.backoff_max,
            recv_window=rest.recv_window,
            max_rate_limit_wait=rest.max_rate_limit_wait,
        )

        self._sessions: list[StreamingSession] = []

        logger.info(
            f"Initialized {self.settings.market.value} client "
            f"({'testnet' if self.settings.testnet else 'live'}, "
            f"{'authenticated' if self.credentials.has_credential else 'public only'})"
        )

    async def call(
        self,
        descriptor: EndpointDescriptor,
        credential: Optional[Credential] = None
    ) -> Any:
        """Dispatch a REST call; see RestDispatcher.call"""
        return await self.dispatcher.call(descriptor, credential)

    def stream(self, url: Optional[str] = None, default_stream: Optional[str] = None) -> StreamingSession:
        """
        Create a streaming session (not started)

        Args:
            url: Stream URL (defaults to the market's combined stream endpoint)
            default_stream: Stream id tagged on every raw frame
        """
        ws = self.settings.ws
        session = StreamingSession(
            url or self.settings.ws_url,
            self.ws_transport,
            clock=self.clock,
            request_timeout=ws.request_timeout,
            reconnect_initial_delay=ws.reconnect_initial_delay,
            reconnect_max_delay=ws.reconnect_max_delay,
            reconnect_jitter=ws.reconnect_jitter,
            max_reconnect_attempts=ws.max_reconnect_attempts,
            sweep_interval=ws.sweep_interval,
            reconnect_stable_after=ws.reconnect_stable_after,
            event_queue_size=ws.event_queue_size,
            default_stream=default_stream,
        )
        self._sessions.append(session)
        return session

    def user_data_stream(self, listen_key: str) -> StreamingSession:
        """
        Create a session bound to a user data stream

        The listen key is the stream: frames arrive raw and are tagged with it.
        """
        stream_id = user_data(listen_key)
        base = self.settings.ws_url.rsplit("/", 1)[0]
        return self.stream(url=f"{base}/ws/{stream_id}", default_stream=stream_id)

    async def close(self) -> None:
        """Close all sessions and the HTTP transport"""
        for session in self._sessions:
            await session.close()
        self._sessions.clear()
        await self.http_transport.close()
        logger.info("Client closed")

    async def __aenter__(self) -> "BinanceClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
