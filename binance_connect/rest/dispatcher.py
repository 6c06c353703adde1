"""
REST dispatcher

Turns an EndpointDescriptor into one HTTP exchange:

1. Rate-limit admission (shared buckets, may wait)
2. Canonicalize parameters, sign with a fresh timestamp when SIGNED
3. Transport exchange
4. Feed server usage headers back into the limiter
5. Classify the status into a payload or an error

Transport failures and 5xx responses are retried with exponential backoff up
to a bounded number of attempts. 4xx responses are never retried.
"""
from typing import Any, Optional

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..clock import Clock, SystemClock
from ..credentials import Credential, CredentialStore
from ..errors import (
    BinanceConnectError,
    ClockSkewError,
    FirewallRejectedError,
    InvalidSignatureError,
    ProtocolError,
    RateLimitedError,
    RateLimitReason,
    RejectedError,
    ServerError,
)
from .endpoint import EndpointDescriptor
from .error_codes import CommonCode, describe_code, parse_error_body
from .rate_limiter import FixedWindowRateLimiter, Reservation
from .signer import RequestSigner, canonicalize
from .transport import HttpResponse, IHttpTransport

API_KEY_HEADER = "X-MBX-APIKEY"


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, BinanceConnectError) and exc.retryable


class RestDispatcher:
    """
    Issues REST calls under rate limits

    Many calls may run concurrently; the only state they share is the rate
    limiter's buckets.
    """

    def __init__(
        self,
        base_url: str,
        transport: IHttpTransport,
        rate_limiter: FixedWindowRateLimiter,
        credentials: Optional[CredentialStore] = None,
        clock: Optional[Clock] = None,
        max_attempts: int = 3,
        backoff_multiplier: float = 0.5,
        backoff_max: float = 8.0,
        recv_window: Optional[int] = None,
        max_rate_limit_wait: Optional[float] = None
    ):
        """
        Initialize dispatcher

        Args:
            base_url: API host, e.g. https://api.binance.com
            transport: HTTP transport
            rate_limiter: Shared rate limiter
            credentials: Credential store for SIGNED / API_KEY calls
            clock: Time source for timestamps and backoff sleeps
            max_attempts: Attempts per call including the first
            backoff_multiplier: Base of the exponential retry delay (seconds)
            backoff_max: Cap on a single retry delay (seconds)
            recv_window: recvWindow (ms) added to signed calls
            max_rate_limit_wait: Longest a call auto-waits for admission
        """
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self.rate_limiter = rate_limiter
        self.credentials = credentials or CredentialStore()
        self.clock = clock or rate_limiter.clock or SystemClock()
        self.max_attempts = max(1, max_attempts)
        self.backoff_multiplier = backoff_multiplier
        self.backoff_max = backoff_max
        self.recv_window = recv_window
        self.max_rate_limit_wait = max_rate_limit_wait

    async def call(
        self,
        descriptor: EndpointDescriptor,
        credential: Optional[Credential] = None
    ) -> Any:
        """
        Dispatch one REST call

        Args:
            descriptor: Endpoint descriptor
            credential: Overrides the store's credential for this call

        Returns:
            Decoded JSON payload of a 2xx response

        Raises:
            ConfigurationError: Credential needed but missing
            RateLimitedError: Refused locally or by the server
            RejectedError: 4xx rejection (ClockSkewError on -1021)
            TransportError: Transport / 5xx failure after all attempts
            ProtocolError: 2xx body that is not JSON
        """
        if descriptor.security.needs_api_key and credential is None:
            credential = self.credentials.require(descriptor.describe())

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=self.backoff_max),
            retry=retry_if_exception(_is_retryable),
            sleep=self.clock.sleep,
            before_sleep=self._log_retry(descriptor),
            reraise=True,
        )

        result = None
        async for attempt in retrying:
            with attempt:
                result = await self._attempt(descriptor, credential)
        return result

    def _log_retry(self, descriptor: EndpointDescriptor):
        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                f"{descriptor.describe()} attempt {retry_state.attempt_number}/{self.max_attempts} "
                f"failed: {exc}; retrying in {delay:.2f}s"
            )
        return before_sleep

    async def _attempt(
        self,
        descriptor: EndpointDescriptor,
        credential: Optional[Credential]
    ) -> Any:
        reservation = await self.rate_limiter.acquire(descriptor, max_wait=self.max_rate_limit_wait)
        url, headers = self._prepare(descriptor, credential, reservation)

        logger.debug(f"-> {descriptor.describe()} (weight {descriptor.weight})")
        response = await self.transport.request(descriptor.method.value, url, headers)
        logger.debug(f"<- {descriptor.describe()} {response.status}")

        self.rate_limiter.correct_from_headers(response.headers)
        return self._classify(descriptor, response)

    def _prepare(
        self,
        descriptor: EndpointDescriptor,
        credential: Optional[Credential],
        reservation: Reservation
    ) -> tuple[str, dict[str, str]]:
        """Build URL and headers, then commit the reservation"""
        try:
            if descriptor.security.needs_signature:
                signer = RequestSigner(credential, clock=self.clock, recv_window=self.recv_window)
                query = signer.sign_query(descriptor.params)
            else:
                query = canonicalize(descriptor.params)

            url = f"{self.base_url}{descriptor.path}"
            if query:
                url = f"{url}?{query}"

            headers = {}
            if descriptor.security.needs_api_key:
                headers[API_KEY_HEADER] = credential.key

            reservation.commit()
            return url, headers
        finally:
            if not reservation.committed:
                self.rate_limiter.release(reservation)

    def _retry_at(self, response: HttpResponse) -> Optional[float]:
        value = response.header("Retry-After")
        if value is None:
            return None
        try:
            return self.clock.time() + float(value)
        except ValueError:
            return None

    def _has_usage_headers(self, response: HttpResponse) -> bool:
        return any(
            limit.header and response.header(limit.header) is not None
            for limit in self.rate_limiter.limits
        )

    def _classify(self, descriptor: EndpointDescriptor, response: HttpResponse) -> Any:
        status = response.status

        if 200 <= status < 300:
            try:
                return response.json()
            except ProtocolError:
                logger.error(f"{descriptor.describe()} returned a non-JSON body")
                raise

        try:
            body = response.json()
        except ProtocolError:
            body = response.body.decode("utf-8", errors="replace")
        code, msg = parse_error_body(body)

        if status in (418, 429) or code == CommonCode.TOO_MANY_REQUESTS:
            retry_at = self._retry_at(response)
            if not self._has_usage_headers(response):
                self.rate_limiter.exhaust(descriptor.limits)
            if retry_at is not None:
                self.rate_limiter.penalize(retry_at)

            banned = status == 418
            logger.warning(
                f"{descriptor.describe()} {'IP banned' if banned else 'rate limited'} "
                f"by server (status {status}, code {code})"
            )
            raise RateLimitedError(
                msg or ("IP address has been banned" if banned else "Request rate limit reached"),
                reason=RateLimitReason.IP_BANNED if banned else RateLimitReason.TOO_MANY_REQUESTS,
                source="server",
                retry_at=retry_at,
            )

        if status == 403:
            raise FirewallRejectedError(msg or "Firewall limit reached", status=status, code=code)

        if 400 <= status < 500:
            logger.debug(f"{descriptor.describe()} rejected: {describe_code(code)} {msg}")
            if code == CommonCode.INVALID_TIMESTAMP:
                raise ClockSkewError(msg or "Timestamp outside recvWindow", status=status, code=code)
            if code == CommonCode.INVALID_SIGNATURE:
                raise InvalidSignatureError(msg or "Invalid signature", status=status, code=code)
            raise RejectedError(msg or f"Bad request (status {status})", status=status, code=code)

        if status >= 500:
            label = "API timeout" if status == 503 else "Internal server error"
            raise ServerError(f"{label}: {msg}".rstrip(": "), status=status, code=code)

        raise ProtocolError(f"Unexpected status {status} for {descriptor.describe()}")
