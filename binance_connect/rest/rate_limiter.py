"""
Rate limiter implementations

Fixed-window weight counters, one per limit bucket. Every admitted call adds
its weight to each bucket it counts against. A bucket whose window has
elapsed is reset lazily, the next time it is evaluated.

Admission is a single check-and-increment step under one lock, so two
concurrent callers can never both fit into the last slot of a window.
"""
import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional

from loguru import logger

from ..clock import Clock, SystemClock
from ..errors import RateLimitedError, RateLimitReason
from .endpoint import EndpointDescriptor, ORDERS, REQUEST_WEIGHT


@dataclass(frozen=True)
class RateLimit:
    """Rate limit configuration for one bucket"""
    kind: str  # Limit family descriptors refer to (REQUEST_WEIGHT, ORDERS)
    budget: int  # Max weight per window
    window_seconds: float  # Window duration
    header: Optional[str] = None  # Server usage header for this window

    @property
    def name(self) -> str:
        return f"{self.kind}/{self.window_seconds:g}s"


class RateLimitBucket:
    """
    Fixed-window counter

    Windows are aligned to multiples of the window duration, the way the
    exchange counts them.
    """

    def __init__(self, limit: RateLimit, now: float):
        self.limit = limit
        self.consumed = 0
        self.window_start = self._align(now)

    @property
    def name(self) -> str:
        return self.limit.name

    @property
    def budget(self) -> int:
        return self.limit.budget

    @property
    def reset_at(self) -> float:
        return self.window_start + self.limit.window_seconds

    @property
    def remaining(self) -> int:
        return max(0, self.limit.budget - self.consumed)

    def _align(self, now: float) -> float:
        window = self.limit.window_seconds
        return math.floor(now / window) * window

    def roll(self, now: float) -> None:
        """Reset the counter if its window has elapsed"""
        if now >= self.reset_at:
            self.window_start = self._align(now)
            self.consumed = 0

    def fits(self, weight: int) -> bool:
        return self.consumed + weight <= self.limit.budget


class AdmissionVerdict(str, Enum):
    """Outcome of an admission check"""
    PROCEED = "proceed"
    WAIT = "wait"
    REJECT = "reject"  # Over capacity: can never fit


@dataclass
class Reservation:
    """
    Weight taken from the buckets by one admitted call

    The dispatcher commits the reservation right before the request goes on
    the wire; an uncommitted reservation can be released back.
    """
    weight: int
    windows: Dict[str, float] = field(default_factory=dict)
    committed: bool = False
    released: bool = False

    def commit(self) -> None:
        self.committed = True


@dataclass(frozen=True)
class Admission:
    """Result of RateLimiter.admit()"""
    verdict: AdmissionVerdict
    wait_until: Optional[float] = None
    reservation: Optional[Reservation] = None
    buckets: tuple[str, ...] = ()


class IRateLimiter(ABC):
    """
    Interface for rate limiting

    Prevents exceeding exchange rate limits.
    """

    @abstractmethod
    def admit(self, descriptor: EndpointDescriptor) -> Admission:
        """
        Decide whether a call may proceed now

        On PROCEED the weight has already been reserved.
        """
        pass

    @abstractmethod
    async def acquire(
        self,
        descriptor: EndpointDescriptor,
        max_wait: Optional[float] = None
    ) -> Reservation:
        """
        Wait for admission

        Args:
            descriptor: Call to admit
            max_wait: Longest the caller accepts to wait (None = unbounded)

        Raises:
            RateLimitedError: Over capacity, or wait longer than max_wait
        """
        pass

    @abstractmethod
    def release(self, reservation: Reservation) -> None:
        """Give back an uncommitted reservation"""
        pass

    @abstractmethod
    def get_remaining(self, name: str) -> int:
        """Remaining weight in the named bucket"""
        pass

    @abstractmethod
    def reset_limits(self) -> None:
        """Reset all rate limits (for testing)"""
        pass


class FixedWindowRateLimiter(IRateLimiter):
    """
    Fixed-window rate limiter over several buckets

    Server feedback only ever tightens local state: a usage header reporting
    more consumption than we counted raises our count, a lower one is
    ignored.
    """

    def __init__(
        self,
        limits: Iterable[RateLimit],
        clock: Optional[Clock] = None
    ):
        """
        Initialize rate limiter

        Args:
            limits: Bucket configurations
            clock: Time source
        """
        self.clock = clock or SystemClock()
        self.limits = list(limits)
        self._lock = threading.Lock()
        self._blocked_until = 0.0

        now = self.clock.time()
        self.buckets: Dict[str, RateLimitBucket] = {
            limit.name: RateLimitBucket(limit, now) for limit in self.limits
        }

        logger.info(f"Initialized rate limiter with {len(self.buckets)} buckets")

    def _buckets_for(self, descriptor: EndpointDescriptor) -> list[RateLimitBucket]:
        kinds = set(descriptor.limits)
        return [b for b in self.buckets.values() if b.limit.kind in kinds]

    def admit(self, descriptor: EndpointDescriptor) -> Admission:
        weight = descriptor.weight

        with self._lock:
            now = self.clock.time()
            if self._blocked_until > now:
                return Admission(AdmissionVerdict.WAIT, wait_until=self._blocked_until)

            buckets = self._buckets_for(descriptor)
            for bucket in buckets:
                bucket.roll(now)

            over = [b.name for b in buckets if weight > b.budget]
            if over:
                return Admission(AdmissionVerdict.REJECT, buckets=tuple(over))

            exceeded = [b for b in buckets if not b.fits(weight)]
            if exceeded:
                return Admission(
                    AdmissionVerdict.WAIT,
                    wait_until=max(b.reset_at for b in exceeded),
                    buckets=tuple(b.name for b in exceeded),
                )

            reservation = Reservation(weight=weight)
            for bucket in buckets:
                bucket.consumed += weight
                reservation.windows[bucket.name] = bucket.window_start

            return Admission(
                AdmissionVerdict.PROCEED,
                reservation=reservation,
                buckets=tuple(b.name for b in buckets),
            )

    async def acquire(
        self,
        descriptor: EndpointDescriptor,
        max_wait: Optional[float] = None
    ) -> Reservation:
        deadline = None if max_wait is None else self.clock.time() + max_wait

        while True:
            admission = self.admit(descriptor)

            if admission.verdict == AdmissionVerdict.PROCEED:
                return admission.reservation

            if admission.verdict == AdmissionVerdict.REJECT:
                logger.warning(
                    f"{descriptor.describe()} weight {descriptor.weight} exceeds "
                    f"budget of {', '.join(admission.buckets)}"
                )
                raise RateLimitedError(
                    f"Weight {descriptor.weight} exceeds bucket budget: {', '.join(admission.buckets)}",
                    reason=RateLimitReason.OVER_CAPACITY,
                    source="local",
                )

            wait_until = admission.wait_until
            if deadline is not None and wait_until > deadline:
                raise RateLimitedError(
                    f"Rate limit admission for {descriptor.describe()} needs waiting "
                    f"{wait_until - self.clock.time():.2f}s (limit {max_wait:.2f}s)",
                    reason=RateLimitReason.WAIT_TOO_LONG,
                    source="local",
                    retry_at=wait_until,
                )

            delay = wait_until - self.clock.time()
            logger.debug(f"Rate limit: waiting {delay:.2f}s for {descriptor.describe()}")
            await self.clock.sleep(delay)

    def release(self, reservation: Reservation) -> None:
        with self._lock:
            if reservation.committed or reservation.released:
                return
            reservation.released = True

            for name, window_start in reservation.windows.items():
                bucket = self.buckets.get(name)
                # Only refund into the window the weight was taken from
                if bucket is not None and bucket.window_start == window_start:
                    bucket.consumed = max(0, bucket.consumed - reservation.weight)

        logger.debug(f"Released reservation of weight {reservation.weight}")

    def correct(self, name: str, used: int) -> bool:
        """
        Apply a server-reported usage figure to a bucket

        Tightening only: the bucket is raised to `used` if that exceeds the
        local count.

        Returns:
            True if the bucket changed
        """
        with self._lock:
            bucket = self.buckets.get(name)
            if bucket is None:
                return False
            bucket.roll(self.clock.time())
            if used <= bucket.consumed:
                return False
            previous = bucket.consumed
            bucket.consumed = used

        logger.debug(f"Rate limit {name}: corrected {previous} -> {used} from server")
        return True

    def correct_from_headers(self, headers: Mapping[str, str]) -> None:
        """Apply every known usage header found in a response"""
        if not headers:
            return
        lower = {str(k).lower(): v for k, v in headers.items()}
        for limit in self.limits:
            if not limit.header:
                continue
            value = lower.get(limit.header.lower())
            if value is None:
                continue
            try:
                used = int(str(value).split("/", 1)[0].strip())
            except ValueError:
                logger.warning(f"Unparseable usage header {limit.header}: {value!r}")
                continue
            self.correct(limit.name, used)

    def exhaust(self, kinds: Iterable[str]) -> None:
        """Mark buckets of the given kinds as fully used for their window"""
        kinds = set(kinds)
        with self._lock:
            now = self.clock.time()
            for bucket in self.buckets.values():
                if bucket.limit.kind in kinds:
                    bucket.roll(now)
                    bucket.consumed = max(bucket.consumed, bucket.budget)

    def penalize(self, until: float) -> None:
        """Block every admission until the given time (server back-off)"""
        with self._lock:
            if until > self._blocked_until:
                self._blocked_until = until
        logger.warning(f"Rate limiter blocked for {until - self.clock.time():.1f}s by server")

    def get_remaining(self, name: str) -> int:
        with self._lock:
            bucket = self.buckets.get(name)
            if bucket is None:
                return 999999  # Unlimited
            bucket.roll(self.clock.time())
            return bucket.remaining

    def reset_limits(self) -> None:
        with self._lock:
            now = self.clock.time()
            self.buckets = {
                limit.name: RateLimitBucket(limit, now) for limit in self.limits
            }
            self._blocked_until = 0.0

        logger.info("Reset all rate limits")

    def get_statistics(self) -> Dict[str, Dict[str, Any]]:
        """Get rate limit statistics"""
        with self._lock:
            now = self.clock.time()
            stats = {}
            for name, bucket in self.buckets.items():
                bucket.roll(now)
                stats[name] = {
                    "consumed": bucket.consumed,
                    "remaining": bucket.remaining,
                    "budget": bucket.budget,
                    "reset_at": bucket.reset_at,
                }
            return stats


# Published limits per market

SPOT_LIMITS = [
    RateLimit(REQUEST_WEIGHT, 6000, 60.0, header="X-MBX-USED-WEIGHT-1M"),
    RateLimit(ORDERS, 100, 10.0, header="X-MBX-ORDER-COUNT-10S"),
    RateLimit(ORDERS, 200000, 86400.0, header="X-MBX-ORDER-COUNT-1D"),
]

FUTURES_LIMITS = [
    RateLimit(REQUEST_WEIGHT, 2400, 60.0, header="X-MBX-USED-WEIGHT-1M"),
    RateLimit(ORDERS, 300, 10.0, header="X-MBX-ORDER-COUNT-10S"),
    RateLimit(ORDERS, 1200, 60.0, header="X-MBX-ORDER-COUNT-1M"),
]


def create_rate_limiter(
    market: str = "spot",
    clock: Optional[Clock] = None
) -> FixedWindowRateLimiter:
    """
    Factory function to create rate limiter for a market

    Args:
        market: 'spot' or 'futures'
        clock: Time source

    Returns:
        Configured rate limiter
    """
    limits_map = {
        "spot": SPOT_LIMITS,
        "futures": FUTURES_LIMITS,
    }

    return FixedWindowRateLimiter(limits_map.get(market.lower(), SPOT_LIMITS), clock=clock)
