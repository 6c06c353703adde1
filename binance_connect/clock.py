"""
Injectable time source

Rate-limit windows, request timestamps, backoff delays and pending-request
expiry all read time through a Clock so tests can drive time by hand.
"""
import asyncio
import time
from abc import ABC, abstractmethod


class Clock(ABC):
    """Time source interface"""

    @abstractmethod
    def time(self) -> float:
        """Wall-clock seconds since the epoch"""
        pass

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task for the given number of seconds"""
        pass

    def time_ms(self) -> int:
        """Wall-clock milliseconds since the epoch (request timestamps)"""
        return int(self.time() * 1000)


class SystemClock(Clock):
    """Real time backed by time.time() and asyncio.sleep()"""

    def time(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))
