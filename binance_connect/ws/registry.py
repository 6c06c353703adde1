"""
Subscription registry

Source of truth for which streams should be active. Entries survive
reconnects: ACTIVE means "wanted", not "confirmed by the server".

All mutations and snapshots run under one lock, so a snapshot taken for
replay is a consistent point-in-time copy.
"""
import threading
from enum import Enum
from typing import Optional

from loguru import logger


class SubscriptionState(str, Enum):
    """Desired state of a subscription entry"""
    ACTIVE = "active"
    PENDING_REMOVE = "pending_remove"


class SubscriptionRegistry:
    """Mapping of stream identifier -> desired state"""

    def __init__(self):
        self._entries: dict[str, SubscriptionState] = {}
        self._lock = threading.Lock()

    def add(self, stream_id: str) -> bool:
        """
        Record intent to subscribe

        Adding an ACTIVE entry is a no-op; an entry pending removal becomes
        ACTIVE again.

        Returns:
            True if the registry changed
        """
        with self._lock:
            if self._entries.get(stream_id) == SubscriptionState.ACTIVE:
                return False
            self._entries[stream_id] = SubscriptionState.ACTIVE

        logger.debug(f"Subscription added: {stream_id}")
        return True

    def remove(self, stream_id: str) -> bool:
        """
        Mark an entry for removal (kept until the unsubscribe is acknowledged)

        Removing an absent entry is a no-op.

        Returns:
            True if the registry changed
        """
        with self._lock:
            if self._entries.get(stream_id) != SubscriptionState.ACTIVE:
                return False
            self._entries[stream_id] = SubscriptionState.PENDING_REMOVE

        logger.debug(f"Subscription pending removal: {stream_id}")
        return True

    def confirm_removed(self, stream_id: str) -> bool:
        """Drop an entry after its unsubscribe was acknowledged"""
        with self._lock:
            if self._entries.get(stream_id) != SubscriptionState.PENDING_REMOVE:
                return False
            del self._entries[stream_id]
        return True

    def discard(self, stream_id: str) -> bool:
        """Drop an entry regardless of state (explicit cancellation)"""
        with self._lock:
            return self._entries.pop(stream_id, None) is not None

    def purge_pending_removals(self) -> list[str]:
        """
        Drop every entry pending removal

        Used after a reconnect: the new connection has no server-side
        subscriptions, so pending removals are complete.
        """
        with self._lock:
            removed = [
                stream_id for stream_id, state in self._entries.items()
                if state == SubscriptionState.PENDING_REMOVE
            ]
            for stream_id in removed:
                del self._entries[stream_id]
        return removed

    def snapshot(self) -> frozenset[str]:
        """Point-in-time set of ACTIVE stream identifiers"""
        with self._lock:
            return frozenset(
                stream_id for stream_id, state in self._entries.items()
                if state == SubscriptionState.ACTIVE
            )

    def state_of(self, stream_id: str) -> Optional[SubscriptionState]:
        with self._lock:
            return self._entries.get(stream_id)

    def __contains__(self, stream_id: str) -> bool:
        return self.state_of(stream_id) == SubscriptionState.ACTIVE

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
