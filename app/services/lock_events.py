"""
Per-process lock event fan-out for live admin sessions.

Each server process keeps its own set of subscribers (SSE connections).
This is a cache-invalidation hint only: the action_locks table is the
source of truth, and a dashboard that misses an event catches up on its
next poll of /api/v1/admin/action-locks.

Publishers run in sync request handlers (threadpool) as well as on the
event loop, so delivery goes through ``loop.call_soon_threadsafe``.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from ..models.action_lock import LockEventType
from ..utils import clock

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 100


@dataclass
class LockEvent:
    type: str
    resource_type: str
    resource_id: str
    action: str
    lock_id: Optional[str] = None
    admin_email: Optional[str] = None
    admin_name: Optional[str] = None
    locked_at: Optional[int] = None
    expires_at: Optional[int] = None
    timestamp: int = field(default_factory=lambda: clock.now_ts())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_lock(cls, event_type: LockEventType, lock) -> "LockEvent":
        return cls(
            type=event_type.value,
            resource_type=lock.resource_type,
            resource_id=lock.resource_id,
            action=lock.action,
            lock_id=lock.id,
            admin_email=lock.admin_email,
            admin_name=lock.admin_name,
            locked_at=lock.locked_at,
            expires_at=lock.expires_at,
        )


class Subscription:
    """One live viewer. Events that do not fit in the queue are dropped."""

    def __init__(self, loop: asyncio.AbstractEventLoop, resource_type: Optional[str] = None):
        self.loop = loop
        self.resource_type = resource_type
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self.dropped = 0

    def wants(self, event: LockEvent) -> bool:
        return self.resource_type is None or self.resource_type == event.resource_type

    def _offer(self, event: LockEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1

    def deliver(self, event: LockEvent) -> None:
        self.loop.call_soon_threadsafe(self._offer, event)

    async def get(self, timeout: Optional[float] = None) -> Optional[LockEvent]:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None


class LockEventBroadcaster:
    def __init__(self):
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, resource_type: Optional[str] = None) -> Subscription:
        """Register a subscriber bound to the running event loop."""
        subscription = Subscription(asyncio.get_running_loop(), resource_type)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: LockEvent) -> int:
        """
        Best-effort fan-out. Never raises; returns how many subscribers the
        event was handed to.
        """
        with self._lock:
            targets = [s for s in self._subscribers if s.wants(event)]

        delivered = 0
        for subscription in targets:
            try:
                subscription.deliver(event)
                delivered += 1
            except RuntimeError:
                # Loop already closed: the connection is gone
                self.unsubscribe(subscription)
            except Exception as e:
                logger.warning(f"Failed to broadcast {event.type} for {event.resource_type}:{event.resource_id}: {e}")
        return delivered


_broadcaster = LockEventBroadcaster()


def get_lock_broadcaster() -> LockEventBroadcaster:
    return _broadcaster
