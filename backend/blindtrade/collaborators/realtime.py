"""
In-process realtime relay.

WHAT: Fan negotiation events out to SSE subscribers of that negotiation
WHY: Participants see new messages without polling
HOW: One bounded asyncio.Queue per subscriber; publishers on worker threads
     hand events to the subscriber's loop with call_soon_threadsafe.
     Delivery is fire-and-forget: a full queue drops the event and a
     subscriber recovers by re-reading the negotiation.
"""

import asyncio
import threading
from typing import Optional

from ..utils.logger import get_logger
from .types import RealtimeEvent

logger = get_logger(__name__)


class Subscription:
    """One live subscriber of one negotiation."""

    def __init__(self, negotiation_id: str, queue: asyncio.Queue, loop: asyncio.AbstractEventLoop):
        self.negotiation_id = negotiation_id
        self.queue = queue
        self.loop = loop
        self.dropped = 0

    async def get(self, timeout: Optional[float] = None) -> RealtimeEvent:
        """Wait for the next event; raises asyncio.TimeoutError after timeout."""
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)


class RealtimeRelay:
    """Per-negotiation publish/subscribe hub."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: dict[str, set[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, negotiation_id: str) -> Subscription:
        """
        Register a subscriber on the calling event loop.

        Must be called from a coroutine; events are delivered on that loop.
        """
        loop = asyncio.get_running_loop()
        subscription = Subscription(negotiation_id, asyncio.Queue(maxsize=self.queue_size), loop)
        with self._lock:
            self._subscribers.setdefault(negotiation_id, set()).add(subscription)
        logger.info(f"Realtime subscriber added for {negotiation_id}")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        with self._lock:
            subscribers = self._subscribers.get(subscription.negotiation_id)
            if subscribers is None:
                return
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[subscription.negotiation_id]
        logger.info(f"Realtime subscriber removed for {subscription.negotiation_id}")

    def subscriber_count(self, negotiation_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(negotiation_id, ()))

    def publish(self, negotiation_id: str, event: RealtimeEvent) -> int:
        """
        Hand event to every current subscriber of negotiation_id.

        Safe to call from any thread.

        Returns:
            Number of subscribers the event was scheduled for
        """
        with self._lock:
            subscribers = list(self._subscribers.get(negotiation_id, ()))

        scheduled = 0
        for subscription in subscribers:
            try:
                subscription.loop.call_soon_threadsafe(self._deliver, subscription, event)
                scheduled += 1
            except RuntimeError:
                # Subscriber's loop is closed
                logger.warning(f"Dropping subscriber of {negotiation_id} with closed event loop")
                self.unsubscribe(subscription)
        return scheduled

    @staticmethod
    def _deliver(subscription: Subscription, event: RealtimeEvent):
        try:
            subscription.queue.put_nowait(event)
        except asyncio.QueueFull:
            subscription.dropped += 1
            logger.warning(
                f"Realtime queue full for {subscription.negotiation_id}, "
                f"dropped {event.type} (total dropped: {subscription.dropped})"
            )
