"""
Best-effort fan-out of job events to observers.

Each subscription owns a bounded queue. Publishing never awaits: when a
subscriber falls behind, its oldest undelivered event is discarded to make
room, so a slow or vanished observer cannot hold up the output readers.
Events for jobs without subscribers are dropped; the job registry's log
remains available for polling.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, Optional, Set

from drive_migrator.types import EventType, JobEvent
from drive_migrator.utils import short_id

logger = logging.getLogger(__name__)


class Subscription:
    """Event stream of one observer for one job.

    Iterate with ``async for``; iteration ends after the ``done`` event or
    when the subscription is closed.
    """

    def __init__(self, job_id: str, max_queue_size: int = 100):
        self.job_id = job_id
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, max_queue_size))
        self._closed = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: Optional[JobEvent]) -> None:
        """Enqueue without blocking, evicting the oldest event if full."""
        if self._closed:
            return
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    async def get(self, timeout: Optional[float] = None) -> Optional[JobEvent]:
        """Next event, or None once the stream has ended.

        Raises:
            asyncio.TimeoutError: If no event arrives within ``timeout``
        """
        if self._finished:
            return None
        event = await asyncio.wait_for(self._queue.get(), timeout)
        if event is None or event.type == EventType.DONE:
            self._finished = True
        return event

    def close(self) -> None:
        if not self._closed:
            self.deliver(None)
            self._closed = True

    def __aiter__(self):
        return self

    async def __anext__(self) -> JobEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class NotificationPublisher:
    """Routes job events to the subscriptions registered for that job."""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: Dict[str, Set[Subscription]] = defaultdict(set)
        self.metrics = {"published": 0, "delivered": 0, "dropped_no_subscriber": 0}

    def subscribe(self, job_id: str) -> Subscription:
        subscription = Subscription(job_id, self.max_queue_size)
        self._subscribers[job_id].add(subscription)
        logger.debug(f"Observer subscribed to job {short_id(job_id)}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.job_id)
        if subscribers is not None:
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[subscription.job_id]
        subscription.close()

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, ()))

    def publish(self, event: JobEvent) -> int:
        """Deliver an event to every subscriber of its job.

        Returns:
            Number of subscriptions the event was handed to
        """
        self.metrics["published"] += 1
        subscribers = self._subscribers.get(event.job_id)
        if not subscribers:
            self.metrics["dropped_no_subscriber"] += 1
            return 0

        delivered = 0
        for subscription in list(subscribers):
            try:
                subscription.deliver(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Failed to deliver {event.type.value} event for job {short_id(event.job_id)}: {e}")

        if event.type == EventType.DONE:
            # Streams end with the done event
            del self._subscribers[event.job_id]

        self.metrics["delivered"] += delivered
        return delivered

    def close_all(self) -> None:
        for subscribers in self._subscribers.values():
            for subscription in subscribers:
                subscription.close()
        self._subscribers.clear()
