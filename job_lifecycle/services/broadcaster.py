"""Fan-out of committed transition records to live subscribers.

Each subscriber (typically one SSE connection) gets its own bounded
``asyncio.Queue`` so several dashboards can watch the same job without
stealing each other's events.  A subscriber that falls ``max_pending``
records behind is evicted: its queue is drained and left holding a single
``None``, which tells the stream to close so the client reconnects and
starts again from the current state.
"""

import asyncio
import logging

from job_lifecycle.models import TransitionRecord

logger = logging.getLogger(__name__)

MAX_PENDING_EVENTS = 256

SubscriberQueue = asyncio.Queue[TransitionRecord | None]


class TransitionBroadcaster:
    """Per-job registry of subscriber queues.

    Attributes:
        max_pending: Records a subscriber may have queued before it is evicted.
    """

    def __init__(self, max_pending: int = MAX_PENDING_EVENTS) -> None:
        self.max_pending = max_pending
        self._subscribers: dict[str, set[SubscriberQueue]] = {}

    def subscribe(self, job_id: str) -> SubscriberQueue:
        """Register a new subscriber for *job_id* and return its queue."""
        queue: SubscriberQueue = asyncio.Queue(maxsize=self.max_pending)
        self._subscribers.setdefault(job_id, set()).add(queue)
        logger.debug("Subscriber attached to job %s (%d total)", job_id, len(self._subscribers[job_id]))
        return queue

    def unsubscribe(self, job_id: str, queue: SubscriberQueue) -> None:
        """Detach *queue*; unknown queues are ignored."""
        queues = self._subscribers.get(job_id)
        if not queues or queue not in queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[job_id]
        logger.debug("Subscriber detached from job %s", job_id)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, ()))

    def _evict(self, job_id: str, queue: SubscriberQueue) -> None:
        self.unsubscribe(job_id, queue)
        while not queue.empty():
            queue.get_nowait()
        queue.put_nowait(None)

    def publish(self, record: TransitionRecord) -> None:
        """Deliver *record* to every current subscriber of its job."""
        for queue in tuple(self._subscribers.get(record.job_id, ())):
            try:
                queue.put_nowait(record)
            except asyncio.QueueFull:
                logger.warning(
                    "Subscriber to job %s fell %d records behind; closing its stream",
                    record.job_id,
                    self.max_pending,
                )
                self._evict(record.job_id, queue)
