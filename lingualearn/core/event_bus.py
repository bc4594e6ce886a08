import asyncio
from collections import deque
from datetime import datetime, timezone

from lingualearn.core.logging import DOMAIN_API, get_domain_logger

logger = get_domain_logger(__name__, DOMAIN_API)


class EventBus:
    """Fan-out of quiz lifecycle events to stream subscribers, with a bounded replay history.

    Each subscriber gets a bounded queue; a subscriber that stops draining loses new
    events (counted in ``dropped``) instead of growing memory or blocking publishers.
    """

    def __init__(self, history_size: int = 200, subscriber_queue_size: int = 500):
        self._subscribers: list[asyncio.Queue] = []
        self._history: deque[dict] = deque(maxlen=history_size)
        self._queue_size = subscriber_queue_size
        self._lock = asyncio.Lock()
        self.dropped = 0

    async def publish(self, event_type: str, source: str, data: dict) -> None:
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": event_type,
            "source": source,
            "data": data,
        }
        async with self._lock:
            self._history.append(event)
            subscribers = list(self._subscribers)
        for queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped += 1
                logger.debug("Dropped %s event for a slow subscriber", event_type)

    async def subscribe(self, replay_last: int = 10) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        async with self._lock:
            self._subscribers.append(queue)
            history = list(self._history)[-replay_last:] if replay_last > 0 else []
        for event in history[-self._queue_size:]:
            queue.put_nowait(event)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue) -> None:
        async with self._lock:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def history(self, event_type: str | None = None) -> list[dict]:
        if event_type is None:
            return list(self._history)
        return [event for event in self._history if event["type"] == event_type]


event_bus = EventBus()
