import asyncio
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class Subscription:
    def __init__(self, maxsize: int) -> None:
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def get(self) -> Optional[Dict[str, Any]]:
        """Next message, or ``None`` once the subscription was dropped."""
        if self.closed and self.queue.empty():
            return None
        return await self.queue.get()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(None)


class Broadcaster:
    """Fan-out of log lines and lifecycle events to every connected observer."""

    def __init__(self, queue_size: int = 1000) -> None:
        self._queue_size = queue_size
        self._subscribers: set[Subscription] = set()

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self._queue_size)
        self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)

    def publish(self, message: Dict[str, Any]) -> None:
        for subscription in list(self._subscribers):
            try:
                subscription.queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Dropping observer that fell %s messages behind", self._queue_size)
                self.unsubscribe(subscription)
                subscription.close()

    def publish_log(self, line: str) -> None:
        self.publish({"type": "log", "line": line})

    def publish_status(self, action: str, **extra: Any) -> None:
        self.publish({"type": "serverStatusUpdate", "action": action, **extra})

    def close(self) -> None:
        for subscription in list(self._subscribers):
            subscription.close()
        self._subscribers.clear()
