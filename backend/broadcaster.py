# backend/broadcaster.py
"""
Fan-out of job lifecycle events to live subscribers (WebSocket clients).

Delivery is fire-and-forget: a subscriber whose buffer is full is dropped
instead of slowing down the queue. There is no replay; a late subscriber
only sees events published after it joined.
"""

import asyncio
import logging
from typing import Dict, Set

from .model import ProgressEvent

logger = logging.getLogger(__name__)

WELCOME_MESSAGE = {"type": "connection_established", "message": "Connected to generation service"}

TERMINAL_EVENTS = ("completed", "error")


class Subscription:
    def __init__(self, maxsize: int = 100) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def offer(self, message: dict) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            return False

    def close(self) -> None:
        """End the stream. Pending messages are dropped."""
        if self.closed:
            return
        self.closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> dict:
        message = await self._queue.get()
        if message is None:
            raise StopAsyncIteration
        return message


class ProgressBroadcaster:
    def __init__(self, buffer_size: int = 100) -> None:
        self.buffer_size = buffer_size
        self._subscribers: Set[Subscription] = set()
        self._progress: Dict[str, int] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        sub = Subscription(maxsize=self.buffer_size)
        sub.offer(dict(WELCOME_MESSAGE))
        self._subscribers.add(sub)
        logger.info("Subscriber connected (%d total)", len(self._subscribers))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.discard(sub)
            logger.info("Subscriber disconnected (%d total)", len(self._subscribers))
        sub.close()

    def publish(self, event: ProgressEvent) -> int:
        """Deliver `event` to every subscriber; returns how many received it."""
        last = self._progress.get(event.job_id, 0)
        if event.progress < last:
            event = event.model_copy(update={"progress": last})
        if event.type in TERMINAL_EVENTS:
            self._progress.pop(event.job_id, None)
        else:
            self._progress[event.job_id] = event.progress

        message = event.model_dump(mode="json")
        delivered = 0
        for sub in list(self._subscribers):
            if sub.offer(message):
                delivered += 1
            else:
                logger.warning("Dropping slow subscriber")
                self.unsubscribe(sub)
        return delivered

    def close(self) -> None:
        for sub in list(self._subscribers):
            self.unsubscribe(sub)
        self._progress.clear()
