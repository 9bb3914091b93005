from __future__ import annotations
import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional, Set
from loguru import logger


@dataclass(eq=False)
class Subscriber:
    user_id: Optional[int]
    queue: "asyncio.Queue[str]" = field(default_factory=lambda: asyncio.Queue(maxsize=100))


class EventBroadcaster:
    """
    Fan-out of coarse habit lifecycle events to server-sent-event subscribers.

    Delivery is best-effort and at-most-once: a subscriber whose queue is full
    simply misses the event.
    """

    PING_SECONDS = 25.0

    def __init__(self):
        self._subscribers: Set[Subscriber] = set()

    @staticmethod
    def format_sse(event: str, payload: Dict[str, Any]) -> str:
        return f"event: {event}\ndata: {json.dumps(payload, default=str)}\n\n"

    def subscribe(self, user_id: Optional[int] = None) -> Subscriber:
        sub = Subscriber(user_id=user_id)
        self._subscribers.add(sub)
        return sub

    def unsubscribe(self, sub: Subscriber) -> None:
        self._subscribers.discard(sub)

    def publish(self, event: str, payload: Dict[str, Any]) -> int:
        """Queue the event for matching subscribers; returns how many got it."""
        message = self.format_sse(event, payload)
        target_user = payload.get("user_id")
        delivered = 0
        for sub in list(self._subscribers):
            if sub.user_id is not None and target_user is not None and sub.user_id != target_user:
                continue
            try:
                sub.queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.debug("Dropping '{}' event for a slow subscriber", event)
        return delivered

    async def stream(self, sub: Subscriber) -> AsyncIterator[str]:
        yield self.format_sse("ready", {"message": "connected"})
        try:
            while True:
                try:
                    message = await asyncio.wait_for(sub.queue.get(), timeout=self.PING_SECONDS)
                except asyncio.TimeoutError:
                    yield ": ping\n\n"
                    continue
                yield message
        finally:
            self.unsubscribe(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
