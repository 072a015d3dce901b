"""
In-process publish/subscribe for execution progress
"""
import asyncio
from typing import Dict, Any, List, Callable
from dataclasses import dataclass, field
from datetime import datetime
import logging

from ..models import utcnow


logger = logging.getLogger(__name__)

EXECUTION_UPDATE = "execution.update"
EXECUTION_COMPLETE = "execution.complete"
STEP_UPDATE = "step.update"
WILDCARD = "*"


@dataclass
class Event:
    """Progress event delivered to subscribers"""
    topic: str
    payload: Any
    timestamp: datetime = field(default_factory=utcnow)
    headers: Dict[str, str] = field(default_factory=dict)


class EventBus:
    """Topic-based event bus; publishers call it only after the store commit"""

    def __init__(self):
        self.subscribers: Dict[str, List[Callable]] = {}
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, payload: Any, headers: Dict[str, str] = None):
        event = Event(
            topic=topic,
            payload=payload,
            headers=headers or {}
        )

        async with self._lock:
            subscribers = list(self.subscribers.get(topic, [])) + list(self.subscribers.get(WILDCARD, []))

        # handlers for one event run concurrently; events stay ordered per publisher
        if subscribers:
            await asyncio.gather(*(self._notify_subscriber(s, event) for s in subscribers))

        logger.debug(f"Published event to topic '{topic}' with {len(subscribers)} subscribers")

    async def subscribe(self, topic: str, handler: Callable):
        async with self._lock:
            self.subscribers.setdefault(topic, []).append(handler)
        logger.info(f"Subscribed to topic '{topic}'")

    async def unsubscribe(self, topic: str, handler: Callable):
        async with self._lock:
            if topic in self.subscribers and handler in self.subscribers[topic]:
                self.subscribers[topic].remove(handler)
                if not self.subscribers[topic]:
                    del self.subscribers[topic]
        logger.info(f"Unsubscribed from topic '{topic}'")

    async def _notify_subscriber(self, subscriber: Callable, event: Event):
        """A failing subscriber never affects the publisher"""
        try:
            if asyncio.iscoroutinefunction(subscriber):
                await subscriber(event)
            else:
                subscriber(event)
        except Exception as e:
            logger.error(f"Error notifying subscriber for topic '{event.topic}': {e}", exc_info=True)
