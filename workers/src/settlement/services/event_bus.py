"""
Simple in-memory event bus for decoupling publishers and subscribers
within the settlement worker.

Every subscriber gets its own asyncio queue, so each one receives all
events published after it subscribed.  Events published while nobody is
subscribed to their type are dropped.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, AsyncIterator, Dict, List


class EventBus:
    """Fan-out publish/subscribe over asyncio queues."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[asyncio.Queue]] = defaultdict(list)

    def subscriber_count(self, event_type: str) -> int:
        return len(self._subscribers.get(event_type, []))

    async def publish(self, event_type: str, data: Any) -> None:
        """Publish an event to all subscribers of the given type."""
        for queue in list(self._subscribers.get(event_type, [])):
            await queue.put(data)

    async def subscribe(self, event_type: str) -> AsyncIterator[Any]:
        """Yield events of a given type as they arrive."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[event_type].append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers[event_type].remove(queue)
