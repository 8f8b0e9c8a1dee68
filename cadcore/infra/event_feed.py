# cadcore/infra/event_feed.py
"""
In-process polling feed.

Dispatcher consoles and unit terminals poll with the last ``seq`` they
saw.  The feed keeps a bounded window; a viewer that falls further
behind than the window reloads authoritative state from the registries.
"""
from __future__ import annotations

import asyncio
from collections import deque
from typing import Optional

from cadcore.config import settings
from cadcore.core.domain import DispatchEvent
from cadcore.infra.logging_config import get_logger

logger = get_logger(__name__)


class InMemoryEventFeed:
    name = "memory_feed"

    def __init__(self, max_events: Optional[int] = None) -> None:
        self._events: deque[DispatchEvent] = deque(maxlen=max_events or settings.event_feed_max_events)
        self._seq = 0
        self._lock = asyncio.Lock()

    async def publish(self, event: DispatchEvent) -> None:
        async with self._lock:
            self._seq += 1
            event.seq = self._seq
            self._events.append(event)

    async def poll(self, viewer: str, after: int = 0, limit: int = 200) -> list[DispatchEvent]:
        """Events after ``after`` that ``viewer`` is in the audience of, oldest first."""
        visible: list[DispatchEvent] = []
        for event in self._events:
            if event.seq <= after or not event.audience.includes(viewer):
                continue
            visible.append(event)
            if len(visible) >= limit:
                break
        return visible

    async def latest_seq(self) -> int:
        return self._seq

    async def oldest_seq(self) -> int:
        """Smallest seq still held; the next seq to be issued when the window is empty."""
        return self._events[0].seq if self._events else self._seq + 1
