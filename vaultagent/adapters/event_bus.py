"""Async event bus bridging controller events to stream consumers.

One bus per turn. The controller emits into it while the turn runs;
``consume()`` yields events in emission order and finishes once the bus
is closed and everything queued has been delivered. The queue is
unbounded: a consumer may start reading only after the turn has ended
and still see every event.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from vaultagent.adapters.events import OrchestratorEvent

logger = logging.getLogger(__name__)

_CLOSED = object()

# Backlog size past which emit() logs once that nobody is reading.
BACKLOG_WARNING = 5000


class EventBus:
    """Async queue bridging controller events to a single consumer."""

    def __init__(self, backlog_warning: int = BACKLOG_WARNING) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._backlog_warning = backlog_warning
        self._warned = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    async def emit(self, event: OrchestratorEvent) -> None:
        if self._closed:
            return
        self._queue.put_nowait(event)
        if not self._warned and self._queue.qsize() >= self._backlog_warning:
            self._warned = True
            logger.warning(
                "EventBus backlog reached %d events (latest: %s); no consumer is reading",
                self._queue.qsize(),
                event.event_type,
            )

    async def consume(self) -> AsyncIterator[OrchestratorEvent]:
        """Yield events as they arrive. Stops after close() once drained."""
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    def close(self) -> None:
        """Stop accepting events; the consumer finishes after draining."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
