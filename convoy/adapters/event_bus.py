"""Async event bus bridging supervisor callbacks to front-end consumers.

The supervisor fires notification dicts via callback. The EventBus
parses them into typed events and queues them for a consumer loop.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from convoy.adapters.events import SupervisorEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging supervisor callbacks to event consumers."""

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[SupervisorEvent] = asyncio.Queue(
            maxsize=maxsize
        )
        self._put_timeout = put_timeout
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def _callback(self, data: dict[str, Any]) -> None:
        """Callback to pass to SupervisorConfig.event_callback."""
        if self._closed:
            return
        await self._put(dict_to_event(data))

    def make_callback(self):
        """Return the async callback for SupervisorConfig.event_callback."""
        return self._callback

    async def emit(self, event: SupervisorEvent) -> None:
        """Manually emit an event (for front-end generated events)."""
        if self._closed:
            return
        await self._put(event)

    async def _put(self, event: SupervisorEvent) -> None:
        try:
            # Backpressure instead of dropping
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s (queue size: %d)",
                self._put_timeout,
                event.event_type,
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[SupervisorEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    def reset(self) -> None:
        """Drain leftover events and re-open the bus."""
        while not self._queue.empty():
            self._queue.get_nowait()
        self._closed = False
