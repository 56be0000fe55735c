"""Bounded event stream between the turn loop and its consumer.

The loop is the only producer. A full queue blocks the producer until the
consumer catches up, so a slow client applies backpressure to the loop
instead of growing memory. Cancelling the stream from the consumer side
drains pending events and unblocks the producer.

Example:
    >>> stream = EventStream(max_size=100)
    >>> asyncio.create_task(loop.run(request, stream))
    >>> async for event in stream:
    ...     print(event.to_dict())
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

from keel.agent.events import StreamEvent


# =============================================================================
# Module Logger
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_QUEUE_SIZE = 100

_END = object()


class EventStream:
    """Single-producer, single-consumer event stream with backpressure."""

    def __init__(self, max_size: int = DEFAULT_QUEUE_SIZE) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=max_size)
        self._closed = False
        self._cancelled = False
        self._emitted = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def emitted(self) -> int:
        return self._emitted

    async def emit(self, event: StreamEvent) -> bool:
        """Queue one event, waiting while the queue is full.

        Returns:
            False if the stream was closed or cancelled and the event dropped.
        """
        if self._closed or self._cancelled:
            logger.debug(f"[Stream] Dropped {event.event_type.value} event on closed stream")
            return False
        await self._queue.put(event)
        self._emitted += 1
        return True

    async def close(self) -> None:
        """Mark the end of the stream. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if not self._cancelled:
            await self._queue.put(_END)
            return
        try:
            self._queue.put_nowait(_END)
        except asyncio.QueueFull:
            pass

    def cancel(self) -> None:
        """Stop consuming; pending events are discarded."""
        self._cancelled = True
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break

    async def next_event(self) -> Optional[StreamEvent]:
        """Next event, or None once the stream has ended."""
        if self._cancelled:
            return None
        item = await self._queue.get()
        if item is _END:
            return None
        return item  # type: ignore[return-value]

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self.next_event()
            if event is None:
                return
            yield event


__all__ = ["EventStream", "DEFAULT_QUEUE_SIZE"]
