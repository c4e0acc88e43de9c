"""
Outbound event channel for a single bridge instance.

Bridges never call back into the coordinator. They emit onto a channel,
and whoever owns the bridge consumes the channel in order.

- FIFO, bounded
- Overflow drops the NEW event and counts it
- close() ends iteration after already-queued events are consumed
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

from adapters.events import BridgeEvent

BRIDGE_EVENT_Q_MAX_EVENTS = 1_000


class BridgeEventChannel:
    """
    asyncio-backed FIFO of BridgeEvents with an explicit end-of-stream.
    """

    def __init__(self, *, max_events: int = BRIDGE_EVENT_Q_MAX_EVENTS) -> None:
        if max_events <= 0:
            raise ValueError("max_events must be > 0")

        self._max_events = max_events
        # Unbounded underneath; None is the end-of-stream sentinel
        self._queue: asyncio.Queue[BridgeEvent | None] = asyncio.Queue()
        self._closed = False
        self.dropped: int = 0

    def emit(self, event: BridgeEvent) -> bool:
        """
        Enqueue an event without blocking.

        Returns:
            True if enqueued
            False if dropped (closed or full)
        """
        if self._closed:
            return False
        if self._queue.qsize() >= self._max_events:
            self.dropped += 1
            return False
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        """Mark end-of-stream. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    @property
    def closed(self) -> bool:
        """True once close() has been called."""
        return self._closed

    async def get(self) -> BridgeEvent | None:
        """
        Wait for the next event.

        Returns None once the channel is closed and drained.
        """
        item = await self._queue.get()
        if item is None:
            # Keep the sentinel so later readers also see end-of-stream
            self._queue.put_nowait(None)
        return item

    def drain_nowait(self) -> list[BridgeEvent]:
        """
        Remove and return every event queued right now, in order.
        """
        out: list[BridgeEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is None:
                self._queue.put_nowait(None)
                break
            out.append(item)
        return out

    def __len__(self) -> int:
        n = self._queue.qsize()
        return n - 1 if self._closed and n > 0 else n

    async def __aiter__(self) -> AsyncIterator[BridgeEvent]:
        while True:
            item = await self.get()
            if item is None:
                return
            yield item
