"""
Deduplicating FIFO work queues.

Every asynchronous subsystem (webhook delivery, mirror sync, pull request
checks) is fed through a UniqueQueue: adding an id that is already pending is
a no-op, and the consumer calls remove() once it starts processing so the id
can be queued again while the work runs.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Hashable

logger = logging.getLogger(__name__)


class UniqueQueue:
    def __init__(self, name: str, maxsize: int = 0):
        self.name = name
        self._pending: set[Hashable] = set()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def __len__(self) -> int:
        return self._queue.qsize()

    def exist(self, item_id: Hashable) -> bool:
        return item_id in self._pending

    async def add(self, item_id: Hashable) -> bool:
        """Queue an id unless it is already pending. Blocks while the queue is full."""
        if item_id in self._pending:
            return False
        # No await between the membership test and the insert
        self._pending.add(item_id)
        try:
            await self._queue.put(item_id)
        except BaseException:
            # A cancelled put never enqueued the id
            self._pending.discard(item_id)
            raise
        return True

    def add_nowait(self, item_id: Hashable) -> bool:
        if item_id in self._pending:
            return False
        self._pending.add(item_id)
        try:
            self._queue.put_nowait(item_id)
        except asyncio.QueueFull:
            self._pending.discard(item_id)
            logger.warning(f"Queue {self.name} is full, dropped {item_id}")
            return False
        return True

    def remove(self, item_id: Hashable) -> None:
        self._pending.discard(item_id)

    async def get(self) -> Hashable:
        return await self._queue.get()

    def get_nowait(self) -> Hashable:
        return self._queue.get_nowait()

    async def drain(self) -> AsyncIterator[Hashable]:
        """Yield ids in FIFO order forever, waiting when empty."""
        while True:
            yield await self._queue.get()

    def pending(self) -> list[Hashable]:
        return list(self._queue._queue)  # type: ignore[attr-defined]


class StatusTable:
    """Names of periodic jobs currently running, so a slow run is never overlapped."""

    def __init__(self):
        self._running: set[str] = set()

    def start(self, name: str) -> None:
        self._running.add(name)

    def stop(self, name: str) -> None:
        self._running.discard(name)

    def is_running(self, name: str) -> bool:
        return name in self._running
