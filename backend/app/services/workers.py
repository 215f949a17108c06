"""
Base class for the queue consumers started in the application lifespan.
"""

import asyncio
import logging
from collections.abc import Hashable

from app.services.unique_queue import UniqueQueue

logger = logging.getLogger(__name__)


class QueueWorker:
    """Drains one UniqueQueue, handling ids one at a time.

    The id is removed from the pending set before it is handled so the same
    id can be queued again while the work runs. A failing item is logged and
    the loop moves on.
    """

    name = "worker"

    def __init__(self, ctx, queue: UniqueQueue):
        self.ctx = ctx
        self.queue = queue
        self._running = False
        self._busy = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the background consumer."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"{self.name} started")

    async def stop(self):
        """Stop after the item in progress, if any."""
        self._running = False
        if self._task:
            if not self._busy:
                self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(f"{self.name} stopped")

    async def on_start(self) -> None:
        """Runs once before the loop starts listening."""

    async def handle(self, item_id: Hashable) -> None:
        raise NotImplementedError

    async def _process(self, item_id: Hashable) -> None:
        self.queue.remove(item_id)
        self._busy = True
        try:
            await self.handle(item_id)
        except Exception as e:
            logger.error(f"{self.name}: processing {item_id} failed: {e}")
        finally:
            self._busy = False

    async def _run_loop(self):
        try:
            await self.on_start()
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error(f"{self.name} startup sweep failed: {e}")

        while self._running:
            try:
                item_id = await self.queue.get()
            except asyncio.CancelledError:
                break
            await self._process(item_id)

    async def process_pending(self) -> int:
        """Handle everything queued right now, without the background loop."""
        handled = 0
        while True:
            try:
                item_id = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                return handled
            await self._process(item_id)
            handled += 1
