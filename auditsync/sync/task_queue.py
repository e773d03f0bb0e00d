"""Serialized execution of sync cycles for one session."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class SerialTaskQueue:
    """Runs enqueued cycles one at a time, in FIFO order.

    Enqueuing a kind of cycle that is already waiting (not yet started)
    returns the waiting task instead of queuing a duplicate. Failures are
    logged with the queue label and never re-raised.

    Once closed, cycles that have not started yet are skipped.
    """

    def __init__(self, label: str) -> None:
        self.label = label
        self._lock = asyncio.Lock()
        self._waiting: dict[str, asyncio.Task[None]] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._running = False
        self._closed = False

    @property
    def is_busy(self) -> bool:
        return self._running or any(not task.done() for task in self._tasks)

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def is_running(self) -> bool:
        return self._running

    def enqueue(self, kind: str, cycle: Callable[[], Awaitable[None]]) -> asyncio.Task[None]:
        waiting = self._waiting.get(kind)
        if waiting is not None and not waiting.done():
            logger.debug("Collapsed duplicate %s cycle for %s", kind, self.label)
            return waiting

        task = asyncio.create_task(self._run(kind, cycle))
        self._waiting[kind] = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, kind: str, cycle: Callable[[], Awaitable[None]]) -> None:
        async with self._lock:
            if self._waiting.get(kind) is asyncio.current_task():
                del self._waiting[kind]
            if self._closed:
                logger.debug("Skipped %s cycle for %s: queue closed", kind, self.label)
                return
            self._running = True
            try:
                await cycle()
            except Exception as exc:
                logger.error("Sync error in %s (%s cycle): %s", self.label, kind, exc)
            finally:
                self._running = False

    def close(self) -> None:
        """Skip every cycle that has not started; a running cycle finishes."""
        self._closed = True

    async def drain(self) -> None:
        """Wait until every queued and running cycle has finished."""
        while pending := [task for task in self._tasks if not task.done()]:
            await asyncio.gather(*pending)
