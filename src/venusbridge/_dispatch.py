"""Ordered, concurrent dispatch of update work.

Each update is filed under a *lane*, normally the base path of the
device it belongs to.  Work in one lane runs strictly in arrival
order; different lanes run side by side, so a device whose bus
registration is stuck does not hold up updates for any other device.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

type Work = Callable[[], Awaitable[None]]


class LaneDispatcher:
    """Runs work concurrently across lanes and sequentially within one."""

    def __init__(self) -> None:
        self._tails: dict[str, asyncio.Task[None]] = {}
        self._pending: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._pending)

    def submit(self, lane: str, work: Work) -> asyncio.Task[None]:
        """Schedule *work* after everything already queued in *lane*."""
        previous = self._tails.get(lane)
        task = asyncio.create_task(self._run_after(previous, work), name=f"lane:{lane}")
        self._tails[lane] = task
        self._pending.add(task)
        task.add_done_callback(lambda done: self._finished(lane, done))
        return task

    def _finished(self, lane: str, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if self._tails.get(lane) is task:
            del self._tails[lane]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Update work in lane %s failed: %s", lane, task.exception())

    @staticmethod
    async def _run_after(previous: asyncio.Task[None] | None, work: Work) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        await work()

    async def wait(self, lane: str) -> None:
        """Wait until the work queued in *lane* so far has finished."""
        tail = self._tails.get(lane)
        if tail is not None:
            await asyncio.wait([tail])

    async def drain(self) -> None:
        """Wait until every lane is empty, including work queued meanwhile."""
        while self._pending:
            await asyncio.wait(list(self._pending))

    async def cancel(self) -> None:
        """Cancel all queued and running work."""
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tails.clear()
        self._pending.clear()
