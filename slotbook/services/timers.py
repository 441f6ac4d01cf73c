"""Keyed, cancellable deadline tasks owned by a single engine instance."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Set

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class DeadlineTimers:
    """Map of key -> pending asyncio task that runs a callback after a delay.

    A handle is removed from the pending map before its callback runs, so a
    callback that cancels its own key is a no-op. The task stays tracked as
    in flight until the callback returns. ``cancel`` and ``cancel_all`` are
    safe for keys that already fired or never existed. Once ``shutdown`` has
    started, ``schedule`` refuses new timers.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, asyncio.Task] = {}
        self._in_flight: Set[asyncio.Task] = set()
        self._closed = False

    def __contains__(self, key: str) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def schedule(self, key: str, delay_seconds: float, callback: TimerCallback) -> bool:
        if self._closed:
            logger.debug("Timers closed, not scheduling %s", key)
            return False
        if key in self._tasks:
            raise RuntimeError(f"Timer already pending for {key}")
        delay = max(0.0, delay_seconds)
        task = asyncio.get_running_loop().create_task(
            self._run(key, delay, callback), name=f"deadline:{key}"
        )
        self._tasks[key] = task
        return True

    async def _run(self, key: str, delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay)
        task = asyncio.current_task()
        if self._tasks.get(key) is task:
            del self._tasks[key]
        self._in_flight.add(task)
        try:
            await callback()
        except Exception:
            logger.exception("Deadline callback for %s failed", key)
        finally:
            self._in_flight.discard(task)

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        if task is asyncio.current_task():
            return False
        task.cancel()
        return True

    def cancel_all(self) -> int:
        cancelled = 0
        for key in list(self._tasks):
            if self.cancel(key):
                cancelled += 1
        return cancelled

    async def shutdown(self) -> int:
        """Cancel pending and running timers and wait until none can still run."""

        self._closed = True
        current = asyncio.current_task()
        running = [task for task in self._in_flight if task is not current and not task.done()]
        tasks = [task for task in self._tasks.values() if task is not current] + running
        cancelled = self.cancel_all()
        for task in running:
            task.cancel()
            cancelled += 1
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return cancelled
