from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, tzinfo
from typing import Optional

from slotbook.services.clock import SystemClock
from slotbook.services.ports import Clock
from slotbook.services.waiting_list import WaitingListService

logger = logging.getLogger(__name__)


def next_run_at(now: datetime, hour: int, tz: tzinfo) -> datetime:
    """Next local ``hour:00`` strictly after ``now``."""

    local = now.astimezone(tz)
    candidate = local.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= local:
        candidate = (local + timedelta(days=1)).replace(
            hour=hour, minute=0, second=0, microsecond=0
        )
    return candidate


class DailySweepJob:
    """Background task that resets the waiting list once per local day."""

    def __init__(
        self,
        waiting_list: WaitingListService,
        *,
        tz: tzinfo,
        hour: int = 6,
        clock: Clock | None = None,
    ) -> None:
        self._waiting_list = waiting_list
        self._tz = tz
        self._hour = hour
        self._clock = clock or SystemClock()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="waiting-list-sweep")
        logger.info("[Scheduler] Waiting list reset scheduled for %02d:00 daily", self._hour)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("[Scheduler] Waiting list reset stopped")

    async def run_once(self) -> int:
        logger.info("[Scheduler] Resetting waiting list...")
        return await self._waiting_list.sweep_daily()

    async def _loop(self) -> None:
        while True:
            now = self._clock.now()
            due = next_run_at(now, self._hour, self._tz)
            await asyncio.sleep(max((due - now).total_seconds(), 0.0))
            try:
                swept = await self.run_once()
            except Exception:
                logger.exception("[Scheduler] Waiting list reset failed")
                continue
            logger.info("[Scheduler] Waiting list reset - swept %s entries", swept)
