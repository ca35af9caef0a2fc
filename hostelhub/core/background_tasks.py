"""In-process hold sweeper.

Per-hold timers do the prompt work; the sweeper is the net for holds whose
timer was lost (restart, disabled timers, another process placing them).
"""

import asyncio
import logging

from hostelhub.config import settings
from hostelhub.services.hold_service import HoldService, hold_service

logger = logging.getLogger(__name__)


class HoldSweeper:
    """Recovers holds at startup, then expires overdue ones on an interval."""

    def __init__(self, holds: HoldService = hold_service, interval_seconds: float | None = None):
        self.holds = holds
        self.interval_seconds = interval_seconds or settings.hold_sweep_interval_seconds
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        try:
            await self.holds.recover()
        except Exception:
            # The first sweep pass covers whatever recovery missed
            logger.exception("Startup hold recovery failed")

        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="hold-sweeper")
        logger.info(f"Hold sweeper started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Hold sweeper stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.holds.sweep_expired()
            except Exception:
                logger.exception("Hold sweep failed")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
