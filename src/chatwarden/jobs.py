"""
Recurring feature jobs.

A job is a background task that calls an async ``tick`` at a fixed period
until cancelled. Tick failures are logged and never stop the loop.
``cancel`` is the only way to stop a job and is safe to call repeatedly.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from chatwarden.logger import get_logger

logger = get_logger(__name__)


class RecurringJob:
    def __init__(
        self,
        name: str,
        period_seconds: float,
        tick: Callable[[], Awaitable[None]],
    ):
        self.name = name
        self.period_seconds = period_seconds
        self._tick = tick
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.active:
            return
        self._task = asyncio.create_task(self._run_loop(), name=f"job:{self.name}")
        logger.info(f"Recurring job {self.name} started (every {self.period_seconds}s)")

    def cancel(self) -> bool:
        """Stop the job. Returns True only for the call that actually cancelled it."""
        if not self.active:
            return False
        task, self._task = self._task, None
        task.cancel()
        logger.info(f"Recurring job {self.name} cancelled after {self.ticks} ticks")
        return True

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self.period_seconds)
            self.ticks += 1
            try:
                await self._tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug(f"Recurring job {self.name} tick failed: {e}")
