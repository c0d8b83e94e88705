# flowsniper/watchdog.py
"""
Liveness watchdog: restarts a running engine that has gone silent.
"""

import asyncio
import time
from typing import Callable, Optional

from flowsniper.utils.logger import get_logger

logger = get_logger(__name__)


class LivenessWatchdog:
    """
    Periodically compares the scheduler's last activity with the clock.

    If the engine believes it is running but recorded nothing for
    ``inactivity_timeout`` seconds, the watchdog stops it, waits
    ``restart_delay`` seconds and starts a fresh session with the same mode
    and parameters. An engine stopped by a circuit breaker is inactive and
    is left alone.
    """

    def __init__(self, scheduler, check_interval: float = 60.0, inactivity_timeout: float = 300.0,
                 restart_delay: float = 2.0, clock: Callable[[], float] = time.time,
                 should_run: Optional[Callable[[], bool]] = None):
        self.scheduler = scheduler
        self.check_interval = check_interval
        self.inactivity_timeout = inactivity_timeout
        self.restart_delay = restart_delay
        self._clock = clock
        self._should_run = should_run or (lambda: scheduler.state.active)
        self._task: Optional[asyncio.Task] = None
        self.restarts = 0

    @classmethod
    def from_settings(cls, scheduler, settings) -> "LivenessWatchdog":
        return cls(
            scheduler,
            check_interval=settings.risk.watchdog_check_interval,
            inactivity_timeout=settings.risk.watchdog_inactivity_timeout,
            restart_delay=settings.risk.watchdog_restart_delay,
        )

    def inactive_for(self) -> float:
        return self._clock() - self.scheduler.state.last_activity

    async def check(self) -> bool:
        """Run one check; True when a restart was performed."""
        if not self._should_run():
            return False

        idle = self.inactive_for()
        if idle <= self.inactivity_timeout:
            return False

        logger.warning(f"🐕 No engine activity for {idle:.0f}s; restarting engine")
        await self.scheduler.restart(delay=self.restart_delay)
        self.restarts += 1
        return True

    async def _run(self):
        while True:
            await asyncio.sleep(self.check_interval)
            try:
                await self.check()
            except Exception as e:
                logger.error(f"Watchdog check failed: {e}")

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
            logger.info(f"🐕 Watchdog armed: check every {self.check_interval:.0f}s, "
                        f"restart after {self.inactivity_timeout:.0f}s idle")

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            await asyncio.wait({self._task})
            self._task = None
