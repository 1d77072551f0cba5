"""Background task that periodically sweeps old dangling jobs."""

import asyncio
import logging
from typing import Optional

from mediaproc.services.processing import TranscodeService

logger = logging.getLogger(__name__)


class SweepMonitor:
    """Runs TranscodeService.sweep() on an interval until stopped."""

    def __init__(
        self,
        service: TranscodeService,
        interval_minutes: float,
        max_age_hours: Optional[float] = None,
    ):
        self.service = service
        self.check_interval = interval_minutes * 60  # Convert to seconds
        self.max_age_hours = max_age_hours
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info(f"Sweep monitor started (interval: {self.check_interval / 60:.0f} min)")

    async def stop(self) -> None:
        """Stop the background sweep task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Sweep monitor stopped")

    async def run_once(self) -> int:
        max_age_seconds = self.max_age_hours * 3600 if self.max_age_hours is not None else None
        # Run sweep in thread pool to avoid blocking
        return await asyncio.get_running_loop().run_in_executor(
            None, self.service.sweep, max_age_seconds
        )

    async def _monitor_loop(self) -> None:
        """Main monitoring loop."""
        while self._running:
            try:
                removed = await self.run_once()
                if removed > 0:
                    logger.info(f"Sweep removed {removed} dangling job(s)")
                else:
                    logger.debug("Sweep: nothing to remove")
            except Exception:
                logger.exception("Error in temp file sweep")

            try:
                await asyncio.sleep(self.check_interval)
            except asyncio.CancelledError:
                break
