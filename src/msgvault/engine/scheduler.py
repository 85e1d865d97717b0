"""Periodic and on-demand scheduling of sync cycles."""

import asyncio
import logging
from typing import Any

from msgvault.engine.pipeline import SyncPipeline
from msgvault.errors import StateStoreCorruption
from msgvault.models import CycleReport

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs the pipeline every ``interval`` seconds or when triggered.

    A corrupted state store stops the scheduler; every other failure is
    reported by the cycle and retried at the next tick.

    Example:
        scheduler = SyncScheduler(pipeline, interval=86400)
        task = asyncio.create_task(scheduler.run())
        scheduler.trigger()  # back up now
        await scheduler.stop()
    """

    def __init__(self, pipeline: SyncPipeline, interval: float) -> None:
        """Initialize the scheduler.

        Args:
            pipeline: Pipeline whose cycles are scheduled
            interval: Seconds between scheduled cycles
        """
        self.pipeline = pipeline
        self.interval = interval
        self._wake = asyncio.Event()
        self._running = False
        self._task: asyncio.Task | None = None
        self.cycles_run = 0
        self.last_report: CycleReport | None = None

    @property
    def running(self) -> bool:
        return self._running

    def trigger(self) -> None:
        """Request an immediate cycle."""
        self._wake.set()

    async def run(self) -> None:
        """Run cycles until stopped. The first cycle starts immediately."""
        self._running = True
        self._task = asyncio.current_task()
        logger.info("Sync scheduler started, interval=%ss", self.interval)

        try:
            while self._running:
                self._wake.clear()
                try:
                    self.last_report = await self.pipeline.run_cycle()
                    self.cycles_run += 1
                except StateStoreCorruption as e:
                    logger.error("Scheduler stopping, state store corrupted: %s", e)
                    raise

                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("Sync scheduler cancelled")
        finally:
            self._running = False

        logger.info("Sync scheduler stopped, cycles_run=%d", self.cycles_run)

    async def stop(self) -> None:
        """Stop the scheduler, cancelling any cycle in progress.

        A cancelled cycle leaves unacknowledged records pending; they are
        resent on the next run.
        """
        self._running = False
        self._wake.set()
        if self._task and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def get_status(self) -> dict[str, Any]:
        """Scheduler state and the latest cycle summary."""
        return {
            "running": self._running,
            "interval": self.interval,
            "cycles_run": self.cycles_run,
            "halted": self.pipeline.halted,
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }
