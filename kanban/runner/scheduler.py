"""
Interval scheduler for periodic background jobs (e.g. re-sync).

Each enabled job gets its own asyncio timer task. A job still running when
its next interval fires is skipped for that interval, and a failing job is
logged without affecting the others.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass
class ScheduledJob:
    name: str
    enabled: bool
    interval_seconds: float
    execute: Callable[[], Awaitable[None]]


class IntervalScheduler:
    """Runs jobs at fixed intervals until stopped."""

    def __init__(self, jobs: list[ScheduledJob], clock: Callable[[], float] = time.monotonic):
        self.jobs = list(jobs)
        self.clock = clock
        self._running = False
        self._timers: list[asyncio.Task] = []
        self._executing: dict[str, bool] = {}
        self._in_flight: set[asyncio.Task] = set()

    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """
        Schedule every enabled job. Must be called from a running event loop.

        Raises:
            RuntimeError: Already running.
        """
        if self._running:
            raise RuntimeError("Scheduler already running")
        self._running = True
        logger.info(f"[CRON] Scheduler started with {len(self.jobs)} job(s)")

        for job in self.jobs:
            if not job.enabled:
                logger.info(f"[CRON] Job {job.name} disabled, skipping")
                continue
            self._executing[job.name] = False
            self._timers.append(asyncio.create_task(self._timer(job), name=f"cron-{job.name}"))
            logger.info(f"[CRON] Job {job.name} scheduled every {job.interval_seconds}s")

    def stop(self) -> None:
        """Cancel all timers. In-flight executions are left to finish."""
        if not self._running:
            return
        self._running = False
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        logger.info("[CRON] Scheduler stopped")

    async def _timer(self, job: ScheduledJob) -> None:
        while self._running:
            await asyncio.sleep(job.interval_seconds)
            if not self._running:
                return
            self._tick(job)

    def _tick(self, job: ScheduledJob) -> None:
        if self._executing.get(job.name):
            logger.warning(f"[CRON] Job {job.name} still executing, skipping interval")
            return
        self._executing[job.name] = True
        task = asyncio.create_task(self._run(job))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _run(self, job: ScheduledJob) -> None:
        started = self.clock()
        try:
            await job.execute()
            logger.info(f"[CRON] Job {job.name} completed in {self.clock() - started:.2f}s")
        except Exception as e:
            logger.error(f"[CRON] Job {job.name} failed: {e}")
        finally:
            self._executing[job.name] = False
