"""Deterministic periodic job scheduler.

The engine is a single decision-maker: every due job runs to completion
before the next one starts, so two cadences never act on the same capital
at the same time. Jobs are driven by an injectable Clock, which lets tests
advance time without sleeping.

A job that raises is logged and rescheduled; it never stops the scheduler
or the other jobs. Jobs flagged capital_moving are skipped (and retried on
their next cadence) while the audit circuit breaker is open.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from autopilot.logging import bound_job, get_logger

logger = get_logger(__name__)

JobFunc = Callable[[], Awaitable[object]]


class Clock(Protocol):
    def now(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock time and real asyncio sleeps."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass
class PeriodicJob:
    name: str
    interval: float
    func: JobFunc
    capital_moving: bool = False
    next_run: float = 0.0
    runs: int = 0
    failures: int = 0
    skipped: int = 0


class Scheduler:
    """Runs named periodic jobs sequentially on a shared clock.

    Args:
        clock: Time source; SystemClock in production.
        is_safe: Returns False while capital-moving jobs must be held back
            (the auditor's circuit breaker).
        tick_resolution: Seconds between due-job checks in run_forever().
    """

    def __init__(
        self,
        clock: Clock | None = None,
        is_safe: Callable[[], bool] | None = None,
        tick_resolution: float = 1.0,
    ) -> None:
        self._clock = clock or SystemClock()
        self._is_safe = is_safe or (lambda: True)
        self._tick = tick_resolution
        self._jobs: list[PeriodicJob] = []
        self._running = False

    @property
    def jobs(self) -> list[PeriodicJob]:
        return list(self._jobs)

    @property
    def is_running(self) -> bool:
        return self._running

    def add_job(
        self,
        name: str,
        interval: float,
        func: JobFunc,
        capital_moving: bool = False,
        run_immediately: bool = False,
    ) -> PeriodicJob:
        """Register a job. It first runs after one interval unless run_immediately."""
        if interval <= 0:
            raise ValueError(f"Job {name} needs a positive interval")
        now = self._clock.now()
        job = PeriodicJob(
            name=name,
            interval=interval,
            func=func,
            capital_moving=capital_moving,
            next_run=now if run_immediately else now + interval,
        )
        self._jobs.append(job)
        logger.debug("job_registered", job=name, interval=interval, capital_moving=capital_moving)
        return job

    async def run_pending(self) -> list[str]:
        """Run every due job once, in registration order. Returns the names run."""
        ran: list[str] = []
        for job in self._jobs:
            now = self._clock.now()
            if now < job.next_run:
                continue
            job.next_run = now + job.interval

            if job.capital_moving and not self._is_safe():
                job.skipped += 1
                logger.warning("job_skipped_breaker_open", job=job.name)
                continue

            with bound_job(job.name):
                try:
                    await job.func()
                    job.runs += 1
                except asyncio.CancelledError:
                    raise
                except Exception:
                    job.failures += 1
                    logger.error("job_failed", job=job.name, exc_info=True)
            ran.append(job.name)
        return ran

    async def run_forever(self) -> None:
        """Tick until stop() is called."""
        self._running = True
        logger.info("scheduler_started", jobs=[j.name for j in self._jobs])
        try:
            while self._running:
                await self.run_pending()
                if not self._running:
                    break
                await self._clock.sleep(self._tick)
        finally:
            self._running = False
            logger.info("scheduler_stopped")

    def stop(self) -> None:
        self._running = False
