"""
Health check and distribution watchdog.
"""

import logging
import os
from typing import Callable, Iterable, List, Optional

import structlog

from .job_scheduler import JobScheduler

logger = structlog.get_logger(__name__)


def terminate_process(exit_code: int) -> None:
    """Flush log handlers and exit immediately; the supervisor relaunches us."""
    logging.shutdown()
    os._exit(exit_code)


class HealthMonitor:
    """Recreates timers of jobs that have gone quiet for too long."""

    def __init__(
        self,
        scheduler: JobScheduler,
        jobs: Optional[Iterable[str]] = None,
        stale_multiplier: float = 2
    ):
        self.scheduler = scheduler
        self.jobs = list(jobs) if jobs is not None else None
        self.stale_multiplier = stale_multiplier
        self.logger = logger.bind(service="health_monitor")

    def is_stale(self, name: str) -> bool:
        record = self.scheduler.records[name]
        if record.is_running:
            return False
        if not self.scheduler.timer_active(name):
            return True

        reference = record.last_completed_at or self.scheduler.started_at
        if reference is None:
            return False
        return self.scheduler.clock() - reference > self.stale_multiplier * record.interval_seconds

    async def check(self) -> List[str]:
        """Restart every stale job; returns the names restarted."""
        names = self.jobs if self.jobs is not None else self.scheduler.monitored_jobs
        restarted = []
        for name in names:
            if self.is_stale(name):
                record = self.scheduler.records[name]
                self.logger.warning(
                    f"{name} appears stuck, restarting",
                    job=name,
                    last_completed_at=record.last_completed_at,
                    interval=record.interval_seconds
                )
                self.scheduler.restart_job(name)
                restarted.append(name)
        return restarted


class DistributionWatchdog:
    """Terminates the process when distribution has stopped succeeding."""

    def __init__(
        self,
        scheduler: JobScheduler,
        job_name: str = "distribute",
        multiplier: float = 3,
        terminate: Callable[[int], None] = terminate_process
    ):
        self.scheduler = scheduler
        self.job_name = job_name
        self.multiplier = multiplier
        self.terminate = terminate
        self.logger = logger.bind(service="distribution_watchdog")

    async def check(self) -> bool:
        """False (after calling terminate) if the last success is too old."""
        record = self.scheduler.records[self.job_name]
        candidates = [t for t in (self.scheduler.started_at, record.last_succeeded_at) if t is not None]
        if not candidates:
            return True

        elapsed = self.scheduler.clock() - max(candidates)
        limit = self.multiplier * record.interval_seconds
        if elapsed > limit:
            self.logger.critical(
                "Distribution has not succeeded in time, terminating for restart",
                job=self.job_name,
                seconds_since_success=round(elapsed, 1),
                limit_seconds=limit
            )
            self.terminate(1)
            return False
        return True
