"""
Job scheduler for the pipeline's periodic jobs.

Each job runs on its own interval timer. A tick that arrives while the
previous run of the same job is still in progress is skipped, so a job never
overlaps itself. Different jobs interleave freely.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog

from revenue_distributor.core.exceptions import SchedulerError

logger = structlog.get_logger(__name__)

Operation = Callable[[], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[None]]


async def run_with_retry(
    operation: Operation,
    name: str,
    max_retries: int = 3,
    delay: float = 5.0,
    sleep: Sleep = asyncio.sleep
) -> Any:
    """Run operation up to max_retries times, waiting delay seconds between attempts."""
    for attempt in range(1, max_retries + 1):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if attempt >= max_retries:
                logger.error(
                    f"{name} failed after {max_retries} attempts",
                    job=name,
                    error=str(e)
                )
                raise
            logger.warning(
                f"{name} attempt failed, retrying",
                job=name,
                attempt=attempt,
                max_retries=max_retries,
                delay=delay,
                error=str(e)
            )
            await sleep(delay)


@dataclass
class JobRunRecord:
    """Run state of one job. Timestamps come from the scheduler's clock."""
    name: str
    interval_seconds: float
    last_started_at: Optional[float] = None
    last_completed_at: Optional[float] = None
    last_succeeded_at: Optional[float] = None
    is_running: bool = False
    run_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interval_seconds": self.interval_seconds,
            "is_running": self.is_running,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "last_started_at": self.last_started_at,
            "last_completed_at": self.last_completed_at,
            "last_succeeded_at": self.last_succeeded_at,
        }


class JobTimer:
    """Repeating timer handle; each tick fires the callback as its own task."""

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[Any]],
        run_immediately: bool = False
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self.callback = callback
        self.run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None
        self._runs: Set[asyncio.Task] = set()

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "JobTimer":
        if self.active:
            raise SchedulerError(f"Timer {self.name} already started")
        self._task = asyncio.create_task(self._loop(), name=f"timer:{self.name}")
        return self

    def cancel(self) -> None:
        """Stop ticking; runs already fired are left to finish."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def _fire(self) -> None:
        run = asyncio.create_task(self.callback(), name=f"run:{self.name}")
        self._runs.add(run)
        run.add_done_callback(self._runs.discard)

    async def _loop(self) -> None:
        if self.run_immediately:
            self._fire()
        while True:
            await asyncio.sleep(self.interval_seconds)
            self._fire()


@dataclass
class _Job:
    operation: Operation
    retry: bool
    monitored: bool


class JobScheduler:
    """
    Owns the job table, the run records and the timers.

    Jobs registered with retry=True run through run_with_retry; giving up on
    one tick does not stop the next tick.
    """

    def __init__(
        self,
        max_retries: int = 3,
        retry_delay: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep
    ):
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.clock = clock
        self._sleep = sleep
        self.records: Dict[str, JobRunRecord] = {}
        self.timers: Dict[str, JobTimer] = {}
        self._jobs: Dict[str, _Job] = {}
        self.started_at: Optional[float] = None
        self.running = False
        self.logger = logger.bind(service="job_scheduler")

    def register(
        self,
        name: str,
        operation: Operation,
        interval_seconds: float,
        retry: bool = True,
        monitored: bool = True
    ) -> JobRunRecord:
        if interval_seconds <= 0:
            raise SchedulerError(f"Interval for {name} must be positive", {"interval": interval_seconds})
        if name in self._jobs:
            raise SchedulerError(f"Job {name} already registered")

        self._jobs[name] = _Job(operation=operation, retry=retry, monitored=monitored)
        self.records[name] = JobRunRecord(name=name, interval_seconds=interval_seconds)
        self.logger.info(f"Registered job: {name} (interval: {interval_seconds}s)")
        return self.records[name]

    @property
    def monitored_jobs(self):
        return [name for name, job in self._jobs.items() if job.monitored]

    async def run_job(self, name: str) -> bool:
        """Run a job once unless it is already running; True if it succeeded."""
        job = self._jobs.get(name)
        if job is None:
            raise SchedulerError(f"Unknown job {name}")

        record = self.records[name]
        if record.is_running:
            self.logger.info(f"{name} already running, skipping this tick", job=name)
            return False

        record.is_running = True
        record.last_started_at = self.clock()
        start = record.last_started_at
        try:
            if job.retry:
                await run_with_retry(
                    job.operation, name, self.max_retries, self.retry_delay, sleep=self._sleep
                )
            else:
                await job.operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            record.error_count += 1
            record.last_error = str(e) or type(e).__name__
            self.logger.error(f"Job failed: {name}", job=name, error=record.last_error, error_count=record.error_count)
            return False
        else:
            record.run_count += 1
            record.last_succeeded_at = self.clock()
            self.logger.debug(f"Job completed: {name}", job=name, duration=record.last_succeeded_at - start)
            return True
        finally:
            record.is_running = False
            record.last_completed_at = self.clock()

    def _create_timer(self, name: str, run_immediately: bool = False) -> JobTimer:
        previous = self.timers.pop(name, None)
        if previous is not None:
            previous.cancel()
        timer = JobTimer(
            name,
            self.records[name].interval_seconds,
            lambda: self.run_job(name),
            run_immediately=run_immediately
        )
        self.timers[name] = timer.start()
        return timer

    def start(self) -> None:
        """Start a timer for every registered job."""
        self.logger.info("Starting job scheduler", jobs=list(self._jobs))
        self.running = True
        self.started_at = self.clock()
        for name in self._jobs:
            self._create_timer(name)

    def stop(self) -> None:
        """Cancel all timers. In-flight runs are not awaited."""
        self.logger.info("Stopping job scheduler")
        self.running = False
        for timer in self.timers.values():
            timer.cancel()
        self.timers.clear()

    def restart_job(self, name: str, run_immediately: bool = False) -> JobTimer:
        """Cancel the job's timer (if any) and start a fresh one."""
        if name not in self._jobs:
            raise SchedulerError(f"Unknown job {name}")
        self.logger.warning(f"Restarting {name} timer", job=name)
        return self._create_timer(name, run_immediately=run_immediately)

    def update_interval(self, name: str, interval_seconds: float) -> None:
        """Change a job's cadence; a running scheduler re-arms the timer."""
        if interval_seconds <= 0:
            raise SchedulerError(f"Interval for {name} must be positive", {"interval": interval_seconds})
        self.records[name].interval_seconds = interval_seconds
        if self.running:
            self._create_timer(name)

    def timer_active(self, name: str) -> bool:
        timer = self.timers.get(name)
        return timer is not None and timer.active

    def health_status(self) -> Dict[str, Any]:
        jobs_with_errors = sum(1 for r in self.records.values() if r.error_count > 0)
        return {
            "running": self.running,
            "total_jobs": len(self.records),
            "jobs_with_errors": jobs_with_errors,
            "jobs": {name: record.to_dict() for name, record in self.records.items()},
        }
