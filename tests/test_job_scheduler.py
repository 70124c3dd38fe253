"""
Test the job scheduler: non-overlap guard, retry wrapper and timers.
"""

import asyncio

import pytest

from revenue_distributor.core.exceptions import SchedulerError
from revenue_distributor.scheduler.job_scheduler import JobScheduler, JobTimer, run_with_retry
from tests.fakes import FakeClock


@pytest.mark.asyncio
async def test_run_with_retry_returns_first_success(sleep_recorder):
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise RuntimeError("boom")
        return "ok"

    assert await run_with_retry(flaky, "flaky", max_retries=3, delay=5, sleep=sleep_recorder) == "ok"
    assert len(calls) == 3
    assert sleep_recorder.delays == [5, 5]


@pytest.mark.asyncio
async def test_run_with_retry_reraises_after_last_attempt(sleep_recorder):
    calls = []

    async def broken():
        calls.append(1)
        raise RuntimeError(f"failure {len(calls)}")

    with pytest.raises(RuntimeError, match="failure 3"):
        await run_with_retry(broken, "broken", max_retries=3, delay=5, sleep=sleep_recorder)
    assert len(calls) == 3
    assert sleep_recorder.delays == [5, 5]


@pytest.mark.asyncio
async def test_job_never_overlaps_itself():
    scheduler = JobScheduler(max_retries=1)
    release = asyncio.Event()
    started = []

    async def slow_job():
        started.append(1)
        await release.wait()

    scheduler.register("distribute", slow_job, 300)

    first = asyncio.create_task(scheduler.run_job("distribute"))
    await asyncio.sleep(0)
    assert scheduler.records["distribute"].is_running

    assert await scheduler.run_job("distribute") is False
    assert len(started) == 1

    release.set()
    assert await first is True
    record = scheduler.records["distribute"]
    assert not record.is_running
    assert record.run_count == 1


@pytest.mark.asyncio
async def test_failed_job_returns_to_idle_and_runs_next_tick(sleep_recorder):
    clock = FakeClock()
    scheduler = JobScheduler(max_retries=3, retry_delay=5, clock=clock, sleep=sleep_recorder)
    outcomes = [RuntimeError("a"), RuntimeError("b"), RuntimeError("c")]

    async def job():
        if outcomes:
            raise outcomes.pop(0)

    scheduler.register("withdraw", job, 20)

    assert await scheduler.run_job("withdraw") is False
    record = scheduler.records["withdraw"]
    assert record.error_count == 1
    assert record.last_error == "c"
    assert not record.is_running
    assert record.last_succeeded_at is None

    clock.advance(20)
    assert await scheduler.run_job("withdraw") is True
    assert record.last_succeeded_at == clock.now


@pytest.mark.asyncio
async def test_unretried_job_runs_once(sleep_recorder):
    scheduler = JobScheduler(max_retries=3, sleep=sleep_recorder)
    calls = []

    async def check():
        calls.append(1)
        raise RuntimeError("nope")

    scheduler.register("health_check", check, 60, retry=False, monitored=False)
    assert await scheduler.run_job("health_check") is False
    assert calls == [1]
    assert sleep_recorder.delays == []
    assert scheduler.monitored_jobs == []


def test_register_rejects_duplicates_and_bad_intervals():
    scheduler = JobScheduler()

    async def job():
        pass

    scheduler.register("sell", job, 30)
    with pytest.raises(SchedulerError):
        scheduler.register("sell", job, 30)
    with pytest.raises(SchedulerError):
        scheduler.register("other", job, 0)


@pytest.mark.asyncio
async def test_timer_fires_each_interval():
    fired = []

    async def callback():
        fired.append(1)

    timer = JobTimer("tick", 0.01, callback, run_immediately=True).start()
    await asyncio.sleep(0.055)
    timer.cancel()
    await asyncio.sleep(0)

    assert not timer.active
    assert len(fired) >= 3


@pytest.mark.asyncio
async def test_restart_cancels_previous_timer():
    scheduler = JobScheduler()

    async def job():
        pass

    scheduler.register("holders", job, 180)
    scheduler.start()
    old_timer = scheduler.timers["holders"]

    new_timer = scheduler.restart_job("holders")
    await asyncio.sleep(0)

    assert old_timer is not new_timer
    assert not old_timer.active
    assert new_timer.active
    assert scheduler.timers["holders"] is new_timer

    scheduler.stop()
    await asyncio.sleep(0)
    assert not new_timer.active
    assert scheduler.timers == {}


@pytest.mark.asyncio
async def test_update_interval_rearms_running_timer():
    scheduler = JobScheduler()

    async def job():
        pass

    scheduler.register("distribute", job, 300)
    scheduler.start()
    old_timer = scheduler.timers["distribute"]

    scheduler.update_interval("distribute", 120)

    assert scheduler.records["distribute"].interval_seconds == 120
    assert scheduler.timers["distribute"] is not old_timer
    assert scheduler.timers["distribute"].interval_seconds == 120
    scheduler.stop()
