"""
Test the .env polling watcher and the reload handler.
"""

import os

import pytest

from revenue_distributor.scheduler.config_watcher import EnvFileWatcher, make_reload_handler
from revenue_distributor.scheduler.job_scheduler import JobScheduler
from tests.fakes import FakeClock


def touch(path, content, mtime_ns):
    path.write_text(content)
    os.utime(path, ns=(mtime_ns, mtime_ns))


@pytest.mark.asyncio
async def test_change_is_reported_after_stability_window(tmp_path):
    env = tmp_path / ".env"
    touch(env, "DISTRIBUTE_INTERVAL=300\n", 1_000_000_000)
    clock = FakeClock()
    changes = []

    async def on_change():
        changes.append(clock.now)

    watcher = EnvFileWatcher(env, on_change, stability=2.0, clock=clock)
    assert await watcher.poll_once() is False

    touch(env, "DISTRIBUTE_INTERVAL=120\n", 2_000_000_000)
    assert await watcher.poll_once() is False

    clock.advance(1)
    assert await watcher.poll_once() is False
    clock.advance(1)
    assert await watcher.poll_once() is True
    assert changes == [clock.now]

    clock.advance(5)
    assert await watcher.poll_once() is False


@pytest.mark.asyncio
async def test_write_in_progress_restarts_the_window(tmp_path):
    env = tmp_path / ".env"
    touch(env, "A=1\n", 1_000_000_000)
    clock = FakeClock()
    changes = []

    async def on_change():
        changes.append(1)

    watcher = EnvFileWatcher(env, on_change, stability=2.0, clock=clock)
    touch(env, "A=2\n", 2_000_000_000)
    await watcher.poll_once()
    clock.advance(1.5)
    touch(env, "A=22\n", 3_000_000_000)
    await watcher.poll_once()
    clock.advance(1.5)

    assert await watcher.poll_once() is False
    assert changes == []


@pytest.mark.asyncio
async def test_reload_rearms_distribute_and_holders_only(tmp_path, monkeypatch):
    env = tmp_path / ".env"
    env.write_text("DISTRIBUTE_INTERVAL=120\nHOLDERS_INTERVAL=90\nSELL_INTERVAL=5\n")
    for name in ("DISTRIBUTE_INTERVAL", "HOLDERS_INTERVAL", "SELL_INTERVAL"):
        monkeypatch.delenv(name, raising=False)

    async def job():
        pass

    scheduler = JobScheduler()
    scheduler.register("distribute", job, 300)
    scheduler.register("holders", job, 180)
    scheduler.register("sell", job, 30)
    scheduler.start()
    sell_timer = scheduler.timers["sell"]
    reloaded = []

    await make_reload_handler(scheduler, env, reloaded.append)()

    assert scheduler.records["distribute"].interval_seconds == 120
    assert scheduler.records["holders"].interval_seconds == 90
    assert scheduler.records["sell"].interval_seconds == 30
    assert scheduler.timers["sell"] is sell_timer
    assert reloaded[0].distribute_interval == 120
    scheduler.stop()
