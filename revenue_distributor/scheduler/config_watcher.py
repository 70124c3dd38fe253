"""
Polling watcher for the .env file.

A change is reported once the file's size and mtime have stayed the same for
the stability window, so a half-written file is never reloaded.
"""

import asyncio
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional, Tuple, Union

import structlog

from revenue_distributor.core import config as config_module
from revenue_distributor.core.config import Settings
from .job_scheduler import JobScheduler
from .jobs import DISTRIBUTE, HOLDERS

logger = structlog.get_logger(__name__)

FileSignature = Optional[Tuple[int, int]]


class EnvFileWatcher:
    def __init__(
        self,
        path: Union[str, Path],
        on_change: Callable[[], Awaitable[None]],
        poll_interval: float = 1.0,
        stability: float = 2.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.path = Path(path)
        self.on_change = on_change
        self.poll_interval = poll_interval
        self.stability = stability
        self.clock = clock
        self._last_seen: FileSignature = self._signature()
        self._changed_at: Optional[float] = None
        self._task: Optional[asyncio.Task] = None
        self.logger = logger.bind(service="env_watcher", path=str(self.path))

    def _signature(self) -> FileSignature:
        try:
            stat = self.path.stat()
        except OSError:
            return None
        return stat.st_mtime_ns, stat.st_size

    async def poll_once(self) -> bool:
        """One poll; True if a settled change was handed to on_change."""
        signature = self._signature()
        now = self.clock()
        if signature != self._last_seen:
            self._last_seen = signature
            self._changed_at = now
            return False

        if self._changed_at is None or now - self._changed_at < self.stability:
            return False

        self._changed_at = None
        if signature is None:
            self.logger.warning("Watched file removed, keeping current settings")
            return False

        self.logger.info("Watched file changed, reloading")
        await self.on_change()
        return True

    async def run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Error handling file change", error=str(e))
            await asyncio.sleep(self.poll_interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="env_watcher")

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None


def make_reload_handler(
    scheduler: JobScheduler,
    env_file: Union[str, Path],
    on_reloaded: Optional[Callable[[Settings], None]] = None
) -> Callable[[], Awaitable[None]]:
    """Reload settings and re-arm the distribute and holder timers only."""

    async def reload() -> None:
        new_settings = config_module.reload_settings(str(env_file))
        intervals = {
            DISTRIBUTE: new_settings.distribute_interval,
            HOLDERS: new_settings.holders_interval,
        }
        for name, interval in intervals.items():
            if name in scheduler.records:
                scheduler.update_interval(name, interval)
        logger.info(
            "Configuration reloaded",
            service="env_watcher",
            distribute_interval=new_settings.distribute_interval,
            holders_interval=new_settings.holders_interval
        )
        if on_reloaded is not None:
            on_reloaded(new_settings)

    return reload
