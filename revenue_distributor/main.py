"""
Main entry point for the revenue pipeline.
Runs the withdraw, sell and distribute jobs on their own cadences.
"""

import asyncio
import signal
from typing import Callable, Optional

import structlog
import typer
from rich.console import Console
from rich.table import Table

from revenue_distributor.core import config as config_module
from revenue_distributor.core.config import Settings
from revenue_distributor.core.context import PipelineContext
from revenue_distributor.core.database import Database
from revenue_distributor.core.logging import setup_logging
from revenue_distributor.core.redis_client import RedisClient
from revenue_distributor.scheduler.config_watcher import EnvFileWatcher, make_reload_handler
from revenue_distributor.scheduler.health import DistributionWatchdog, HealthMonitor, terminate_process
from revenue_distributor.scheduler.job_scheduler import JobScheduler
from revenue_distributor.scheduler.jobs import (
    DISTRIBUTE,
    HEALTH_CHECK,
    HEARTBEAT,
    HOLDERS,
    RESOURCE_MONITOR,
    SELL,
    WATCHDOG,
    WITHDRAW,
    PipelineJobs,
    heartbeat_job,
    log_resource_usage,
)
from revenue_distributor.services.accumulator import AccumulatorStore
from revenue_distributor.services.collectors import CollectorManager, run_collector
from revenue_distributor.services.solana_client import LedgerClient
from revenue_distributor.services.tax_withdrawal import TaxWithdrawalService
from revenue_distributor.services.wallet import load_keypair

logger = structlog.get_logger(__name__)
console = Console()
app = typer.Typer(help="Token-sale revenue pipeline")

STARTUP_SEQUENCE = (HOLDERS, WITHDRAW, SELL)
RESTART_ON_LOOP_ERROR = (DISTRIBUTE, HOLDERS)


class PipelineService:
    """Main pipeline service coordinator."""

    def __init__(self, settings: Settings, terminate: Callable[[int], None] = terminate_process):
        self.settings = settings
        self.terminate = terminate
        self.context: Optional[PipelineContext] = None
        self.scheduler: Optional[JobScheduler] = None
        self.watcher: Optional[EnvFileWatcher] = None
        self._stop_event = asyncio.Event()

    async def initialize(self):
        """Initialize context, scheduler and jobs."""
        try:
            logger.info("Initializing pipeline service")
            self.context = await PipelineContext.create(self.settings)
            self.scheduler = JobScheduler(
                max_retries=self.settings.job_max_retries,
                retry_delay=self.settings.job_retry_delay
            )
            self._register_jobs(PipelineJobs(self.context))
            self.watcher = EnvFileWatcher(
                self.settings.env_file_path,
                make_reload_handler(self.scheduler, self.settings.env_file_path, self._on_settings_reloaded),
                poll_interval=self.settings.env_watch_interval,
                stability=self.settings.env_watch_stability
            )
            logger.info("Pipeline service initialized successfully")
        except Exception as e:
            logger.error("Failed to initialize pipeline", error=str(e))
            raise

    def _register_jobs(self, jobs: PipelineJobs):
        s = self.settings
        scheduler = self.scheduler

        if self.context.holders is not None:
            scheduler.register(HOLDERS, jobs.refresh_holders, s.holders_interval)
        if self.context.withdrawal is not None:
            scheduler.register(WITHDRAW, jobs.withdraw, s.withdraw_interval)
        if self.context.swap is not None:
            scheduler.register(SELL, jobs.sell, s.sell_interval)
        scheduler.register(DISTRIBUTE, jobs.distribute, s.distribute_interval)

        health = HealthMonitor(scheduler, stale_multiplier=s.health_stale_multiplier)
        watchdog = DistributionWatchdog(
            scheduler, DISTRIBUTE, multiplier=s.watchdog_multiplier, terminate=self.terminate
        )
        scheduler.register(HEALTH_CHECK, health.check, s.health_check_interval, retry=False, monitored=False)
        scheduler.register(WATCHDOG, watchdog.check, s.watchdog_interval, retry=False, monitored=False)
        scheduler.register(
            RESOURCE_MONITOR, log_resource_usage, s.resource_monitor_interval, retry=False, monitored=False
        )
        scheduler.register(
            HEARTBEAT, heartbeat_job(scheduler, self.context), s.heartbeat_interval, retry=False, monitored=False
        )

    def _on_settings_reloaded(self, new_settings: Settings):
        self.settings = new_settings

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict):
        """Unhandled errors in tasks: log, then re-arm the distribute and holder timers."""
        error = context.get("exception")
        logger.error(
            "Unhandled error in event loop",
            message=context.get("message"),
            error=str(error) if error else None
        )
        if self.scheduler is None or not self.scheduler.running:
            return
        for name in RESTART_ON_LOOP_ERROR:
            if name in self.scheduler.records:
                self.scheduler.restart_job(name)

    async def run_startup_sequence(self):
        """Holder snapshot, then withdraw, then sell, each once before the timers start."""
        for name in STARTUP_SEQUENCE:
            if name in self.scheduler.records:
                await self.scheduler.run_job(name)

    async def start(self):
        """Start the pipeline and wait until stopped."""
        logger.info(
            "Starting pipeline service",
            app=self.settings.app_name,
            version=self.settings.app_version
        )
        asyncio.get_running_loop().set_exception_handler(self._handle_loop_exception)

        await self.run_startup_sequence()
        self.scheduler.start()
        self.watcher.start()

        logger.info(
            "Pipeline service started",
            withdraw_interval=self.settings.withdraw_interval,
            sell_interval=self.settings.sell_interval,
            distribute_interval=self.settings.distribute_interval,
            holders_interval=self.settings.holders_interval
        )
        await self._stop_event.wait()

    def request_stop(self, signum: Optional[int] = None):
        if signum is not None:
            logger.info(f"Received signal {signum}, shutting down...")
        self._stop_event.set()

    async def stop(self):
        """Cancel timers and close connections. In-flight batches are not awaited."""
        logger.info("Stopping pipeline service")
        if self.watcher is not None:
            self.watcher.stop()
        if self.scheduler is not None:
            self.scheduler.stop()
        if self.context is not None:
            await self.context.close()
        logger.info("Pipeline service stopped")


async def run_pipeline(settings: Settings):
    service = PipelineService(settings)

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, service.request_stop, signum)

    try:
        await service.initialize()
        await service.start()
    except Exception as e:
        logger.error("Pipeline service failed", error=str(e))
        raise
    finally:
        await service.stop()


async def run_collector_worker(settings: Settings, collector_id: int):
    keypair = load_keypair(settings)
    redis_client = RedisClient(config=settings)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)

    async with LedgerClient(settings) as ledger:
        await redis_client.connect()
        try:
            manager = CollectorManager(redis_client.client, max(settings.collector_count, collector_id))
            await run_collector(
                collector_id,
                manager,
                TaxWithdrawalService(ledger, keypair, settings),
                batch_size=settings.collector_batch_size,
                poll_interval=settings.collector_poll_interval,
                stop_event=stop_event
            )
        finally:
            await redis_client.disconnect()


def _load_settings(env_file: Optional[str]) -> Settings:
    if env_file:
        return config_module.reload_settings(env_file)
    return config_module.settings


@app.command()
def run(env_file: Optional[str] = typer.Option(None, help="Path to the .env file")):
    """Run the withdraw / sell / distribute pipeline."""
    settings = _load_settings(env_file)
    if env_file:
        settings.env_file_path = env_file
    setup_logging(settings)
    try:
        asyncio.run(run_pipeline(settings))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")


@app.command()
def collector(
    collector_id: int = typer.Option(..., "--id", min=1, help="Collector id (1-based)"),
    env_file: Optional[str] = typer.Option(None, help="Path to the .env file")
):
    """Run a collector worker that drains its Redis queue."""
    settings = _load_settings(env_file)
    setup_logging(settings)
    asyncio.run(run_collector_worker(settings, collector_id))


@app.command("init-db")
def init_db(env_file: Optional[str] = typer.Option(None, help="Path to the .env file")):
    """Create the recipient share table."""
    settings = _load_settings(env_file)

    async def _init():
        setup_logging(settings)
        database = Database(settings)
        await database.init()
        try:
            await database.create_tables()
        finally:
            await database.close()
        console.print("✅ Database initialized successfully!")

    asyncio.run(_init())


@app.command()
def status(env_file: Optional[str] = typer.Option(None, help="Path to the .env file")):
    """Show the accumulated amount and the configured cadences."""
    settings = _load_settings(env_file)
    accumulator = AccumulatorStore(settings.accumulator_file)
    amount = accumulator.load()

    table = Table(title="Revenue pipeline")
    table.add_column("Setting")
    table.add_column("Value", justify="right")
    table.add_row("Accumulated SOL", str(amount))
    table.add_row("Withdraw interval (s)", str(settings.withdraw_interval))
    table.add_row("Sell interval (s)", str(settings.sell_interval))
    table.add_row("Distribute interval (s)", str(settings.distribute_interval))
    table.add_row("Holders interval (s)", str(settings.holders_interval))
    table.add_row("Payout batch size", str(settings.payout_batch_size))
    table.add_row("Collectors", str(settings.collector_count))
    table.add_row("RPC endpoint", settings.solana_rpc_url)
    console.print(table)


def main():
    app()


if __name__ == "__main__":
    main()
