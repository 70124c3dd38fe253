"""
Pipeline jobs: withdraw, sell, distribute, holder snapshot, plus the
operational resource monitor and heartbeat.
"""

from decimal import Decimal
from typing import Optional

import psutil
import structlog

from revenue_distributor.core.context import PipelineContext
from revenue_distributor.core.exceptions import PersistenceError
from revenue_distributor.services.payouts.types import DistributionReport
from revenue_distributor.services.tax_withdrawal import WithdrawSummary
from .job_scheduler import JobScheduler

logger = structlog.get_logger(__name__)

WITHDRAW = "withdraw"
SELL = "sell"
DISTRIBUTE = "distribute"
HOLDERS = "holders"
HEALTH_CHECK = "health_check"
WATCHDOG = "watchdog"
RESOURCE_MONITOR = "resource_monitor"
HEARTBEAT = "heartbeat"


class PipelineJobs:
    """The job bodies; scheduling and retries are the scheduler's business."""

    def __init__(self, context: PipelineContext):
        self.context = context
        self.logger = logger.bind(service="pipeline_jobs")

    async def withdraw(self) -> Optional[WithdrawSummary]:
        """Sweep withheld fees, directly or by filling the collector queues."""
        withdrawal = self.context.withdrawal
        if withdrawal is None:
            self.logger.debug("Withdraw job disabled")
            return None

        collectors = self.context.collectors
        if collectors is None:
            return await withdrawal.run()

        await withdrawal.ensure_fee_vault()
        accounts = await withdrawal.find_withheld_accounts()
        if not accounts:
            self.logger.info("No accounts found with withheld fees")
            return WithdrawSummary()
        if not await collectors.is_processing_complete():
            self.logger.info("Collectors still busy with the previous sweep, skipping fan-out")
            return WithdrawSummary(accounts=len(accounts))
        await collectors.distribute_accounts(accounts)
        return WithdrawSummary(accounts=len(accounts))

    async def sell(self) -> Decimal:
        """Convert surplus tokens and add the SOL received to the accumulator."""
        swap = self.context.swap
        if swap is None:
            self.logger.debug("Sell job disabled")
            return Decimal(0)

        received = await swap.sell()
        if received <= 0:
            return received

        # The swap has settled; a retry from here would sell the same tokens twice.
        accumulator = self.context.accumulator
        try:
            total = await accumulator.add(received)
        except PersistenceError as e:
            self.logger.error(
                "SOL credited in memory only, next accumulator write will persist it",
                received=str(received),
                accumulated=str(accumulator.amount),
                error=str(e)
            )
            return received

        self.logger.info(
            "SOL added to accumulator",
            received=str(received),
            accumulated=str(total)
        )
        return received

    async def distribute(self) -> Optional[DistributionReport]:
        """
        Pay out everything accumulated so far.

        The amount is taken out of the accumulator before the cycle starts; if
        the cycle fails before anything is broadcast the amount is restored so
        the next attempt pays it again. Batches that fail after broadcast are
        only reported.
        """
        accumulator = self.context.accumulator
        amount = await accumulator.take_all()
        if amount <= 0:
            self.logger.info("No SOL to distribute")
            return None

        try:
            report = await self.context.distributor.distribute(amount)
        except Exception as e:
            self.logger.error(
                "Distribution cycle failed, restoring amount",
                amount=str(amount),
                error=str(e)
            )
            try:
                await accumulator.restore(amount)
            except PersistenceError as persist_error:
                self.logger.error(
                    "Restored amount kept in memory only",
                    amount=str(accumulator.amount),
                    error=str(persist_error)
                )
            raise

        if report.failed:
            self.logger.error(
                "Distribution finished with failed batches",
                amount=str(amount),
                failed_batches=[f.batch_index + 1 for f in report.failed]
            )
        return report

    async def refresh_holders(self) -> int:
        holders = self.context.holders
        if holders is None:
            self.logger.debug("Holder snapshot job disabled")
            return 0
        return await holders.refresh()


async def log_resource_usage() -> None:
    process = psutil.Process()
    memory = process.memory_info()
    logger.info(
        "Memory usage",
        service="resource_monitor",
        rss_mb=round(memory.rss / 1024 / 1024, 2),
        vms_mb=round(memory.vms / 1024 / 1024, 2),
        cpu_percent=process.cpu_percent(interval=None)
    )


def heartbeat_job(scheduler: JobScheduler, context: PipelineContext):
    async def heartbeat() -> None:
        status = scheduler.health_status()
        extra = {"database_ok": await context.database.health_check()}
        if context.redis is not None:
            extra["redis"] = await context.redis.health_check()
        if context.collectors is not None:
            extra["collectors"] = await context.collectors.get_all_status()

        logger.info(
            "Heartbeat - pipeline is running",
            service="heartbeat",
            accumulated_sol=str(context.accumulator.amount),
            jobs_with_errors=status["jobs_with_errors"],
            jobs=status["jobs"],
            **extra
        )
    return heartbeat
