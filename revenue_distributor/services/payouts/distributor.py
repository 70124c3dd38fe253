"""
One distribution cycle: recipients -> plan -> broadcast -> report.
"""

from decimal import Decimal, ROUND_DOWN

import structlog

from revenue_distributor.core.config import Settings, SolanaConfig
from .types import DistributionReport, RecipientShareProvider
from .aggregator import aggregate, log_report
from .batcher import PayoutBatcher
from .broadcaster import TransactionBroadcaster


logger = structlog.get_logger(__name__)


def sol_to_lamports(amount_sol: Decimal) -> int:
    return int((Decimal(amount_sol) * SolanaConfig.LAMPORTS_PER_SOL).to_integral_value(rounding=ROUND_DOWN))


class PayoutDistributor:
    """
    Runs a distribution cycle for a given SOL amount.

    Any exception raised from distribute() means nothing was broadcast and
    the caller should hand the amount back to the accumulator. Batches that
    fail after broadcast are reported, not raised.
    """

    def __init__(
        self,
        provider: RecipientShareProvider,
        batcher: PayoutBatcher,
        broadcaster: TransactionBroadcaster,
        config: Settings
    ):
        self.provider = provider
        self.batcher = batcher
        self.broadcaster = broadcaster
        self.config = config
        self.logger = logger.bind(service="payout_distributor")

    async def distribute(self, amount_sol: Decimal) -> DistributionReport:
        total_lamports = sol_to_lamports(amount_sol)
        self.logger.info("Starting distribution", amount_sol=str(amount_sol), total_lamports=total_lamports)

        shares = await self.provider.fetch_shares()
        plan = await self.batcher.plan(total_lamports, shares)
        if plan.is_empty:
            return DistributionReport(total_lamports=total_lamports)

        outcomes = await self.broadcaster.broadcast(plan)
        report = aggregate(outcomes, total_lamports)
        log_report(report, self.config)
        return report
