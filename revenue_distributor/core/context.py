"""
Pipeline context: the shared connections and services of one process.

Everything with a connection or a secret is created here once and torn down
by close(). Jobs receive the context instead of reaching for globals.
"""

from dataclasses import dataclass, field
from typing import Optional

from solders.keypair import Keypair
import structlog

from revenue_distributor.services.accumulator import AccumulatorStore
from revenue_distributor.services.collectors import CollectorManager
from revenue_distributor.services.holders import HolderSnapshotService
from revenue_distributor.services.payouts import (
    PayoutBatcher,
    PayoutDistributor,
    TransactionBroadcaster,
)
from revenue_distributor.services.recipients import DatabaseRecipientProvider
from revenue_distributor.services.solana_client import LedgerClient
from revenue_distributor.services.swap_service import SwapService
from revenue_distributor.services.tax_withdrawal import TaxWithdrawalService
from revenue_distributor.services.wallet import load_keypair
from .config import Settings
from .database import Database
from .redis_client import RedisClient

logger = structlog.get_logger(__name__)


@dataclass
class PipelineContext:
    settings: Settings
    ledger: LedgerClient
    keypair: Keypair
    database: Database
    accumulator: AccumulatorStore
    distributor: PayoutDistributor
    withdrawal: Optional[TaxWithdrawalService] = None
    swap: Optional[SwapService] = None
    holders: Optional[HolderSnapshotService] = None
    redis: Optional[RedisClient] = None
    collectors: Optional[CollectorManager] = None
    _closed: bool = field(default=False, repr=False)

    @classmethod
    async def create(cls, settings: Settings) -> "PipelineContext":
        """Load the keypair, open connections and wire the services."""
        keypair = load_keypair(settings)

        accumulator = AccumulatorStore(settings.accumulator_file)
        accumulator.load()

        ledger = LedgerClient(settings)
        database = Database(settings)
        redis_client: Optional[RedisClient] = None
        try:
            await database.init()

            batcher = PayoutBatcher(ledger, settings)
            distributor = PayoutDistributor(
                provider=DatabaseRecipientProvider(database),
                batcher=batcher,
                broadcaster=TransactionBroadcaster(ledger, batcher, keypair, settings),
                config=settings
            )

            withdrawal = swap = holders = None
            if settings.token_mint_address:
                withdrawal = TaxWithdrawalService(ledger, keypair, settings)
                swap = SwapService(ledger, keypair, settings)
                if settings.holders_enabled:
                    holders = HolderSnapshotService(ledger, database, settings)
            else:
                logger.warning("TOKEN_MINT_ADDRESS not set, withdraw/sell/holder jobs disabled")

            collectors = None
            if settings.collector_count > 0:
                redis_client = RedisClient(config=settings)
                await redis_client.connect()
                collectors = CollectorManager(redis_client.client, settings.collector_count)
                await collectors.initialize()
        except BaseException:
            await ledger.close()
            await database.close()
            if redis_client is not None:
                await redis_client.disconnect()
            raise

        logger.info(
            "Pipeline context created",
            wallet=str(keypair.pubkey()),
            accumulated_sol=str(accumulator.amount),
            collectors=settings.collector_count
        )
        return cls(
            settings=settings,
            ledger=ledger,
            keypair=keypair,
            database=database,
            accumulator=accumulator,
            distributor=distributor,
            withdrawal=withdrawal,
            swap=swap,
            holders=holders,
            redis=redis_client,
            collectors=collectors
        )

    async def close(self) -> None:
        """Close the RPC client, HTTP sessions, database engine and Redis."""
        if self._closed:
            return
        self._closed = True

        if self.swap is not None:
            await self.swap.close()
        await self.ledger.close()
        await self.database.close()
        if self.redis is not None:
            await self.redis.disconnect()
        logger.info("Pipeline context closed")
