"""
Transaction broadcaster for payout batches.
"""

import asyncio
from typing import Awaitable, Callable, List

from solders.keypair import Keypair
import structlog

from revenue_distributor.core.config import Settings
from revenue_distributor.core.exceptions import RateLimitError, RetriesExhaustedError
from revenue_distributor.services.solana_client import LedgerClient
from .batcher import PayoutBatcher
from .types import BatchOutcome, PayoutBatch, PayoutPlan


logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, base: float = 0.5, maximum: float = 10.0) -> float:
    """min(base * 2^attempt, maximum) seconds; attempt counts from 0."""
    return min(base * (2 ** attempt), maximum)


class TransactionBroadcaster:
    """
    Signs, submits and confirms payout batches.

    Each batch has its own retry loop; a rate-limited batch backs off
    without holding up any other batch.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        batcher: PayoutBatcher,
        signer: Keypair,
        config: Settings,
        sleep: Sleep = asyncio.sleep
    ):
        self.ledger = ledger
        self.batcher = batcher
        self.signer = signer
        self.max_retries = config.send_max_retries
        self.base_delay = config.send_base_delay
        self.max_delay = config.send_max_delay
        self._sleep = sleep
        self.logger = logger.bind(service="transaction_broadcaster")

    async def send(self, serialized_tx: bytes) -> str:
        """Submit with exponential backoff on rate limiting; other rejections raise at once."""
        for attempt in range(self.max_retries):
            try:
                return await self.ledger.send_raw_transaction(serialized_tx, skip_preflight=True)
            except RateLimitError:
                if attempt + 1 >= self.max_retries:
                    break
                delay = backoff_delay(attempt, self.base_delay, self.max_delay)
                self.logger.warning(
                    "Server responded with 429, retrying",
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay_ms=int(delay * 1000)
                )
                await self._sleep(delay)
        raise RetriesExhaustedError(self.max_retries)

    async def broadcast_batch(self, plan: PayoutPlan, batch: PayoutBatch) -> BatchOutcome:
        """Sign, send and confirm one batch; any failure becomes a failed outcome."""
        try:
            serialized = self.batcher.build_transaction(self.signer, plan.total_lamports, batch)
            signature = await self.send(serialized)
            await self.ledger.confirm_transaction(signature, batch.lease)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = str(e) or type(e).__name__
            self.logger.error(
                "Payout batch failed",
                batch=batch.index + 1,
                reason=reason,
                recipients=batch.addresses
            )
            return BatchOutcome.failed(batch.index, reason, batch.addresses)

        self.logger.info("Payout batch confirmed", batch=batch.index + 1, signature=signature)
        return BatchOutcome.committed(batch.index, signature)

    async def broadcast(self, plan: PayoutPlan) -> List[BatchOutcome]:
        """Fire every batch at once, then wait for all of them to settle."""
        results = await asyncio.gather(
            *(self.broadcast_batch(plan, batch) for batch in plan.batches),
            return_exceptions=True
        )
        outcomes = []
        for batch, result in zip(plan.batches, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                reason = str(result) or type(result).__name__
                outcomes.append(BatchOutcome.failed(batch.index, reason, batch.addresses))
            else:
                outcomes.append(result)
        return outcomes
