"""
Collector fan-out for tax withdrawal.

Withheld-fee accounts can be split across N collector workers through Redis:

    collector:{id}:jobs    list of account addresses (LPUSH in, RPOP out)
    collector:{id}:status  hash with active / processed / failed / timestamps

Collector ids start at 1.
"""

import asyncio
import math
import time
from typing import Dict, List, Optional, Sequence

from redis.asyncio import Redis
from solders.pubkey import Pubkey
import structlog

from .tax_withdrawal import TaxWithdrawalService


logger = structlog.get_logger(__name__)


class CollectorKeys:
    @staticmethod
    def job_queue(collector_id: int) -> str:
        return f"collector:{collector_id}:jobs"

    @staticmethod
    def status(collector_id: int) -> str:
        return f"collector:{collector_id}:status"


def _now_ms() -> str:
    return str(int(time.time() * 1000))


class CollectorManager:
    """Splits withdraw work across collector queues and tracks their progress."""

    def __init__(self, redis: Redis, number_of_collectors: int = 4):
        if number_of_collectors <= 0:
            raise ValueError("number_of_collectors must be positive")
        self.redis = redis
        self.number_of_collectors = number_of_collectors
        self.logger = logger.bind(service="collector_manager")

    @property
    def collector_ids(self) -> range:
        return range(1, self.number_of_collectors + 1)

    async def initialize(self) -> None:
        for collector_id in self.collector_ids:
            await self.redis.hset(CollectorKeys.status(collector_id), mapping={
                "active": "true",
                "processed": "0",
                "failed": "0",
                "lastActive": _now_ms(),
            })
        self.logger.info("Collectors initialized", collectors=self.number_of_collectors)

    async def distribute_accounts(self, accounts: Sequence[Pubkey]) -> Dict[int, int]:
        """Even split in contiguous slices; returns how many accounts each collector got."""
        assigned: Dict[int, int] = {}
        if not accounts:
            return assigned

        per_collector = math.ceil(len(accounts) / self.number_of_collectors)
        for offset, collector_id in enumerate(self.collector_ids):
            chunk = accounts[offset * per_collector:(offset + 1) * per_collector]
            if not chunk:
                continue
            await self.redis.lpush(CollectorKeys.job_queue(collector_id), *[str(a) for a in chunk])
            await self.redis.hset(CollectorKeys.status(collector_id), mapping={
                "pendingJobs": str(len(chunk)),
                "lastUpdated": _now_ms(),
            })
            assigned[collector_id] = len(chunk)

        self.logger.info("Accounts distributed to collectors", accounts=len(accounts), assigned=assigned)
        return assigned

    async def get_next_batch(self, collector_id: int, batch_size: int = 20) -> List[Pubkey]:
        queue_key = CollectorKeys.job_queue(collector_id)
        accounts = []
        for _ in range(batch_size):
            address = await self.redis.rpop(queue_key)
            if not address:
                break
            accounts.append(Pubkey.from_string(address))
        return accounts

    async def update_progress(self, collector_id: int, processed: int, failed: int) -> None:
        key = CollectorKeys.status(collector_id)
        await self.redis.hincrby(key, "processed", processed)
        await self.redis.hincrby(key, "failed", failed)
        await self.redis.hset(key, "lastActive", _now_ms())

    async def get_all_status(self) -> Dict[str, Dict[str, str]]:
        return {
            f"collector{collector_id}": await self.redis.hgetall(CollectorKeys.status(collector_id))
            for collector_id in self.collector_ids
        }

    async def is_processing_complete(self) -> bool:
        for collector_id in self.collector_ids:
            if await self.redis.llen(CollectorKeys.job_queue(collector_id)) > 0:
                return False
        return True


async def run_collector(
    collector_id: int,
    manager: CollectorManager,
    withdrawal: TaxWithdrawalService,
    batch_size: int = 20,
    poll_interval: float = 5.0,
    stop_event: Optional[asyncio.Event] = None
) -> None:
    """Drain one collector queue through the withdraw service until stopped."""
    log = logger.bind(service="collector", collector_id=collector_id)
    stop_event = stop_event or asyncio.Event()
    log.info("Collector started")

    while not stop_event.is_set():
        try:
            batch = await manager.get_next_batch(collector_id, batch_size)
            if not batch:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue

            signature = await withdrawal.withdraw_batch(batch)
            if signature:
                await manager.update_progress(collector_id, processed=len(batch), failed=0)
            else:
                await manager.update_progress(collector_id, processed=0, failed=len(batch))

        except asyncio.CancelledError:
            break
        except Exception as e:
            log.error("Collector loop error", error=str(e))
            await asyncio.sleep(poll_interval)

    log.info("Collector stopped")
