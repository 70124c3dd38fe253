"""
Payout distribution: batching, broadcasting and result aggregation.
"""

from .aggregator import aggregate
from .batcher import PayoutBatcher
from .broadcaster import TransactionBroadcaster
from .distributor import PayoutDistributor
from .types import (
    BatchOutcome,
    DistributionReport,
    FailedBatch,
    PayoutBatch,
    PayoutPlan,
    RecipientShare,
)

__all__ = [
    "aggregate",
    "PayoutBatcher",
    "TransactionBroadcaster",
    "PayoutDistributor",
    "BatchOutcome",
    "DistributionReport",
    "FailedBatch",
    "PayoutBatch",
    "PayoutPlan",
    "RecipientShare",
]
