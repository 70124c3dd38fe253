"""
Types for payout distribution.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Protocol, Sequence, Tuple

from revenue_distributor.services.solana_client import BlockhashLease


@dataclass(frozen=True)
class RecipientShare:
    """A recipient address and its percentage of the distributed total."""
    address: str
    percentage: Decimal

    @property
    def basis_points(self) -> int:
        # floor(percentage * 100); the fractional remainder is not redistributed
        return int(self.percentage * 100)


class RecipientShareProvider(Protocol):
    """Source of the recipient snapshot for one cycle."""

    async def fetch_shares(self) -> List[RecipientShare]:
        ...


@dataclass(frozen=True)
class PayoutBatch:
    """One ledger transaction's worth of recipients."""
    index: int
    shares: Tuple[RecipientShare, ...]
    lease: BlockhashLease
    priority_fee: int

    @property
    def addresses(self) -> List[str]:
        return [share.address for share in self.shares]

    @property
    def basis_points(self) -> List[int]:
        return [share.basis_points for share in self.shares]


@dataclass
class PayoutPlan:
    """Everything needed to broadcast one distribution cycle."""
    total_lamports: int
    priority_fee: int = 0
    batches: List[PayoutBatch] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.batches


class OutcomeStatus(Enum):
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(frozen=True)
class BatchOutcome:
    """Settled result of one batch."""
    batch_index: int
    status: OutcomeStatus
    signature: Optional[str] = None
    reason: Optional[str] = None
    recipients: Tuple[str, ...] = ()

    @classmethod
    def committed(cls, batch_index: int, signature: str) -> "BatchOutcome":
        return cls(batch_index, OutcomeStatus.COMMITTED, signature=signature)

    @classmethod
    def failed(cls, batch_index: int, reason: str, recipients: Sequence[str] = ()) -> "BatchOutcome":
        return cls(batch_index, OutcomeStatus.FAILED, reason=reason, recipients=tuple(recipients))

    @property
    def is_committed(self) -> bool:
        return self.status is OutcomeStatus.COMMITTED


@dataclass(frozen=True)
class FailedBatch:
    batch_index: int
    reason: str
    recipients: Tuple[str, ...] = ()


@dataclass
class DistributionReport:
    """Partitioned outcome of a distribution cycle."""
    total_lamports: int = 0
    batch_count: int = 0
    successful: List[str] = field(default_factory=list)
    failed: List[FailedBatch] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if self.batch_count == 0:
            return 0.0
        return len(self.successful) / self.batch_count
