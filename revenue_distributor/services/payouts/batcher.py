"""
Payout batcher: splits recipients into bounded transactions and builds
the signed distribution transaction for each batch.
"""

import asyncio
import hashlib
import struct
from typing import List, Sequence, TypeVar

from solders.compute_budget import set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction
import structlog

from revenue_distributor.core.config import Settings, SolanaConfig
from revenue_distributor.services.solana_client import LedgerClient
from .types import PayoutBatch, PayoutPlan, RecipientShare


logger = structlog.get_logger(__name__)

DISTRIBUTE_INSTRUCTION = "distribute_by_percentage"

T = TypeVar("T")


def partition(items: Sequence[T], batch_size: int) -> List[List[T]]:
    """Consecutive groups of at most batch_size, in input order."""
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    return [list(items[i:i + batch_size]) for i in range(0, len(items), batch_size)]


def select_priority_fee(samples: Sequence[int], minimum: int, multiplier: float = 1.5) -> int:
    """Median of the recent fee samples times the multiplier, never below minimum."""
    if not samples:
        return minimum
    ordered = sorted(samples)
    median = ordered[len(ordered) // 2]
    return max(minimum, int(median * multiplier))


def anchor_discriminator(instruction_name: str) -> bytes:
    """First 8 bytes of SHA256("global:{instruction_name}")."""
    return hashlib.sha256(f"global:{instruction_name}".encode()).digest()[:8]


def encode_distribute_args(total_amount: int, basis_points: Sequence[int]) -> bytes:
    """Borsh layout: u64 total_amount, Vec<u32> percentages."""
    data = anchor_discriminator(DISTRIBUTE_INSTRUCTION)
    data += struct.pack("<Q", total_amount)
    data += struct.pack("<I", len(basis_points))
    for bps in basis_points:
        data += struct.pack("<I", bps)
    return data


class PayoutBatcher:
    """Builds a payout plan and per-batch transactions for one cycle."""

    def __init__(self, ledger: LedgerClient, config: Settings):
        self.ledger = ledger
        self.batch_size = config.payout_batch_size
        self.min_priority_fee = config.min_priority_fee
        self.priority_fee_multiplier = config.priority_fee_multiplier
        self.program_id = Pubkey.from_string(config.distribution_program_id)
        self.system_program_id = Pubkey.from_string(SolanaConfig.SYSTEM_PROGRAM_ID)
        self.logger = logger.bind(service="payout_batcher")

    async def compute_priority_fee(self) -> int:
        samples = await self.ledger.get_recent_prioritization_fees()
        fee = select_priority_fee(samples, self.min_priority_fee, self.priority_fee_multiplier)
        self.logger.info(
            "Priority fee selected",
            samples=len(samples),
            priority_fee_micro_lamports=fee
        )
        return fee

    async def plan(self, total_lamports: int, shares: Sequence[RecipientShare]) -> PayoutPlan:
        """Partition shares and lease one blockhash per batch, all up front."""
        if not shares:
            self.logger.warning("No recipient shares, nothing to batch")
            return PayoutPlan(total_lamports=total_lamports)

        groups = partition(shares, self.batch_size)
        priority_fee = await self.compute_priority_fee()
        leases = await asyncio.gather(
            *(self.ledger.get_latest_blockhash() for _ in groups)
        )

        batches = [
            PayoutBatch(
                index=index,
                shares=tuple(group),
                lease=lease,
                priority_fee=priority_fee
            )
            for index, (group, lease) in enumerate(zip(groups, leases))
        ]

        self.logger.info(
            "Payout plan built",
            total_lamports=total_lamports,
            recipients=len(shares),
            batches=len(batches)
        )
        return PayoutPlan(total_lamports=total_lamports, priority_fee=priority_fee, batches=batches)

    def build_instruction(self, funding_account: Pubkey, total_lamports: int, batch: PayoutBatch) -> Instruction:
        accounts = [
            AccountMeta(pubkey=funding_account, is_signer=True, is_writable=True),
            AccountMeta(pubkey=self.system_program_id, is_signer=False, is_writable=False),
        ]
        accounts.extend(
            AccountMeta(pubkey=Pubkey.from_string(address), is_signer=False, is_writable=True)
            for address in batch.addresses
        )
        return Instruction(
            program_id=self.program_id,
            accounts=accounts,
            data=encode_distribute_args(total_lamports, batch.basis_points)
        )

    def build_transaction(self, signer: Keypair, total_lamports: int, batch: PayoutBatch) -> bytes:
        """Priority fee instruction followed by the payout instruction, signed and serialized."""
        instructions = [
            set_compute_unit_price(batch.priority_fee),
            self.build_instruction(signer.pubkey(), total_lamports, batch),
        ]
        transaction = Transaction.new_signed_with_payer(
            instructions,
            signer.pubkey(),
            [signer],
            batch.lease.blockhash
        )
        return bytes(transaction)
