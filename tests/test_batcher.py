"""
Test payout batching, fee selection and transaction layout.
"""

import hashlib
import math
from decimal import Decimal

import pytest
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from revenue_distributor.core.config import SolanaConfig
from revenue_distributor.services.payouts.batcher import (
    DISTRIBUTE_INSTRUCTION,
    PayoutBatcher,
    anchor_discriminator,
    partition,
    select_priority_fee,
)
from revenue_distributor.services.payouts.types import RecipientShare
from tests.fakes import FakeLedger, decode_distribute_data, make_shares


@pytest.mark.parametrize("count", [0, 1, 9, 10, 11, 25, 100])
def test_partition_preserves_order_and_bounds(count):
    items = list(range(count))
    groups = partition(items, 10)

    assert len(groups) == math.ceil(count / 10)
    assert all(1 <= len(group) <= 10 for group in groups)
    assert [item for group in groups for item in group] == items


def test_partition_rejects_non_positive_size():
    with pytest.raises(ValueError):
        partition([1, 2], 0)


def test_basis_points_are_floored():
    assert RecipientShare("x", Decimal("33.335")).basis_points == 3333
    assert RecipientShare("x", Decimal("4")).basis_points == 400
    assert RecipientShare("x", Decimal("0.009")).basis_points == 0
    assert RecipientShare("x", Decimal("100")).basis_points == 10000


def test_priority_fee_uses_median_times_one_and_a_half():
    assert select_priority_fee([100_000, 300_000, 200_000], 80_000) == 300_000


def test_priority_fee_never_below_minimum():
    assert select_priority_fee([0, 0, 10], 80_000) == 80_000
    assert select_priority_fee([], 80_000) == 80_000


def test_discriminator_matches_anchor_convention():
    expected = hashlib.sha256(b"global:distribute_by_percentage").digest()[:8]
    assert anchor_discriminator(DISTRIBUTE_INSTRUCTION) == expected


@pytest.mark.asyncio
async def test_empty_share_list_makes_no_network_calls(settings):
    ledger = FakeLedger(fees=[100_000])
    plan = await PayoutBatcher(ledger, settings).plan(1_000, [])

    assert plan.is_empty
    assert ledger.fee_calls == 0
    assert ledger.leases == []


@pytest.mark.asyncio
async def test_plan_leases_one_blockhash_per_batch(settings):
    ledger = FakeLedger(fees=[200_000])
    shares = make_shares(25)

    plan = await PayoutBatcher(ledger, settings).plan(10_000_000_000, shares)

    assert [len(batch.shares) for batch in plan.batches] == [10, 10, 5]
    assert [batch.index for batch in plan.batches] == [0, 1, 2]
    assert ledger.fee_calls == 1
    assert len(ledger.leases) == 3
    assert len({batch.lease.blockhash for batch in plan.batches}) == 3
    assert all(batch.priority_fee == 300_000 for batch in plan.batches)
    assert [s for batch in plan.batches for s in batch.shares] == shares


@pytest.mark.asyncio
async def test_build_transaction_layout(settings, keypair):
    ledger = FakeLedger()
    batcher = PayoutBatcher(ledger, settings)
    shares = [
        RecipientShare(str(Pubkey.new_unique()), Decimal("33.335")),
        RecipientShare(str(Pubkey.new_unique()), Decimal("4")),
    ]
    plan = await batcher.plan(5_000_000_000, shares)

    raw = batcher.build_transaction(keypair, plan.total_lamports, plan.batches[0])
    transaction = Transaction.from_bytes(raw)
    message = transaction.message
    keys = message.account_keys

    assert keys[0] == keypair.pubkey()
    assert message.recent_blockhash == plan.batches[0].lease.blockhash

    compute_ix, payout_ix = message.instructions
    assert str(keys[compute_ix.program_id_index]) == "ComputeBudget111111111111111111111111111111"
    assert keys[payout_ix.program_id_index] == Pubkey.from_string(settings.distribution_program_id)

    payout_accounts = [keys[i] for i in payout_ix.accounts]
    assert payout_accounts[0] == keypair.pubkey()
    assert payout_accounts[1] == Pubkey.from_string(SolanaConfig.SYSTEM_PROGRAM_ID)
    assert [str(k) for k in payout_accounts[2:]] == [s.address for s in shares]

    total, bps = decode_distribute_data(bytes(payout_ix.data))
    assert total == 5_000_000_000
    assert bps == [3333, 400]

