"""
Test holder share computation.
"""

import struct
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from solders.pubkey import Pubkey

from revenue_distributor.services.holders import HolderSnapshotService, compute_holder_shares
from revenue_distributor.services.solana_client import TokenAccount
from revenue_distributor.services.token_accounts import TOKEN_2022_PROGRAM_ID, MintState


def account(mint, owner, amount):
    data = bytes(mint) + bytes(owner) + struct.pack("<Q", amount) + bytes(93)
    return TokenAccount(pubkey=Pubkey.new_unique(), owner=TOKEN_2022_PROGRAM_ID, lamports=0, data=data)


def test_shares_are_aggregated_per_owner_and_rounded():
    mint = Pubkey.new_unique()
    alice, bob, carol = (Pubkey.new_unique() for _ in range(3))
    accounts = [
        account(mint, alice, 1_000_000),
        account(mint, alice, 500_000),
        account(mint, bob, 1),
        account(mint, carol, 0),
        account(Pubkey.new_unique(), carol, 9_999),
    ]

    holders = compute_holder_shares(accounts, mint, MintState(supply=3_000_000, decimals=6))

    assert [h.address for h in holders] == [str(alice), str(bob)]
    assert holders[0].balance == Decimal("1.5")
    assert holders[0].percentage == Decimal("50.000000")
    assert holders[1].percentage == Decimal("0.000033")


def test_zero_supply_yields_no_holders():
    mint = Pubkey.new_unique()
    holders = compute_holder_shares([account(mint, Pubkey.new_unique(), 5)], mint, MintState(0, 6))
    assert holders == []


@pytest.mark.asyncio
async def test_failed_sol_balance_batch_reads_as_zero(settings):
    settings = settings.model_copy(update={
        "token_mint_address": str(Pubkey.new_unique()),
        "sol_balance_batch_size": 2,
    })
    ledger = AsyncMock()
    ledger.get_multiple_balances.side_effect = [[1_000_000_000, 0], RuntimeError("429")]
    service = HolderSnapshotService(ledger, database=AsyncMock(), config=settings)
    addresses = [str(Pubkey.new_unique()) for _ in range(3)]

    balances = await service.fetch_sol_balances(addresses)

    assert balances[addresses[0]] == Decimal(1)
    assert balances[addresses[1]] == Decimal(0)
    assert balances[addresses[2]] == Decimal(0)
