"""
Test the sell amount rules and the sell flow with mocked HTTP and ledger.
"""

import struct
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from solders.pubkey import Pubkey

from revenue_distributor.core.exceptions import SwapError
from revenue_distributor.services.solana_client import TokenAccount
from revenue_distributor.services.swap_service import SwapService, amount_to_sell


def test_amount_to_sell_rules():
    assert amount_to_sell(0, 50) == 0
    assert amount_to_sell(1_000, 50) == 500
    assert amount_to_sell(999, 33.3) == 332
    assert amount_to_sell(1_000, None) == 1_000
    assert amount_to_sell(1_000, 0) == 1_000
    assert amount_to_sell(1_000, 150) == 1_000


def token_account(amount):
    data = bytes(Pubkey.new_unique()) + bytes(Pubkey.new_unique()) + struct.pack("<Q", amount) + bytes(93)
    return TokenAccount(pubkey=Pubkey.new_unique(), owner=Pubkey.new_unique(), lamports=0, data=data)


def make_service(settings, keypair, balance, **overrides):
    settings = settings.model_copy(update={"token_mint_address": str(Pubkey.new_unique()), **overrides})
    ledger = AsyncMock()
    ledger.get_token_accounts_by_owner.return_value = [token_account(balance)] if balance is not None else []
    return SwapService(ledger, keypair, settings, session=AsyncMock())


@pytest.mark.asyncio
async def test_sell_keeps_initial_balance(settings, keypair):
    service = make_service(settings, keypair, 5_000_000, initial_balance=5, token_decimals=6)
    service.get_quote = AsyncMock()

    assert await service.sell() == Decimal(0)
    service.get_quote.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_token_account_sells_nothing(settings, keypair):
    service = make_service(settings, keypair, None)
    assert await service.sell() == Decimal(0)


@pytest.mark.asyncio
async def test_sell_returns_quoted_sol(settings, keypair):
    service = make_service(settings, keypair, 3_000_000, initial_balance=1, token_decimals=6, percentage_sell=50)
    service.get_quote = AsyncMock(return_value={"outAmount": "1500000000"})
    service.get_swap_transaction = AsyncMock(return_value=b"tx")
    service.execute = AsyncMock(return_value="signature")

    assert await service.sell() == Decimal("1.5")
    service.get_quote.assert_awaited_once_with(1_000_000)


@pytest.mark.asyncio
async def test_execution_failure_becomes_swap_error(settings, keypair):
    service = make_service(settings, keypair, 1_000)
    service.get_quote = AsyncMock(return_value={"outAmount": "1"})
    service.get_swap_transaction = AsyncMock(return_value=b"tx")
    service.execute = AsyncMock(side_effect=RuntimeError("simulation failed"))

    with pytest.raises(SwapError, match="simulation failed"):
        await service.sell()
