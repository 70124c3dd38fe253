"""
Holder snapshot service.

Builds the recipient share table from on-chain token holdings: every owner
holding the mint gets a percentage equal to its share of the total supply.
Owners without SOL are left out.
"""

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Sequence, Tuple

from solders.pubkey import Pubkey
from sqlalchemy import delete
import structlog

from revenue_distributor.core.config import Settings, SolanaConfig
from revenue_distributor.core.database import Database
from revenue_distributor.core.exceptions import ConfigurationError, SolanaError
from revenue_distributor.models.recipient_share import RecipientShareRecord
from revenue_distributor.services.payouts.batcher import partition
from revenue_distributor.services.solana_client import LedgerClient, TokenAccount
from .token_accounts import (
    TOKEN_2022_PROGRAM_ID,
    TOKEN_ACCOUNT_SIZE,
    TOKEN_PROGRAM_ID,
    MintState,
    parse_mint,
    parse_token_account,
)


logger = structlog.get_logger(__name__)

PERCENTAGE_QUANTUM = Decimal("0.000001")
BALANCE_QUANTUM = Decimal("0.000000001")


@dataclass(frozen=True)
class HolderShare:
    address: str
    balance: Decimal
    percentage: Decimal
    sol_balance: Decimal = Decimal(0)


def compute_holder_shares(accounts: Sequence[TokenAccount], mint: Pubkey, mint_state: MintState) -> List[HolderShare]:
    """Aggregate token accounts per owner; zero balances are dropped."""
    raw_by_owner: Dict[str, int] = defaultdict(int)
    for account in accounts:
        state = parse_token_account(account.data)
        if state is None or state.mint != mint:
            continue
        raw_by_owner[str(state.owner)] += state.amount

    if mint_state.supply == 0:
        return []

    scale = Decimal(10) ** mint_state.decimals
    holders = []
    for owner, raw in raw_by_owner.items():
        if raw <= 0:
            continue
        percentage = (Decimal(raw) / Decimal(mint_state.supply) * 100).quantize(
            PERCENTAGE_QUANTUM, rounding=ROUND_HALF_UP
        )
        holders.append(HolderShare(
            address=owner,
            balance=(Decimal(raw) / scale).quantize(BALANCE_QUANTUM),
            percentage=percentage
        ))
    holders.sort(key=lambda h: h.balance, reverse=True)
    return holders


class HolderSnapshotService:
    """Refreshes the recipient_shares table from the mint's current holders."""

    def __init__(self, ledger: LedgerClient, database: Database, config: Settings):
        if not config.token_mint_address:
            raise ConfigurationError("TOKEN_MINT_ADDRESS is not set")

        self.ledger = ledger
        self.database = database
        self.mint = Pubkey.from_string(config.token_mint_address)
        self.sol_batch_size = config.sol_balance_batch_size
        self.logger = logger.bind(service="holder_snapshot")

    async def get_mint_info(self) -> Tuple[Pubkey, MintState]:
        """The mint's token program and its supply/decimals."""
        result = await self.ledger.get_account_owner_and_data(self.mint)
        if result is None:
            raise SolanaError(f"Mint account {self.mint} not found")
        owner, data = result
        if owner not in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
            raise SolanaError(f"Mint {self.mint} is not owned by a token program", {"owner": str(owner)})
        return owner, parse_mint(data)

    async def fetch_sol_balances(self, addresses: List[str]) -> Dict[str, Decimal]:
        """SOL balance per address; a failed batch reads as zero."""
        balances: Dict[str, Decimal] = {}
        for number, batch in enumerate(partition(addresses, self.sol_batch_size), start=1):
            try:
                lamports = await self.ledger.get_multiple_balances([Pubkey.from_string(a) for a in batch])
            except Exception as e:
                self.logger.error("Error fetching SOL balance batch", batch=number, error=str(e))
                lamports = [0] * len(batch)
            for address, value in zip(batch, lamports):
                balances[address] = Decimal(value) / SolanaConfig.LAMPORTS_PER_SOL
        return balances

    async def collect(self) -> List[HolderShare]:
        token_program, mint_state = await self.get_mint_info()
        data_size = TOKEN_ACCOUNT_SIZE if token_program == TOKEN_PROGRAM_ID else None
        accounts = await self.ledger.get_program_token_accounts(token_program, self.mint, data_size=data_size)

        holders = compute_holder_shares(accounts, self.mint, mint_state)
        self.logger.info("Token holders found", accounts=len(accounts), holders=len(holders))

        sol_balances = await self.fetch_sol_balances([h.address for h in holders])
        with_sol = [
            HolderShare(h.address, h.balance, h.percentage, sol_balances.get(h.address, Decimal(0)))
            for h in holders
        ]
        return [h for h in with_sol if h.sol_balance > 0 and h.percentage > 0]

    async def store(self, holders: Sequence[HolderShare]) -> None:
        """Replace the table contents in one transaction."""
        async with self.database.session() as session:
            await session.execute(delete(RecipientShareRecord))
            session.add_all([
                RecipientShareRecord(
                    address=h.address,
                    percentage=h.percentage,
                    balance=h.balance,
                    sol_balance=h.sol_balance.quantize(BALANCE_QUANTUM)
                )
                for h in holders
            ])

    async def refresh(self) -> int:
        holders = await self.collect()
        await self.store(holders)
        self.logger.info("Holder snapshot stored", holders=len(holders))
        return len(holders)
