"""
Tax withdrawal service.

Sweeps Token-2022 transfer fees withheld in holder token accounts into the
fee vault's associated token account.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction
import structlog

from revenue_distributor.core.config import Settings, SolanaConfig
from revenue_distributor.core.exceptions import ConfigurationError
from revenue_distributor.services.payouts.batcher import partition
from revenue_distributor.services.solana_client import LedgerClient
from .token_accounts import (
    TOKEN_2022_PROGRAM_ID,
    create_associated_token_account_idempotent,
    get_associated_token_address,
    parse_token_account,
    withdraw_withheld_tokens_from_accounts,
)


logger = structlog.get_logger(__name__)


@dataclass
class WithdrawSummary:
    accounts: int = 0
    batches: int = 0
    succeeded: int = 0
    failed: int = 0


class TaxWithdrawalService:
    """Withdraws withheld transfer fees in batches, signed by the wallet keypair."""

    def __init__(
        self,
        ledger: LedgerClient,
        authority: Keypair,
        config: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        if not config.token_mint_address:
            raise ConfigurationError("TOKEN_MINT_ADDRESS is not set")

        self.ledger = ledger
        self.authority = authority
        self.config = config
        self.mint = Pubkey.from_string(config.token_mint_address)
        self.vault_owner = (
            Pubkey.from_string(config.fee_vault_owner) if config.fee_vault_owner else authority.pubkey()
        )
        self.fee_vault = get_associated_token_address(self.vault_owner, self.mint)
        self.batch_size = config.withdraw_batch_size
        self.max_retries = config.withdraw_max_retries
        self.retry_delay = config.withdraw_retry_delay
        self._sleep = sleep
        self.logger = logger.bind(service="tax_withdrawal")

    async def _send(self, instructions: List[Instruction]) -> str:
        lease = await self.ledger.get_latest_blockhash()
        transaction = Transaction.new_signed_with_payer(
            instructions,
            self.authority.pubkey(),
            [self.authority],
            lease.blockhash
        )
        signature = await self.ledger.send_raw_transaction(bytes(transaction), skip_preflight=False)
        await self.ledger.confirm_transaction(signature, lease)
        return signature

    async def ensure_fee_vault(self) -> Pubkey:
        """Create the fee vault token account if it does not exist yet."""
        instruction = create_associated_token_account_idempotent(
            self.authority.pubkey(), self.vault_owner, self.mint
        )
        await self._send([instruction])
        return self.fee_vault

    async def find_withheld_accounts(self) -> List[Pubkey]:
        """Token accounts of the mint holding a non-zero withheld fee."""
        accounts = await self.ledger.get_program_token_accounts(TOKEN_2022_PROGRAM_ID, self.mint)
        withheld = []
        for account in accounts:
            state = parse_token_account(account.data)
            if state is not None and state.mint == self.mint and state.withheld_amount > 0:
                withheld.append(account.pubkey)
        return withheld

    async def withdraw_batch(self, sources: Sequence[Pubkey], batch_number: int = 1) -> Optional[str]:
        """Withdraw from one batch, retrying; returns None once retries run out."""
        instruction = withdraw_withheld_tokens_from_accounts(
            self.mint, self.fee_vault, self.authority.pubkey(), sources
        )
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                signature = await self._send([instruction])
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempt < attempts:
                    self.logger.warning(
                        "Withdraw batch attempt failed, retrying",
                        batch=batch_number,
                        attempt=attempt,
                        delay=self.retry_delay,
                        error=str(e)
                    )
                    await self._sleep(self.retry_delay)
                    continue
                self.logger.error(
                    "Withdraw batch failed, continuing with next batch",
                    batch=batch_number,
                    attempts=attempts,
                    error=str(e)
                )
                return None

            self.logger.info(
                "Withdraw batch complete",
                batch=batch_number,
                accounts=len(sources),
                url=SolanaConfig.explorer_tx_url(signature, self.config)
            )
            return signature
        return None

    async def withdraw_accounts(self, accounts: Sequence[Pubkey]) -> WithdrawSummary:
        summary = WithdrawSummary(accounts=len(accounts))
        for number, batch in enumerate(partition(list(accounts), self.batch_size), start=1):
            summary.batches += 1
            if await self.withdraw_batch(batch, number):
                summary.succeeded += 1
            else:
                summary.failed += 1
        return summary

    async def run(self) -> WithdrawSummary:
        """Full sweep: ensure the vault, scan, withdraw batch by batch."""
        await self.ensure_fee_vault()

        accounts = await self.find_withheld_accounts()
        if not accounts:
            self.logger.info("No accounts found with withheld fees")
            return WithdrawSummary()

        self.logger.info(
            "Found accounts with withheld fees",
            accounts=len(accounts),
            batch_size=self.batch_size
        )
        summary = await self.withdraw_accounts(accounts)
        self.logger.info(
            "Fee collection complete",
            batches=summary.batches,
            succeeded=summary.succeeded,
            failed=summary.failed
        )
        return summary
