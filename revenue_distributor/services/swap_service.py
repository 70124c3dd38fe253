"""
Swap service for converting program tokens into SOL through the Jupiter API.
"""

import base64
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction
import structlog

from revenue_distributor.core.config import Settings, SolanaConfig
from revenue_distributor.core.exceptions import ConfigurationError, SwapError
from revenue_distributor.services.solana_client import LedgerClient
from .token_accounts import parse_token_account


logger = structlog.get_logger(__name__)


def amount_to_sell(available: int, percentage_sell: Optional[float]) -> int:
    """Raw token amount to sell out of what is available above the kept balance."""
    if available <= 0:
        return 0
    if percentage_sell is not None and 0 < percentage_sell <= 100:
        return int(available * Decimal(str(percentage_sell)) / 100)
    return available


class SwapService:
    """Sells the wallet's surplus program tokens for SOL."""

    def __init__(
        self,
        ledger: LedgerClient,
        wallet: Keypair,
        config: Settings,
        session: Optional[aiohttp.ClientSession] = None
    ):
        if not config.token_mint_address:
            raise ConfigurationError("TOKEN_MINT_ADDRESS is not set")

        self.ledger = ledger
        self.wallet = wallet
        self.config = config
        self.input_mint = config.token_mint_address
        self.api_url = config.jupiter_api_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self.logger = logger.bind(service="swap_service")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.rpc_timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def get_token_balance(self) -> int:
        """Raw token balance of the wallet's first token account for the mint."""
        accounts = await self.ledger.get_token_accounts_by_owner(self.wallet.pubkey(), self.input_mint)
        if not accounts:
            self.logger.warning("Token account not found", mint=self.input_mint)
            return 0
        state = parse_token_account(accounts[0].data)
        return state.amount if state else 0

    async def get_quote(self, amount: int) -> Dict[str, Any]:
        params = {
            "inputMint": self.input_mint,
            "outputMint": SolanaConfig.WRAPPED_SOL_MINT,
            "amount": str(amount),
            "slippageBps": str(self.config.slippage_bps),
        }
        session = await self._get_session()
        try:
            async with session.get(f"{self.api_url}/quote", params=params) as response:
                quote = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise SwapError(f"Error fetching quote: {e}") from e

        if not quote or "error" in quote:
            raise SwapError("Failed to get quote", {"error": (quote or {}).get("error")})
        return quote

    async def get_swap_transaction(self, quote: Dict[str, Any]) -> bytes:
        body = {
            "quoteResponse": quote,
            "userPublicKey": str(self.wallet.pubkey()),
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": "auto",
        }
        session = await self._get_session()
        try:
            async with session.post(f"{self.api_url}/swap", json=body) as response:
                data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise SwapError(f"Error fetching swap transaction: {e}") from e

        if not data or "error" in data or not data.get("swapTransaction"):
            raise SwapError("Failed to get swap transaction", {"error": (data or {}).get("error")})
        return base64.b64decode(data["swapTransaction"])

    async def execute(self, swap_transaction: bytes) -> str:
        """Sign the venue's versioned transaction, send with preflight and confirm."""
        unsigned = VersionedTransaction.from_bytes(swap_transaction)
        signed = VersionedTransaction(unsigned.message, [self.wallet])

        lease = await self.ledger.get_latest_blockhash()
        signature = await self.ledger.send_transaction(signed, skip_preflight=False)
        self.logger.info("Sell transaction sent", signature=signature)
        await self.ledger.confirm_transaction(signature, lease)
        return signature

    async def sell(self) -> Decimal:
        """Sell the configured share of surplus tokens; returns SOL received (quoted)."""
        total = await self.get_token_balance()
        keep = self.config.initial_balance * 10 ** self.config.token_decimals
        available = max(0, total - keep)
        amount = amount_to_sell(available, self.config.percentage_sell)

        self.logger.info(
            "Token balance checked",
            total=total,
            keep=keep,
            available=available,
            amount_to_sell=amount
        )
        if amount <= 0:
            self.logger.info("No tokens available to sell, skipping sale")
            return Decimal(0)

        quote = await self.get_quote(amount)
        swap_transaction = await self.get_swap_transaction(quote)
        try:
            signature = await self.execute(swap_transaction)
        except SwapError:
            raise
        except Exception as e:
            raise SwapError(f"Failed to execute transaction: {e}") from e

        received = Decimal(int(quote["outAmount"])) / SolanaConfig.LAMPORTS_PER_SOL
        self.logger.info(
            "Sell transaction confirmed",
            signature=signature,
            sol_received=str(received),
            url=SolanaConfig.explorer_tx_url(signature, self.config)
        )
        return received
