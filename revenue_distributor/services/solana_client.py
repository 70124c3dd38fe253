"""
Solana RPC client service for the revenue pipeline.
Wraps the async RPC client with the handful of calls the jobs need and
maps transport failures onto the pipeline's exception types.
"""

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Union

import aiohttp
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed
from solana.rpc.types import MemcmpOpts, TokenAccountOpts, TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
import structlog

from revenue_distributor.core.config import Settings, SolanaConfig
from revenue_distributor.core.exceptions import (
    ConfirmationError,
    RateLimitError,
    SolanaError,
)


logger = structlog.get_logger(__name__)

RATE_LIMIT_MARKERS = ("429", "too many requests", "rate limit")


@dataclass(frozen=True)
class BlockhashLease:
    """A recent blockhash and the last block height at which it is accepted."""
    blockhash: Hash
    last_valid_block_height: int


@dataclass
class TokenAccount:
    """Raw token account as returned by the RPC node."""
    pubkey: Pubkey
    owner: Pubkey
    lamports: int
    data: bytes


def is_rate_limited(error: BaseException) -> bool:
    """Check an exception and its causes for a rate-limit rejection."""
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        response = getattr(current, "response", None)
        if getattr(response, "status_code", None) == 429:
            return True
        text = f"{type(current).__name__} {current}".lower()
        if any(marker in text for marker in RATE_LIMIT_MARKERS):
            return True
        current = current.__cause__ or current.__context__
    return False


class LedgerClient:
    """
    Async Solana RPC client for pipeline interactions.

    Provides:
    - Priority fee telemetry and blockhash leases for payout batches
    - Raw transaction submission with rate-limit classification
    - Confirmation bounded by a lease's expiry height
    - Account reads used by the withdraw, convert and holder jobs
    """

    def __init__(self, config: Settings, client: Optional[AsyncClient] = None):
        """Initialize the client from settings."""
        self.config = config
        self.rpc_config = SolanaConfig.get_rpc_config(config)
        self.commitment = Commitment(self.rpc_config["commitment"])
        self.client = client or AsyncClient(
            endpoint=self.rpc_config["endpoint"],
            commitment=self.commitment,
            timeout=self.rpc_config["timeout"]
        )
        self._http: Optional[aiohttp.ClientSession] = None
        self.logger = logger.bind(service="ledger_client")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the RPC client and the raw JSON-RPC session."""
        await self.client.close()
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    async def _rpc_call(self, method: str, params: Optional[list] = None):
        """Issue a JSON-RPC call the typed client does not wrap."""
        if self._http is None or self._http.closed:
            timeout = aiohttp.ClientTimeout(total=self.rpc_config["timeout"])
            self._http = aiohttp.ClientSession(timeout=timeout)

        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params or []}
        async with self._http.post(self.rpc_config["endpoint"], json=payload) as response:
            if response.status == 429:
                raise RateLimitError(f"{method} rate limited (429)")
            if response.status != 200:
                raise SolanaError(
                    f"{method} failed with HTTP {response.status}",
                    {"status": response.status}
                )
            body = await response.json()

        if "error" in body:
            raise SolanaError(f"{method} failed: {body['error']}", {"error": body["error"]})
        return body.get("result")

    async def get_recent_prioritization_fees(self) -> List[int]:
        """Recent per-slot prioritization fees in micro-lamports."""
        result = await self._rpc_call("getRecentPrioritizationFees")
        return [int(sample.get("prioritizationFee", 0)) for sample in result or []]

    async def get_latest_blockhash(self) -> BlockhashLease:
        """Acquire a blockhash lease at confirmed commitment."""
        try:
            response = await self.client.get_latest_blockhash(Confirmed)
        except Exception as e:
            self.logger.error("Failed to get latest blockhash", error=str(e))
            raise SolanaError(f"Failed to get latest blockhash: {e}") from e
        return BlockhashLease(
            blockhash=response.value.blockhash,
            last_valid_block_height=response.value.last_valid_block_height
        )

    async def send_raw_transaction(self, serialized_tx: bytes, skip_preflight: bool = True) -> str:
        """Submit a signed transaction, classifying rate-limit rejections."""
        opts = TxOpts(skip_preflight=skip_preflight, preflight_commitment=Confirmed)
        try:
            response = await self.client.send_raw_transaction(serialized_tx, opts=opts)
        except Exception as e:
            if is_rate_limited(e):
                raise RateLimitError(f"Transaction submission rate limited: {e}") from e
            raise SolanaError(f"Transaction submission rejected: {e}") from e
        return str(response.value)

    async def confirm_transaction(self, signature: str, lease: BlockhashLease) -> None:
        """Wait for confirmed status until the lease's block height passes."""
        try:
            response = await self.client.confirm_transaction(
                Signature.from_string(signature),
                commitment=Confirmed,
                last_valid_block_height=lease.last_valid_block_height
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ConfirmationError(signature, str(e) or type(e).__name__) from e

        status = response.value[0] if response.value else None
        if status is None:
            raise ConfirmationError(signature, "no signature status returned")
        if status.err is not None:
            raise ConfirmationError(signature, f"transaction failed: {status.err}")

    async def get_balance(self, address: Union[str, Pubkey]) -> int:
        """SOL balance in lamports."""
        if isinstance(address, str):
            address = Pubkey.from_string(address)
        response = await self.client.get_balance(address, Confirmed)
        return response.value

    async def get_account_owner_and_data(self, address: Union[str, Pubkey]):
        """Return (owner, data) for an account, or None if it does not exist."""
        if isinstance(address, str):
            address = Pubkey.from_string(address)
        response = await self.client.get_account_info(address, Confirmed)
        if response.value is None:
            return None
        return response.value.owner, bytes(response.value.data)

    async def get_program_token_accounts(
        self,
        program_id: Union[str, Pubkey],
        mint: Union[str, Pubkey],
        data_size: Optional[int] = None
    ) -> List[TokenAccount]:
        """All token accounts of a mint under a token program."""
        if isinstance(program_id, str):
            program_id = Pubkey.from_string(program_id)
        filters: list = [MemcmpOpts(offset=0, bytes=str(mint))]
        if data_size is not None:
            filters.insert(0, data_size)

        response = await self.client.get_program_accounts(
            program_id,
            commitment=Confirmed,
            encoding="base64",
            filters=filters
        )
        accounts = []
        for keyed in response.value:
            accounts.append(TokenAccount(
                pubkey=keyed.pubkey,
                owner=keyed.account.owner,
                lamports=keyed.account.lamports,
                data=bytes(keyed.account.data)
            ))
        return accounts

    async def get_multiple_balances(self, addresses: List[Pubkey]) -> List[int]:
        """Lamport balances for up to 100 accounts; missing accounts read as 0."""
        response = await self.client.get_multiple_accounts(addresses, Confirmed)
        return [account.lamports if account else 0 for account in response.value]

    async def get_token_accounts_by_owner(
        self,
        owner: Pubkey,
        mint: Union[str, Pubkey]
    ) -> List[TokenAccount]:
        if isinstance(mint, str):
            mint = Pubkey.from_string(mint)
        response = await self.client.get_token_accounts_by_owner(
            owner,
            TokenAccountOpts(mint=mint, encoding="base64"),
            Confirmed
        )
        return [
            TokenAccount(
                pubkey=keyed.pubkey,
                owner=keyed.account.owner,
                lamports=keyed.account.lamports,
                data=bytes(keyed.account.data)
            )
            for keyed in response.value
        ]

    async def send_transaction(self, transaction, skip_preflight: bool = False) -> str:
        """Submit a signed (versioned or legacy) transaction object."""
        return await self.send_raw_transaction(bytes(transaction), skip_preflight=skip_preflight)
