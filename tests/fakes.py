"""
Fakes for the ledger, provider and sleep seams.
"""

import struct
from decimal import Decimal
from typing import Iterable, List, Optional

from solders.hash import Hash
from solders.keypair import Keypair
from solders.transaction import Transaction

from revenue_distributor.core.exceptions import SolanaError
from revenue_distributor.services.payouts.types import RecipientShare
from revenue_distributor.services.solana_client import BlockhashLease


class FakeLedger:
    """In-memory stand-in for LedgerClient's payout calls."""

    def __init__(
        self,
        fees: Optional[List[int]] = None,
        send_errors: Optional[Iterable[Exception]] = None,
        fail_addresses: Iterable[str] = ()
    ):
        self.fees = fees or []
        self.send_errors = list(send_errors or [])
        self.fail_addresses = set(fail_addresses)
        self.fee_calls = 0
        self.leases: List[BlockhashLease] = []
        self.send_attempts = 0
        self.sent: List[Transaction] = []
        self.confirmed: List[str] = []

    async def get_recent_prioritization_fees(self) -> List[int]:
        self.fee_calls += 1
        return list(self.fees)

    async def get_latest_blockhash(self) -> BlockhashLease:
        lease = BlockhashLease(blockhash=Hash.new_unique(), last_valid_block_height=1000 + len(self.leases))
        self.leases.append(lease)
        return lease

    async def send_raw_transaction(self, serialized_tx: bytes, skip_preflight: bool = True) -> str:
        self.send_attempts += 1
        if self.send_errors:
            raise self.send_errors.pop(0)

        transaction = Transaction.from_bytes(serialized_tx)
        keys = {str(key) for key in transaction.message.account_keys}
        if keys & self.fail_addresses:
            raise SolanaError("Transaction simulation failed: custom program error 0x1")
        self.sent.append(transaction)
        return str(transaction.signatures[0])

    async def confirm_transaction(self, signature: str, lease: BlockhashLease) -> None:
        self.confirmed.append(signature)


class FakeProvider:
    def __init__(self, shares=None, error: Optional[Exception] = None):
        self.shares = shares or []
        self.error = error
        self.calls = 0

    async def fetch_shares(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.shares)


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def decode_distribute_data(data: bytes):
    """(total_amount, [basis points]) from a distribute_by_percentage instruction."""
    total = struct.unpack_from("<Q", data, 8)[0]
    count = struct.unpack_from("<I", data, 16)[0]
    return total, list(struct.unpack_from(f"<{count}I", data, 20))


def make_shares(count: int, percentage: str = "4") -> List[RecipientShare]:
    return [RecipientShare(str(Keypair().pubkey()), Decimal(percentage)) for _ in range(count)]


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def token_account_bytes(mint, owner, amount, withheld=None) -> bytes:
    """Token account data, with a TransferFeeAmount extension when withheld is given."""
    data = bytes(mint) + bytes(owner) + struct.pack("<Q", amount)
    data += bytes(165 - len(data))
    if withheld is None:
        return data
    data += bytes([2])
    data += struct.pack("<HH", 2, 8) + struct.pack("<Q", withheld)
    return data
