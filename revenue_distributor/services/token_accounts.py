"""
SPL Token / Token-2022 account layouts and instruction builders.

Only the fields the pipeline reads are decoded:

    token account: mint [0:32], owner [32:64], amount u64 [64:72]
    mint account:  supply u64 [36:44], decimals u8 [44]

Token-2022 accounts longer than the base layout carry an account-type byte
at offset 165 followed by TLV extension entries (u16 type, u16 length).
"""

import struct
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from revenue_distributor.core.config import SolanaConfig


TOKEN_ACCOUNT_SIZE = 165
ACCOUNT_TYPE_OFFSET = 165
ACCOUNT_TYPE_ACCOUNT = 2
TLV_START = ACCOUNT_TYPE_OFFSET + 1

EXTENSION_TRANSFER_FEE_AMOUNT = 2

TRANSFER_FEE_EXTENSION = 26
WITHDRAW_WITHHELD_FROM_ACCOUNTS = 3
CREATE_IDEMPOTENT = 1

TOKEN_PROGRAM_ID = Pubkey.from_string(SolanaConfig.TOKEN_PROGRAM_ID)
TOKEN_2022_PROGRAM_ID = Pubkey.from_string(SolanaConfig.TOKEN_2022_PROGRAM_ID)
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string(SolanaConfig.ASSOCIATED_TOKEN_PROGRAM_ID)
SYSTEM_PROGRAM_ID = Pubkey.from_string(SolanaConfig.SYSTEM_PROGRAM_ID)


@dataclass(frozen=True)
class TokenAccountState:
    mint: Pubkey
    owner: Pubkey
    amount: int
    extensions: Dict[int, bytes]

    @property
    def withheld_amount(self) -> int:
        """Transfer fees withheld in this account, 0 without the extension."""
        value = self.extensions.get(EXTENSION_TRANSFER_FEE_AMOUNT)
        if value is None or len(value) < 8:
            return 0
        return struct.unpack_from("<Q", value, 0)[0]


@dataclass(frozen=True)
class MintState:
    supply: int
    decimals: int


def parse_extensions(data: bytes) -> Dict[int, bytes]:
    """TLV entries after the account-type byte; stops at padding or truncation."""
    extensions: Dict[int, bytes] = {}
    offset = TLV_START
    while offset + 4 <= len(data):
        ext_type, length = struct.unpack_from("<HH", data, offset)
        if ext_type == 0:
            break
        offset += 4
        if offset + length > len(data):
            break
        extensions[ext_type] = bytes(data[offset:offset + length])
        offset += length
    return extensions


def parse_token_account(data: bytes) -> Optional[TokenAccountState]:
    """Decode a token account; None if the data is not a token account."""
    if len(data) < TOKEN_ACCOUNT_SIZE:
        return None

    extensions: Dict[int, bytes] = {}
    if len(data) > TOKEN_ACCOUNT_SIZE:
        if data[ACCOUNT_TYPE_OFFSET] != ACCOUNT_TYPE_ACCOUNT:
            return None
        extensions = parse_extensions(data)

    return TokenAccountState(
        mint=Pubkey.from_bytes(bytes(data[0:32])),
        owner=Pubkey.from_bytes(bytes(data[32:64])),
        amount=struct.unpack_from("<Q", data, 64)[0],
        extensions=extensions
    )


def parse_mint(data: bytes) -> MintState:
    if len(data) < 45:
        raise ValueError(f"Mint account data too short: {len(data)} bytes")
    return MintState(
        supply=struct.unpack_from("<Q", data, 36)[0],
        decimals=data[44]
    )


def get_associated_token_address(
    owner: Pubkey,
    mint: Pubkey,
    token_program_id: Pubkey = TOKEN_2022_PROGRAM_ID
) -> Pubkey:
    address, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program_id), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID
    )
    return address


def create_associated_token_account_idempotent(
    payer: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    token_program_id: Pubkey = TOKEN_2022_PROGRAM_ID
) -> Instruction:
    """CreateIdempotent: succeeds when the account already exists."""
    ata = get_associated_token_address(owner, mint, token_program_id)
    return Instruction(
        program_id=ASSOCIATED_TOKEN_PROGRAM_ID,
        accounts=[
            AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
            AccountMeta(pubkey=ata, is_signer=False, is_writable=True),
            AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
            AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
            AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=token_program_id, is_signer=False, is_writable=False),
        ],
        data=bytes([CREATE_IDEMPOTENT])
    )


def withdraw_withheld_tokens_from_accounts(
    mint: Pubkey,
    destination: Pubkey,
    authority: Pubkey,
    sources: Sequence[Pubkey]
) -> Instruction:
    """Token-2022 TransferFeeExtension::WithdrawWithheldTokensFromAccounts."""
    if len(sources) > 255:
        raise ValueError("At most 255 source accounts per instruction")
    accounts: List[AccountMeta] = [
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
    ]
    accounts.extend(AccountMeta(pubkey=source, is_signer=False, is_writable=True) for source in sources)
    return Instruction(
        program_id=TOKEN_2022_PROGRAM_ID,
        accounts=accounts,
        data=bytes([TRANSFER_FEE_EXTENSION, WITHDRAW_WITHHELD_FROM_ACCOUNTS, len(sources)])
    )
