"""
SPL token helpers: associated token accounts, wrapped SOL and balances.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer

from lpbot.constants import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    SOL_MINT,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
)
from lpbot.infra.rpc import AccountInfo

_TOKEN_AMOUNT_OFFSET = 64
_CLOSE_ACCOUNT = 9
_SYNC_NATIVE = 17
_CREATE_IDEMPOTENT = 1


def associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    seeds = [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)]
    return Pubkey.find_program_address(seeds, ASSOCIATED_TOKEN_PROGRAM_ID)[0]


def create_associated_token_account_ix(payer: Pubkey, owner: Pubkey, mint: Pubkey) -> Instruction:
    """Idempotent ATA creation: a no-op when the account already exists."""
    accounts = [
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(associated_token_address(owner, mint), is_signer=False, is_writable=True),
        AccountMeta(owner, is_signer=False, is_writable=False),
        AccountMeta(mint, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(ASSOCIATED_TOKEN_PROGRAM_ID, bytes([_CREATE_IDEMPOTENT]), accounts)


def close_account_ix(account: Pubkey, destination: Pubkey, owner: Pubkey) -> Instruction:
    accounts = [
        AccountMeta(account, is_signer=False, is_writable=True),
        AccountMeta(destination, is_signer=False, is_writable=True),
        AccountMeta(owner, is_signer=True, is_writable=False),
    ]
    return Instruction(TOKEN_PROGRAM_ID, bytes([_CLOSE_ACCOUNT]), accounts)


def sync_native_ix(account: Pubkey) -> Instruction:
    accounts = [AccountMeta(account, is_signer=False, is_writable=True)]
    return Instruction(TOKEN_PROGRAM_ID, bytes([_SYNC_NATIVE]), accounts)


def wrap_sol_ixs(owner: Pubkey, lamports: int) -> List[Instruction]:
    """Move lamports into the owner's wrapped SOL account and sync its balance."""
    wsol_account = associated_token_address(owner, SOL_MINT)
    return [
        transfer(TransferParams(from_pubkey=owner, to_pubkey=wsol_account, lamports=lamports)),
        sync_native_ix(wsol_account),
    ]


def decode_token_amount(data: bytes) -> int:
    if len(data) < _TOKEN_AMOUNT_OFFSET + 8:
        raise ValueError("token account too short")
    (amount,) = struct.unpack_from("<Q", data, _TOKEN_AMOUNT_OFFSET)
    return amount


@dataclass
class TokenAccountPlan:
    """Setup and cleanup instructions around a transaction that moves tokens."""
    setup: List[Instruction] = field(default_factory=list)
    cleanup: List[Instruction] = field(default_factory=list)


def plan_token_accounts(
    owner: Pubkey,
    mints: Sequence[Pubkey],
    existing: Sequence[Optional[AccountInfo]],
) -> TokenAccountPlan:
    """
    Create missing associated token accounts for `mints`.

    `existing` holds the fetched account for each mint's ATA (None when
    missing). The wrapped SOL account is always closed in cleanup so its
    lamports return to the wallet as native SOL.
    """
    plan = TokenAccountPlan()
    seen = set()
    for mint, account in zip(mints, existing):
        if mint in seen:
            continue
        seen.add(mint)
        if mint == SOL_MINT:
            plan.cleanup.append(close_account_ix(associated_token_address(owner, SOL_MINT), owner, owner))
        if account is not None and account.data:
            continue
        plan.setup.append(create_associated_token_account_ix(owner, owner, mint))
    return plan
