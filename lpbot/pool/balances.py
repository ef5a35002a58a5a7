"""
Wallet balance accounting for the two pool tokens.

Native SOL is counted from the wallet's lamports minus a floor that is
always left for fees and rent; every other mint is the wallet's associated
token account balance.
"""

from __future__ import annotations

from typing import Dict, Sequence

from solders.pubkey import Pubkey

from lpbot.constants import SOL_MINT
from lpbot.infra.retry import retry
from lpbot.infra.rpc import SolanaRpc
from lpbot.pool.spl_token import associated_token_address, decode_token_amount

Balances = Dict[str, int]


def _balance_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    return owner if mint == SOL_MINT else associated_token_address(owner, mint)


async def read_wallet_balances(
    rpc: SolanaRpc,
    owner: Pubkey,
    mints: Sequence[Pubkey],
    min_sol_balance_raw: int,
    retry_wait: float = 0.5,
) -> Balances:
    """Spendable raw balances keyed by mint string."""
    addresses = [_balance_address(owner, mint) for mint in mints]
    accounts = await retry(
        lambda: rpc.get_multiple_accounts(addresses),
        retry_wait,
        label="get_multiple_accounts",
    )
    balances: Balances = {}
    for mint, account in zip(mints, accounts):
        if account is None:
            balances[str(mint)] = 0
        elif mint == SOL_MINT:
            balances[str(mint)] = max(0, account.lamports - min_sol_balance_raw)
        else:
            balances[str(mint)] = decode_token_amount(account.data)
    return balances


def parse_post_balances(meta: dict, owner: Pubkey, mints: Sequence[Pubkey]) -> Balances:
    """
    Raw balances after a confirmed transaction, from its meta.

    SOL is the fee payer's post balance (index 0); token balances come from
    `postTokenBalances` entries owned by `owner`. A mint with no entry had
    its account closed or never touched and reads as 0.
    """
    post_lamports = meta.get("postBalances") or []
    token_balances = meta.get("postTokenBalances")
    if token_balances is None:
        raise ValueError("transaction meta has no postTokenBalances")

    owner_str = str(owner)
    balances: Balances = {}
    for mint in mints:
        key = str(mint)
        if mint == SOL_MINT:
            balances[key] = int(post_lamports[0]) if post_lamports else 0
            continue
        amount = 0
        for entry in token_balances:
            if entry.get("mint") != key:
                continue
            if entry.get("owner") not in (None, owner_str):
                continue
            amount = int(entry["uiTokenAmount"]["amount"])
            break
        balances[key] = amount
    return balances
