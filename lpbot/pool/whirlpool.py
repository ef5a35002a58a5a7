"""
Whirlpool program accounts and instructions.

Decodes the Whirlpool, Position and SPL Mint account layouts and builds the
Anchor instructions the bot sends: open/close position, increase/decrease
liquidity, update fees and rewards, collect fees and rewards, and tick array
initialization.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from typing import List, Tuple

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from lpbot.constants import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    SYSVAR_RENT_ID,
    TOKEN_PROGRAM_ID,
    WHIRLPOOL_PROGRAM_ID,
)
from lpbot.pool.tick_math import sqrt_price_x64_to_price, tick_array_start_index

NUM_REWARDS = 3
_WHIRLPOOL_MIN_LEN = 653
_POSITION_MIN_LEN = 216
_MINT_DECIMALS_OFFSET = 44
_DEFAULT_PUBKEY = Pubkey.default()


def _u128(data: bytes, offset: int) -> int:
    return int.from_bytes(data[offset:offset + 16], "little")


def _pubkey(data: bytes, offset: int) -> Pubkey:
    return Pubkey.from_bytes(data[offset:offset + 32])


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WhirlpoolRewardInfo:
    mint: Pubkey
    vault: Pubkey
    emissions_per_second_x64: int
    growth_global_x64: int

    @property
    def initialized(self) -> bool:
        return self.mint != _DEFAULT_PUBKEY


@dataclass(frozen=True)
class PoolState:
    """Decoded Whirlpool account plus the decimals of its two mints."""
    address: Pubkey
    tick_spacing: int
    fee_rate: int
    liquidity: int
    sqrt_price: int
    tick_current_index: int
    token_mint_a: Pubkey
    token_vault_a: Pubkey
    token_mint_b: Pubkey
    token_vault_b: Pubkey
    reward_infos: Tuple[WhirlpoolRewardInfo, ...]
    decimals_a: int = 0
    decimals_b: int = 0

    @property
    def price(self) -> float:
        return sqrt_price_x64_to_price(self.sqrt_price, self.decimals_a, self.decimals_b)

    @classmethod
    def decode(cls, address: Pubkey, data: bytes, decimals_a: int = 0, decimals_b: int = 0) -> "PoolState":
        if len(data) < _WHIRLPOOL_MIN_LEN:
            raise ValueError(f"whirlpool account too short: {len(data)} bytes")
        (tick_spacing,) = struct.unpack_from("<H", data, 41)
        (fee_rate,) = struct.unpack_from("<H", data, 45)
        (tick_current,) = struct.unpack_from("<i", data, 81)
        rewards = []
        for i in range(NUM_REWARDS):
            base = 269 + i * 128
            rewards.append(WhirlpoolRewardInfo(
                mint=_pubkey(data, base),
                vault=_pubkey(data, base + 32),
                emissions_per_second_x64=_u128(data, base + 96),
                growth_global_x64=_u128(data, base + 112),
            ))
        return cls(
            address=address,
            tick_spacing=tick_spacing,
            fee_rate=fee_rate,
            liquidity=_u128(data, 49),
            sqrt_price=_u128(data, 65),
            tick_current_index=tick_current,
            token_mint_a=_pubkey(data, 101),
            token_vault_a=_pubkey(data, 133),
            token_mint_b=_pubkey(data, 181),
            token_vault_b=_pubkey(data, 213),
            reward_infos=tuple(rewards),
            decimals_a=decimals_a,
            decimals_b=decimals_b,
        )


@dataclass(frozen=True)
class PositionRewardInfo:
    growth_inside_checkpoint: int
    amount_owed: int


@dataclass(frozen=True)
class PositionData:
    """Decoded Position account."""
    address: Pubkey
    whirlpool: Pubkey
    position_mint: Pubkey
    liquidity: int
    tick_lower_index: int
    tick_upper_index: int
    fee_owed_a: int
    fee_owed_b: int
    reward_infos: Tuple[PositionRewardInfo, ...]

    @classmethod
    def decode(cls, address: Pubkey, data: bytes) -> "PositionData":
        if len(data) < _POSITION_MIN_LEN:
            raise ValueError(f"position account too short: {len(data)} bytes")
        lower, upper = struct.unpack_from("<ii", data, 88)
        (fee_owed_a,) = struct.unpack_from("<Q", data, 112)
        (fee_owed_b,) = struct.unpack_from("<Q", data, 136)
        rewards = []
        for i in range(NUM_REWARDS):
            base = 144 + i * 24
            (owed,) = struct.unpack_from("<Q", data, base + 16)
            rewards.append(PositionRewardInfo(_u128(data, base), owed))
        return cls(
            address=address,
            whirlpool=_pubkey(data, 8),
            position_mint=_pubkey(data, 40),
            liquidity=_u128(data, 72),
            tick_lower_index=lower,
            tick_upper_index=upper,
            fee_owed_a=fee_owed_a,
            fee_owed_b=fee_owed_b,
            reward_infos=tuple(rewards),
        )


def decode_mint_decimals(data: bytes) -> int:
    if len(data) <= _MINT_DECIMALS_OFFSET:
        raise ValueError("mint account too short")
    return data[_MINT_DECIMALS_OFFSET]


# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------

def position_address(position_mint: Pubkey) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address([b"position", bytes(position_mint)], WHIRLPOOL_PROGRAM_ID)


def tick_array_address(whirlpool: Pubkey, start_tick_index: int) -> Pubkey:
    seeds = [b"tick_array", bytes(whirlpool), str(start_tick_index).encode()]
    return Pubkey.find_program_address(seeds, WHIRLPOOL_PROGRAM_ID)[0]


def tick_array_for_tick(whirlpool: Pubkey, tick_index: int, tick_spacing: int) -> Tuple[Pubkey, int]:
    start = tick_array_start_index(tick_index, tick_spacing)
    return tick_array_address(whirlpool, start), start


# ---------------------------------------------------------------------------
# Instructions
# ---------------------------------------------------------------------------

def _discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def _w(pubkey: Pubkey, signer: bool = False) -> AccountMeta:
    return AccountMeta(pubkey, is_signer=signer, is_writable=True)


def _r(pubkey: Pubkey, signer: bool = False) -> AccountMeta:
    return AccountMeta(pubkey, is_signer=signer, is_writable=False)


def _ix(name: str, args: bytes, accounts: List[AccountMeta]) -> Instruction:
    return Instruction(WHIRLPOOL_PROGRAM_ID, _discriminator(name) + args, accounts)


def _u128_bytes(value: int) -> bytes:
    return value.to_bytes(16, "little")


def open_position_ix(
    funder: Pubkey,
    owner: Pubkey,
    whirlpool: Pubkey,
    position_mint: Pubkey,
    position_token_account: Pubkey,
    tick_lower_index: int,
    tick_upper_index: int,
) -> Tuple[Instruction, Pubkey]:
    """Returns the instruction and the new position's address."""
    position, bump = position_address(position_mint)
    args = struct.pack("<Bii", bump, tick_lower_index, tick_upper_index)
    accounts = [
        _w(funder, signer=True),
        _r(owner),
        _w(position),
        _w(position_mint, signer=True),
        _w(position_token_account),
        _r(whirlpool),
        _r(TOKEN_PROGRAM_ID),
        _r(SYSTEM_PROGRAM_ID),
        _r(SYSVAR_RENT_ID),
        _r(ASSOCIATED_TOKEN_PROGRAM_ID),
    ]
    return _ix("open_position", args, accounts), position


@dataclass(frozen=True)
class LiquidityAccounts:
    """Accounts shared by increase/decrease liquidity and collect fees."""
    whirlpool: Pubkey
    position_authority: Pubkey
    position: Pubkey
    position_token_account: Pubkey
    token_owner_account_a: Pubkey
    token_owner_account_b: Pubkey
    token_vault_a: Pubkey
    token_vault_b: Pubkey
    tick_array_lower: Pubkey
    tick_array_upper: Pubkey


def _modify_liquidity_accounts(acc: LiquidityAccounts) -> List[AccountMeta]:
    return [
        _w(acc.whirlpool),
        _r(TOKEN_PROGRAM_ID),
        _r(acc.position_authority, signer=True),
        _w(acc.position),
        _r(acc.position_token_account),
        _w(acc.token_owner_account_a),
        _w(acc.token_owner_account_b),
        _w(acc.token_vault_a),
        _w(acc.token_vault_b),
        _w(acc.tick_array_lower),
        _w(acc.tick_array_upper),
    ]


def increase_liquidity_ix(acc: LiquidityAccounts, liquidity: int, token_max_a: int, token_max_b: int) -> Instruction:
    args = _u128_bytes(liquidity) + struct.pack("<QQ", token_max_a, token_max_b)
    return _ix("increase_liquidity", args, _modify_liquidity_accounts(acc))


def decrease_liquidity_ix(acc: LiquidityAccounts, liquidity: int, token_min_a: int, token_min_b: int) -> Instruction:
    args = _u128_bytes(liquidity) + struct.pack("<QQ", token_min_a, token_min_b)
    return _ix("decrease_liquidity", args, _modify_liquidity_accounts(acc))


def update_fees_and_rewards_ix(acc: LiquidityAccounts) -> Instruction:
    accounts = [
        _w(acc.whirlpool),
        _w(acc.position),
        _r(acc.tick_array_lower),
        _r(acc.tick_array_upper),
    ]
    return _ix("update_fees_and_rewards", b"", accounts)


def collect_fees_ix(acc: LiquidityAccounts) -> Instruction:
    accounts = [
        _r(acc.whirlpool),
        _r(acc.position_authority, signer=True),
        _w(acc.position),
        _r(acc.position_token_account),
        _w(acc.token_owner_account_a),
        _w(acc.token_vault_a),
        _w(acc.token_owner_account_b),
        _w(acc.token_vault_b),
        _r(TOKEN_PROGRAM_ID),
    ]
    return _ix("collect_fees", b"", accounts)


def collect_reward_ix(
    acc: LiquidityAccounts,
    reward_owner_account: Pubkey,
    reward_vault: Pubkey,
    reward_index: int,
) -> Instruction:
    accounts = [
        _r(acc.whirlpool),
        _r(acc.position_authority, signer=True),
        _w(acc.position),
        _r(acc.position_token_account),
        _w(reward_owner_account),
        _w(reward_vault),
        _r(TOKEN_PROGRAM_ID),
    ]
    return _ix("collect_reward", struct.pack("<B", reward_index), accounts)


def close_position_ix(
    position_authority: Pubkey,
    receiver: Pubkey,
    position: Pubkey,
    position_mint: Pubkey,
    position_token_account: Pubkey,
) -> Instruction:
    accounts = [
        _r(position_authority, signer=True),
        _w(receiver),
        _w(position),
        _w(position_mint),
        _w(position_token_account),
        _r(TOKEN_PROGRAM_ID),
    ]
    return _ix("close_position", b"", accounts)


def initialize_tick_array_ix(whirlpool: Pubkey, funder: Pubkey, start_tick_index: int) -> Instruction:
    accounts = [
        _r(whirlpool),
        _w(funder, signer=True),
        _w(tick_array_address(whirlpool, start_tick_index)),
        _r(SYSTEM_PROGRAM_ID),
    ]
    return _ix("initialize_tick_array", struct.pack("<i", start_tick_index), accounts)
