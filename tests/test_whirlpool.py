"""
Tests for Whirlpool account decoding and instruction encoding.
"""

import hashlib
import struct

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from conftest import make_mint_data, make_pool_data, make_position_data
from lpbot.constants import SOL_MINT, USDC_MINT, WHIRLPOOL_PROGRAM_ID
from lpbot.pool.whirlpool import (
    LiquidityAccounts,
    PoolState,
    PositionData,
    close_position_ix,
    collect_fees_ix,
    collect_reward_ix,
    decode_mint_decimals,
    decrease_liquidity_ix,
    increase_liquidity_ix,
    initialize_tick_array_ix,
    open_position_ix,
    position_address,
    tick_array_address,
    tick_array_for_tick,
    update_fees_and_rewards_ix,
)


def disc(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def new_key() -> Pubkey:
    return Keypair().pubkey()


@pytest.fixture
def accounts() -> LiquidityAccounts:
    return LiquidityAccounts(*(new_key() for _ in range(10)))


class TestDecode:
    def test_pool_decode(self):
        address, vault_a, vault_b = new_key(), new_key(), new_key()
        reward_mint, reward_vault = new_key(), new_key()
        data = make_pool_data(
            sqrt_price=5_833_372_668_713_515_884,
            tick_current_index=-23028,
            mint_a=SOL_MINT,
            mint_b=USDC_MINT,
            tick_spacing=64,
            fee_rate=3000,
            liquidity=123_456_789,
            vault_a=vault_a,
            vault_b=vault_b,
            rewards=[(reward_mint, reward_vault, 7)],
        )

        pool = PoolState.decode(address, data, 9, 6)

        assert pool.address == address
        assert pool.tick_spacing == 64
        assert pool.fee_rate == 3000
        assert pool.liquidity == 123_456_789
        assert pool.sqrt_price == 5_833_372_668_713_515_884
        assert pool.tick_current_index == -23028
        assert pool.token_mint_a == SOL_MINT
        assert pool.token_mint_b == USDC_MINT
        assert pool.token_vault_a == vault_a
        assert pool.token_vault_b == vault_b
        assert pool.reward_infos[0].mint == reward_mint
        assert pool.reward_infos[0].vault == reward_vault
        assert pool.reward_infos[0].emissions_per_second_x64 == 7
        assert pool.reward_infos[0].initialized
        assert not pool.reward_infos[1].initialized
        assert pool.price == pytest.approx(100.0, rel=1e-3)

    def test_pool_decode_rejects_short_data(self):
        with pytest.raises(ValueError):
            PoolState.decode(new_key(), b"\x00" * 100)

    def test_position_decode(self):
        address, whirlpool, mint = new_key(), new_key(), new_key()
        data = make_position_data(
            whirlpool, mint, 10 ** 20, -23040, -22528,
            fee_owed_a=11, fee_owed_b=22, reward_owed=(0, 5, 0),
        )

        position = PositionData.decode(address, data)

        assert position.address == address
        assert position.whirlpool == whirlpool
        assert position.position_mint == mint
        assert position.liquidity == 10 ** 20
        assert (position.tick_lower_index, position.tick_upper_index) == (-23040, -22528)
        assert (position.fee_owed_a, position.fee_owed_b) == (11, 22)
        assert [r.amount_owed for r in position.reward_infos] == [0, 5, 0]

    def test_position_decode_rejects_short_data(self):
        with pytest.raises(ValueError):
            PositionData.decode(new_key(), b"\x00" * 50)

    def test_mint_decimals(self):
        assert decode_mint_decimals(make_mint_data(6)) == 6
        with pytest.raises(ValueError):
            decode_mint_decimals(b"\x00" * 10)


class TestAddresses:
    def test_position_address_is_pda(self):
        mint = new_key()
        address, bump = position_address(mint)
        expected, expected_bump = Pubkey.find_program_address([b"position", bytes(mint)], WHIRLPOOL_PROGRAM_ID)
        assert (address, bump) == (expected, expected_bump)

    def test_tick_array_address_uses_decimal_start_seed(self):
        pool = new_key()
        expected, _ = Pubkey.find_program_address([b"tick_array", bytes(pool), b"-5632"], WHIRLPOOL_PROGRAM_ID)
        assert tick_array_address(pool, -5632) == expected

    def test_tick_array_for_tick(self):
        pool = new_key()
        address, start = tick_array_for_tick(pool, -1, 64)
        assert start == -5632
        assert address == tick_array_address(pool, -5632)


class TestInstructions:
    def test_open_position(self):
        owner, pool, mint, ata = new_key(), new_key(), new_key(), new_key()
        ix, position = open_position_ix(owner, owner, pool, mint, ata, -23040, -22528)

        _, bump = position_address(mint)
        assert ix.program_id == WHIRLPOOL_PROGRAM_ID
        assert ix.data == disc("open_position") + struct.pack("<Bii", bump, -23040, -22528)
        assert position == position_address(mint)[0]
        signers = [m.pubkey for m in ix.accounts if m.is_signer]
        assert signers == [owner, mint]

    def test_increase_liquidity_layout(self, accounts):
        ix = increase_liquidity_ix(accounts, 2 ** 70, 10, 20)

        assert ix.data[:8] == disc("increase_liquidity")
        assert int.from_bytes(ix.data[8:24], "little") == 2 ** 70
        assert struct.unpack("<QQ", ix.data[24:40]) == (10, 20)
        assert len(ix.accounts) == 11
        assert ix.accounts[2].pubkey == accounts.position_authority
        assert ix.accounts[2].is_signer

    def test_decrease_liquidity_layout(self, accounts):
        ix = decrease_liquidity_ix(accounts, 500, 1, 2)

        assert ix.data[:8] == disc("decrease_liquidity")
        assert int.from_bytes(ix.data[8:24], "little") == 500
        assert struct.unpack("<QQ", ix.data[24:40]) == (1, 2)

    def test_fee_and_reward_instructions(self, accounts):
        assert update_fees_and_rewards_ix(accounts).data == disc("update_fees_and_rewards")
        assert collect_fees_ix(accounts).data == disc("collect_fees")
        reward = collect_reward_ix(accounts, new_key(), new_key(), 2)
        assert reward.data == disc("collect_reward") + bytes([2])

    def test_close_position(self):
        authority = new_key()
        ix = close_position_ix(authority, authority, new_key(), new_key(), new_key())
        assert ix.data == disc("close_position")
        assert ix.accounts[0].is_signer

    def test_initialize_tick_array(self):
        pool, funder = new_key(), new_key()
        ix = initialize_tick_array_ix(pool, funder, -5632)

        assert ix.data == disc("initialize_tick_array") + struct.pack("<i", -5632)
        assert ix.accounts[2].pubkey == tick_array_address(pool, -5632)
