"""
Tests for SPL token helpers.
"""

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from conftest import make_token_account_data
from lpbot.constants import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    SOL_MINT,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    USDC_MINT,
)
from lpbot.infra.rpc import AccountInfo
from lpbot.pool.spl_token import (
    associated_token_address,
    close_account_ix,
    create_associated_token_account_ix,
    decode_token_amount,
    plan_token_accounts,
    wrap_sol_ixs,
)


@pytest.fixture
def owner() -> Pubkey:
    return Keypair().pubkey()


def _account(mint, owner, amount=0) -> AccountInfo:
    return AccountInfo(lamports=2_039_280, data=make_token_account_data(mint, owner, amount), owner=str(TOKEN_PROGRAM_ID))


def test_associated_token_address_derivation(owner):
    expected, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(USDC_MINT)], ASSOCIATED_TOKEN_PROGRAM_ID
    )
    assert associated_token_address(owner, USDC_MINT) == expected


def test_create_ata_is_idempotent_variant(owner):
    ix = create_associated_token_account_ix(owner, owner, USDC_MINT)
    assert ix.program_id == ASSOCIATED_TOKEN_PROGRAM_ID
    assert ix.data == bytes([1])
    assert ix.accounts[1].pubkey == associated_token_address(owner, USDC_MINT)
    assert ix.accounts[4].pubkey == SYSTEM_PROGRAM_ID


def test_close_account(owner):
    wsol = associated_token_address(owner, SOL_MINT)
    ix = close_account_ix(wsol, owner, owner)
    assert ix.program_id == TOKEN_PROGRAM_ID
    assert ix.data == bytes([9])
    assert ix.accounts[2].is_signer


def test_wrap_sol_transfers_then_syncs(owner):
    transfer_ix, sync_ix = wrap_sol_ixs(owner, 1_000)
    wsol = associated_token_address(owner, SOL_MINT)
    assert transfer_ix.program_id == SYSTEM_PROGRAM_ID
    assert transfer_ix.accounts[1].pubkey == wsol
    assert sync_ix.data == bytes([17])
    assert sync_ix.accounts[0].pubkey == wsol


def test_decode_token_amount(owner):
    assert decode_token_amount(make_token_account_data(USDC_MINT, owner, 123_456)) == 123_456
    with pytest.raises(ValueError):
        decode_token_amount(b"\x00" * 10)


class TestPlanTokenAccounts:
    def test_missing_accounts_are_created(self, owner):
        plan = plan_token_accounts(owner, [SOL_MINT, USDC_MINT], [None, None])

        assert [ix.accounts[3].pubkey for ix in plan.setup] == [SOL_MINT, USDC_MINT]
        # wSOL is always unwrapped afterwards
        assert len(plan.cleanup) == 1
        assert plan.cleanup[0].accounts[0].pubkey == associated_token_address(owner, SOL_MINT)

    def test_existing_accounts_are_left_alone(self, owner):
        plan = plan_token_accounts(owner, [USDC_MINT], [_account(USDC_MINT, owner, 5)])

        assert plan.setup == []
        assert plan.cleanup == []

    def test_existing_wsol_is_still_closed(self, owner):
        plan = plan_token_accounts(owner, [SOL_MINT], [_account(SOL_MINT, owner)])

        assert plan.setup == []
        assert len(plan.cleanup) == 1

    def test_duplicate_mints_planned_once(self, owner):
        plan = plan_token_accounts(owner, [USDC_MINT, USDC_MINT], [None, None])

        assert [ix.accounts[3].pubkey for ix in plan.setup] == [USDC_MINT]
