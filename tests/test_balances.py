"""
Tests for wallet balance accounting.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from solders.keypair import Keypair

from conftest import make_token_account_data
from lpbot.constants import SOL_MINT, TOKEN_PROGRAM_ID, USDC_MINT
from lpbot.infra.rpc import AccountInfo
from lpbot.pool.balances import parse_post_balances, read_wallet_balances
from lpbot.pool.spl_token import associated_token_address

SOL = str(SOL_MINT)
USDC = str(USDC_MINT)


class TestReadWalletBalances:
    @pytest.mark.asyncio
    async def test_sol_minus_floor_and_token_amount(self):
        owner = Keypair().pubkey()
        rpc = MagicMock()
        rpc.get_multiple_accounts = AsyncMock(return_value=[
            AccountInfo(lamports=1_000_000_000, data=b"", owner="11111111111111111111111111111111"),
            AccountInfo(lamports=2_039_280, data=make_token_account_data(USDC_MINT, owner, 42_000_000),
                        owner=str(TOKEN_PROGRAM_ID)),
        ])

        balances = await read_wallet_balances(rpc, owner, [SOL_MINT, USDC_MINT], 70_000_000)

        assert balances == {SOL: 930_000_000, USDC: 42_000_000}
        addresses = rpc.get_multiple_accounts.await_args.args[0]
        assert addresses == [owner, associated_token_address(owner, USDC_MINT)]

    @pytest.mark.asyncio
    async def test_missing_accounts_read_zero_and_floor_never_negative(self):
        owner = Keypair().pubkey()
        rpc = MagicMock()
        rpc.get_multiple_accounts = AsyncMock(return_value=[
            AccountInfo(lamports=10, data=b"", owner="11111111111111111111111111111111"),
            None,
        ])

        balances = await read_wallet_balances(rpc, owner, [SOL_MINT, USDC_MINT], 70_000_000)

        assert balances == {SOL: 0, USDC: 0}

    @pytest.mark.asyncio
    async def test_fetch_errors_retried(self):
        owner = Keypair().pubkey()
        rpc = MagicMock()
        rpc.get_multiple_accounts = AsyncMock(side_effect=[ConnectionError("reset"), [None]])

        balances = await read_wallet_balances(rpc, owner, [USDC_MINT], 0, retry_wait=0.0)

        assert balances == {USDC: 0}
        assert rpc.get_multiple_accounts.await_count == 2


class TestParsePostBalances:
    def test_reads_fee_payer_lamports_and_owned_tokens(self):
        owner = Keypair().pubkey()
        other = Keypair().pubkey()
        meta = {
            "postBalances": [3_000_000_000, 1],
            "postTokenBalances": [
                {"mint": USDC, "owner": str(other), "uiTokenAmount": {"amount": "999"}},
                {"mint": USDC, "owner": str(owner), "uiTokenAmount": {"amount": "1500000"}},
            ],
        }

        balances = parse_post_balances(meta, owner, [SOL_MINT, USDC_MINT])

        assert balances == {SOL: 3_000_000_000, USDC: 1_500_000}

    def test_absent_mint_reads_zero(self):
        meta = {"postBalances": [5], "postTokenBalances": []}
        assert parse_post_balances(meta, Keypair().pubkey(), [USDC_MINT]) == {USDC: 0}

    def test_missing_token_balances_raises(self):
        with pytest.raises(ValueError):
            parse_post_balances({"postBalances": [5]}, Keypair().pubkey(), [USDC_MINT])
