"""
Pytest configuration and fixtures.
Adds the repo root to the Python path so tests can import lpbot without an install.
"""

import asyncio
import math
import struct
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from solders.hash import Hash  # noqa: E402
from solders.keypair import Keypair  # noqa: E402
from solders.transaction import VersionedTransaction  # noqa: E402

from lpbot.constants import SOL_MINT, USDC_MINT  # noqa: E402
from lpbot.execution.submission import SubmissionConfig  # noqa: E402
from lpbot.pool.tick_math import Q64  # noqa: E402
from lpbot.pool.whirlpool import PoolState  # noqa: E402

EXPIRY_HEIGHT = 1000


@dataclass
class LandingPlan:
    """How the fake ledger treats the next sent transaction."""
    confirm_after: Optional[float] = None   # seconds after send; None = never lands
    expire_after: Optional[float] = None    # seconds after send; None = height never passes expiry
    err: object = None                      # meta.err of the landed record
    fetch_delay: float = 0.0                # latency of every getTransaction call


class FakeLedger:
    """
    In-memory stand-in for SolanaRpc's submission surface.

    Each send consumes the next LandingPlan; getTransaction and getBlockHeight
    answer according to the plan of the matching signature.
    """

    def __init__(self, plans: Optional[List[LandingPlan]] = None):
        self.plans = list(plans or [])
        self.sent: List[str] = []
        self.sent_at: Dict[str, float] = {}
        self.plan_by_sig: Dict[str, LandingPlan] = {}
        self.send_failures = 0
        self.get_transaction_calls = 0
        self.blockhash_calls = 0

    async def get_latest_blockhash(self):
        self.blockhash_calls += 1
        # A new blockhash per call gives every re-signed attempt a new signature
        return str(Hash(bytes([self.blockhash_calls % 256]) * 32)), EXPIRY_HEIGHT

    async def send_raw_transaction(self, raw: bytes, skip_preflight: bool = True, max_retries: int = 20) -> str:
        if self.send_failures > 0:
            self.send_failures -= 1
            raise ConnectionError("send failed")
        sig = str(VersionedTransaction.from_bytes(raw).signatures[0])
        plan = self.plans.pop(0) if self.plans else LandingPlan()
        self.sent.append(sig)
        self.sent_at[sig] = asyncio.get_running_loop().time()
        self.plan_by_sig[sig] = plan
        return sig

    def _elapsed(self, sig: str) -> float:
        return asyncio.get_running_loop().time() - self.sent_at[sig]

    async def get_transaction(self, signature: str):
        self.get_transaction_calls += 1
        plan = self.plan_by_sig.get(signature)
        if plan is None:
            return None
        if plan.fetch_delay:
            await asyncio.sleep(plan.fetch_delay)
        if plan.confirm_after is None or self._elapsed(signature) < plan.confirm_after:
            return None
        return {
            "slot": 1,
            "meta": {
                "err": plan.err,
                "postBalances": [5_000_000_000],
                "postTokenBalances": [],
            },
        }

    async def get_block_height(self) -> int:
        if not self.sent:
            return EXPIRY_HEIGHT - 10
        sig = self.sent[-1]
        plan = self.plan_by_sig[sig]
        if plan.expire_after is not None and self._elapsed(sig) >= plan.expire_after:
            return EXPIRY_HEIGHT + 1
        return EXPIRY_HEIGHT - 1


@pytest.fixture
def wallet() -> Keypair:
    return Keypair()


@pytest.fixture
def fast_submission_config() -> SubmissionConfig:
    """Millisecond timings so watcher races finish quickly."""
    return SubmissionConfig(
        max_confirmation_sec=0.5,
        confirm_poll_sec=0.01,
        height_poll_sec=0.01,
        fetch_timeout_sec=0.1,
        send_attempts=3,
        send_retry_wait_sec=0.0,
        read_retry_wait_sec=0.0,
    )


# ---------------------------------------------------------------------------
# Synthetic account data
# ---------------------------------------------------------------------------

def make_pool_data(
    sqrt_price: int,
    tick_current_index: int,
    mint_a,
    mint_b,
    tick_spacing: int = 64,
    fee_rate: int = 3000,
    liquidity: int = 10 ** 12,
    vault_a=None,
    vault_b=None,
    rewards=(),
) -> bytes:
    """Whirlpool account bytes. `rewards` is a sequence of (mint, vault, emissions_x64)."""
    data = bytearray(653)
    struct.pack_into("<H", data, 41, tick_spacing)
    struct.pack_into("<H", data, 45, fee_rate)
    data[49:65] = liquidity.to_bytes(16, "little")
    data[65:81] = sqrt_price.to_bytes(16, "little")
    struct.pack_into("<i", data, 81, tick_current_index)
    data[101:133] = bytes(mint_a)
    data[133:165] = bytes(vault_a or Keypair().pubkey())
    data[181:213] = bytes(mint_b)
    data[213:245] = bytes(vault_b or Keypair().pubkey())
    for i, (mint, vault, emissions) in enumerate(rewards):
        base = 269 + i * 128
        data[base:base + 32] = bytes(mint)
        data[base + 32:base + 64] = bytes(vault)
        data[base + 96:base + 112] = emissions.to_bytes(16, "little")
    return bytes(data)


def make_position_data(
    whirlpool,
    position_mint,
    liquidity: int,
    tick_lower_index: int,
    tick_upper_index: int,
    fee_owed_a: int = 0,
    fee_owed_b: int = 0,
    reward_owed=(0, 0, 0),
) -> bytes:
    data = bytearray(216)
    data[8:40] = bytes(whirlpool)
    data[40:72] = bytes(position_mint)
    data[72:88] = liquidity.to_bytes(16, "little")
    struct.pack_into("<ii", data, 88, tick_lower_index, tick_upper_index)
    struct.pack_into("<Q", data, 112, fee_owed_a)
    struct.pack_into("<Q", data, 136, fee_owed_b)
    for i, owed in enumerate(reward_owed):
        struct.pack_into("<Q", data, 144 + i * 24 + 16, owed)
    return bytes(data)


def make_mint_data(decimals: int) -> bytes:
    data = bytearray(82)
    data[44] = decimals
    return bytes(data)


def make_token_account_data(mint, owner, amount: int) -> bytes:
    data = bytearray(165)
    data[0:32] = bytes(mint)
    data[32:64] = bytes(owner)
    struct.pack_into("<Q", data, 64, amount)
    return bytes(data)


def make_pool_state(price: float, decimals_a: int = 9, decimals_b: int = 6, address=None):
    """Decoded SOL/USDC pool priced at `price`."""
    sqrt_price = int(math.sqrt(price * 10 ** (decimals_b - decimals_a)) * Q64)
    return PoolState(
        address=address if address is not None else Keypair().pubkey(),
        tick_spacing=64,
        fee_rate=3000,
        liquidity=10 ** 12,
        sqrt_price=sqrt_price,
        tick_current_index=0,
        token_mint_a=SOL_MINT,
        token_vault_a=Keypair().pubkey(),
        token_mint_b=USDC_MINT,
        token_vault_b=Keypair().pubkey(),
        reward_infos=(),
        decimals_a=decimals_a,
        decimals_b=decimals_b,
    )
