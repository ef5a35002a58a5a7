"""
PositionLifecycleManager: open and close the bot's single Whirlpool position.

State Diagram:

    NO_POSITION ──> OPENING ──> OPEN ──> CLOSING ──> NO_POSITION
                       │                    │
                       └─> NO_POSITION      └─> OPEN (close failed)

Open:
    ensure tick arrays -> boundary ticks -> deposit quote -> wallet balances
    -> ExactOut swaps from the stable asset for any deficit -> one composite
    transaction (open position, token account setup, SOL wrap, deposit,
    cleanup) -> post-transaction balances. A slippage rejection of the
    deposit requotes against a fresh pool price, tops up any new deficit and
    resubmits with the same ticks and position mint; expiry resubmits.

Close:
    one transaction that updates fees and rewards, collects fees and rewards,
    withdraws all liquidity and closes the position. A slippage rejection of
    the withdrawal rebuilds only the withdrawal against a fresh pool price;
    expiry rebuilds everything from fresh state; any other rejection is fatal.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass, replace
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from lpbot.constants import (
    MIN_SOL_BALANCE_RAW,
    SOL_MINT,
    USDC_MINT,
    WHIRLPOOL_SLIPPAGE_ERROR,
    WHIRLPOOL_TOKEN_MAX_ERROR,
)
from lpbot.errors import InvariantViolation, LpBotError, TransactionFailedError
from lpbot.execution.swap_executor import SwapMode, SwapRequest
from lpbot.infra.retry import retry
from lpbot.pool.balances import Balances, parse_post_balances, read_wallet_balances
from lpbot.pool.quote import Boundary
from lpbot.pool.spl_token import (
    associated_token_address,
    plan_token_accounts,
    wrap_sol_ixs,
)
from lpbot.pool.tick_math import (
    IncreaseLiquidityQuote,
    decrease_liquidity_quote,
    increase_liquidity_quote,
    initializable_tick_index,
    price_to_tick_index,
    tick_array_start_index,
    tick_index_to_price,
)
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
    tick_array_address,
    tick_array_for_tick,
    update_fees_and_rewards_ix,
)

if TYPE_CHECKING:
    from lpbot.execution.submission import TransactionSubmitter
    from lpbot.execution.swap_executor import SwapExecutor
    from lpbot.infra.coingecko import CoinGeckoClient
    from lpbot.infra.rpc import SolanaRpc
    from lpbot.monitoring.metrics import BotMetrics

log = logging.getLogger("lpbot")


class PositionPhase(Enum):
    NO_POSITION = auto()
    OPENING = auto()
    OPEN = auto()
    CLOSING = auto()


VALID_TRANSITIONS: Dict[PositionPhase, set] = {
    PositionPhase.NO_POSITION: {PositionPhase.OPENING, PositionPhase.OPEN},
    PositionPhase.OPENING: {PositionPhase.OPEN, PositionPhase.NO_POSITION},
    PositionPhase.OPEN: {PositionPhase.CLOSING},
    PositionPhase.CLOSING: {PositionPhase.NO_POSITION, PositionPhase.OPEN},
}


@dataclass
class LifecycleConfig:
    """Configuration for PositionLifecycleManager."""
    position_size_usd: float = 1.0
    slippage_bps: int = 25
    stable_mint: Pubkey = USDC_MINT
    min_sol_balance_raw: int = MIN_SOL_BALANCE_RAW
    # USD price id of token A, needed only when neither token is the stable asset
    coingecko_id: Optional[str] = None
    read_retry_wait_sec: float = 0.5
    slippage_retry_backoff_sec: float = 0.5
    log_event_callback: Optional[Callable[..., None]] = None


@dataclass(frozen=True)
class DepositQuote:
    tick_lower_index: int
    tick_upper_index: int
    liquidity: IncreaseLiquidityQuote


@dataclass(frozen=True)
class OpenedPosition:
    address: str
    mint: str
    tick_lower_index: int
    tick_upper_index: int
    balances: Balances


@dataclass(frozen=True)
class ClosedPosition:
    address: str
    balances: Balances
    signature: str
    attempts: int


@dataclass
class ClosePlan:
    """
    Instructions of a close transaction.

    The withdrawal is kept separate so a slippage rejection can replace it
    without rebuilding the fee and reward instructions.
    """
    prefix: List[Instruction]
    decrease: Instruction
    suffix: List[Instruction]
    accounts: LiquidityAccounts
    position: PositionData
    mints: List[Pubkey]

    def instructions(self) -> List[Instruction]:
        return [*self.prefix, self.decrease, *self.suffix]


class PositionLifecycleManager:
    """
    Opens and closes the single position on one Whirlpool.

    Usage:
        manager = PositionLifecycleManager(rpc, submitter, swaps, pool_address, config)

        pool = await manager.fetch_pool()
        opened = await manager.open_position(pool, get_boundaries(pool, 0.05, 0.05))
        closed = await manager.close_position(opened.address)
    """

    def __init__(
        self,
        rpc: "SolanaRpc",
        submitter: "TransactionSubmitter",
        swap_executor: "SwapExecutor",
        whirlpool_address: Pubkey,
        config: Optional[LifecycleConfig] = None,
        price_feed: Optional["CoinGeckoClient"] = None,
        metrics: Optional["BotMetrics"] = None,
    ) -> None:
        self.rpc = rpc
        self.submitter = submitter
        self.swap_executor = swap_executor
        self.whirlpool_address = whirlpool_address
        self.config = config or LifecycleConfig()
        self.price_feed = price_feed
        self.metrics = metrics
        self.phase = PositionPhase.NO_POSITION
        self._decimals: Optional[Tuple[int, int]] = None
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.log(level, json.dumps(payload, default=str))

    @property
    def owner(self) -> Pubkey:
        return self.submitter.wallet.pubkey()

    def _transition(self, to: PositionPhase, reason: str = "") -> None:
        if to not in VALID_TRANSITIONS[self.phase]:
            raise InvariantViolation(f"invalid position transition {self.phase.name} -> {to.name}")
        self._log_event("position_phase", from_phase=self.phase.name, to_phase=to.name, reason=reason)
        self.phase = to

    def mark_open(self) -> None:
        """Adopt a position restored from persisted state."""
        if self.phase is PositionPhase.NO_POSITION:
            self._transition(PositionPhase.OPEN, reason="restored")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _read(self, fn, label: str):
        return await retry(fn, self.config.read_retry_wait_sec, label=label)

    async def fetch_pool(self) -> PoolState:
        account = await self._read(lambda: self.rpc.get_account_info(self.whirlpool_address), "get_pool")
        if account is None:
            raise InvariantViolation(f"whirlpool {self.whirlpool_address} not found")
        pool = PoolState.decode(self.whirlpool_address, account.data)
        if self._decimals is None:
            mints = [pool.token_mint_a, pool.token_mint_b]
            accounts = await self._read(lambda: self.rpc.get_multiple_accounts(mints), "get_mints")
            if any(a is None for a in accounts):
                raise InvariantViolation(f"mint accounts of whirlpool {self.whirlpool_address} not found")
            self._decimals = (decode_mint_decimals(accounts[0].data), decode_mint_decimals(accounts[1].data))
        return replace(pool, decimals_a=self._decimals[0], decimals_b=self._decimals[1])

    async def fetch_position(self, address: str | Pubkey) -> Optional[PositionData]:
        pubkey = address if isinstance(address, Pubkey) else Pubkey.from_string(address)
        account = await self._read(lambda: self.rpc.get_account_info(pubkey), "get_position")
        if account is None or not account.data:
            return None
        return PositionData.decode(pubkey, account.data)

    # ------------------------------------------------------------------
    # Open
    # ------------------------------------------------------------------

    def boundary_ticks(self, pool: PoolState, boundary: Boundary) -> Tuple[int, int]:
        lower = initializable_tick_index(
            price_to_tick_index(boundary.lower_boundary, pool.decimals_a, pool.decimals_b),
            pool.tick_spacing,
        )
        upper = initializable_tick_index(
            price_to_tick_index(boundary.upper_boundary, pool.decimals_a, pool.decimals_b),
            pool.tick_spacing,
        )
        if upper <= lower:
            upper = lower + pool.tick_spacing
        return lower, upper

    async def deposit_quote(self, pool: PoolState, tick_lower: int, tick_upper: int) -> DepositQuote:
        """
        Liquidity for half the position size in one token; the quote then
        determines how much of the other token the deposit takes.
        """
        half_usd = self.config.position_size_usd / 2
        stable = self.config.stable_mint
        if pool.token_mint_a == stable:
            input_is_a, amount = True, math.floor(half_usd * 10 ** pool.decimals_a)
        elif pool.token_mint_b == stable:
            input_is_a, amount = False, math.floor(half_usd * 10 ** pool.decimals_b)
        else:
            if self.price_feed is None or not self.config.coingecko_id:
                raise LpBotError("pool has no stable token and no USD price source is configured")
            token_id = self.config.coingecko_id
            price_usd = await self._read(lambda: self.price_feed.price_usd(token_id), "coingecko_price")
            input_is_a, amount = True, math.floor(half_usd / price_usd * 10 ** pool.decimals_a)

        quote = increase_liquidity_quote(
            input_is_a, amount, pool.sqrt_price, tick_lower, tick_upper, self.config.slippage_bps
        )
        if quote.liquidity <= 0:
            raise LpBotError(f"deposit of {amount} raw yields no liquidity in [{tick_lower}, {tick_upper}]")
        return DepositQuote(tick_lower, tick_upper, quote)

    def required_swaps(self, pool: PoolState, balances: Balances, quote: DepositQuote) -> List[SwapRequest]:
        """ExactOut swaps from the stable asset covering each token deficit."""
        stable = str(self.config.stable_mint)
        swaps: List[SwapRequest] = []
        for mint, needed in (
            (str(pool.token_mint_a), quote.liquidity.token_max_a),
            (str(pool.token_mint_b), quote.liquidity.token_max_b),
        ):
            if mint == stable:
                continue
            deficit = needed - balances.get(mint, 0)
            if deficit > 0:
                swaps.append(SwapRequest(stable, mint, deficit, SwapMode.EXACT_OUT))
        return swaps

    async def ensure_tick_arrays(self, pool: PoolState, tick_indexes: Sequence[int]) -> List[int]:
        """Initialize missing tick arrays covering `tick_indexes`; returns their starts."""
        starts = sorted({tick_array_start_index(t, pool.tick_spacing) for t in tick_indexes})
        addresses = [tick_array_address(pool.address, s) for s in starts]
        accounts = await self._read(lambda: self.rpc.get_multiple_accounts(addresses), "get_tick_arrays")
        missing = [s for s, a in zip(starts, accounts) if a is None]
        if not missing:
            return []

        ixs = [initialize_tick_array_ix(pool.address, self.owner, s) for s in missing]
        self._log_event("tick_arrays_initializing", starts=missing)

        async def build():
            return await self.submitter.sign(ixs)

        await self.submitter.submit_until_confirmed(build, label="init_tick_arrays")
        return missing

    async def open_position(self, pool: PoolState, boundary: Boundary) -> OpenedPosition:
        self._transition(PositionPhase.OPENING, reason="open_requested")
        try:
            opened = await self._open(pool, boundary)
        except BaseException:
            self._transition(PositionPhase.NO_POSITION, reason="open_failed")
            raise
        self._transition(PositionPhase.OPEN, reason="open_confirmed")
        return opened

    async def _open(self, pool: PoolState, boundary: Boundary) -> OpenedPosition:
        tick_lower, tick_upper = self.boundary_ticks(pool, boundary)
        await self.ensure_tick_arrays(pool, [pool.tick_current_index, tick_lower, tick_upper])

        quote = await self.deposit_quote(pool, tick_lower, tick_upper)
        mints = [pool.token_mint_a, pool.token_mint_b]
        balances = await self._fund_deposit(pool, quote)
        self._log_event(
            "open_position_quote",
            price=boundary.price,
            lower_boundary=boundary.lower_boundary,
            upper_boundary=boundary.upper_boundary,
            tick_lower=tick_lower,
            tick_upper=tick_upper,
            price_lower=tick_index_to_price(tick_lower, pool.decimals_a, pool.decimals_b),
            price_upper=tick_index_to_price(tick_upper, pool.decimals_a, pool.decimals_b),
            liquidity=quote.liquidity.liquidity,
            token_max_a=quote.liquidity.token_max_a,
            token_max_b=quote.liquidity.token_max_b,
            balances=balances,
        )

        position_mint = Keypair()
        attempts = 0
        while True:
            attempts += 1
            instructions, position = await self._open_instructions(pool, quote, position_mint)
            attempt = await self.submitter.sign(instructions, signers=[position_mint])
            outcome = await self.submitter.submit(attempt, label="open_position")

            if outcome.is_success:
                break

            if outcome.is_expired:
                self._log_event("open_expired", level=logging.WARNING, attempts=attempts)
                continue

            if outcome.error is not None and outcome.error.is_custom(WHIRLPOOL_TOKEN_MAX_ERROR):
                self._log_event(
                    "open_slippage_exceeded",
                    level=logging.WARNING,
                    attempts=attempts,
                    error=outcome.error.to_dict(),
                )
                if self.metrics is not None:
                    self.metrics.slippage_retries.labels(operation="open_position").inc()
                # Same ticks and position mint; deposit and wrap follow the new price
                pool = await self.fetch_pool()
                quote = await self.deposit_quote(pool, tick_lower, tick_upper)
                await self._fund_deposit(pool, quote)
                await asyncio.sleep(self.config.slippage_retry_backoff_sec)
                continue

            raise TransactionFailedError(outcome, "open_position")

        post_balances = parse_post_balances(outcome.meta or {}, self.owner, mints)
        opened = OpenedPosition(
            address=str(position),
            mint=str(position_mint.pubkey()),
            tick_lower_index=tick_lower,
            tick_upper_index=tick_upper,
            balances=post_balances,
        )
        self._log_event(
            "position_opened",
            address=opened.address,
            tick_lower=tick_lower,
            tick_upper=tick_upper,
            attempts=attempts,
            balances=post_balances,
        )
        return opened

    async def _fund_deposit(self, pool: PoolState, quote: DepositQuote) -> Balances:
        """Swap in whatever the wallet lacks for `quote`; returns the balances read before swapping."""
        balances = await read_wallet_balances(
            self.rpc, self.owner, [pool.token_mint_a, pool.token_mint_b],
            self.config.min_sol_balance_raw, self.config.read_retry_wait_sec,
        )
        for swap in self.required_swaps(pool, balances, quote):
            await self.swap_executor.execute_swap(swap)
        return balances

    async def _open_instructions(
        self,
        pool: PoolState,
        quote: DepositQuote,
        position_mint: Keypair,
    ) -> Tuple[List[Instruction], Pubkey]:
        owner = self.owner
        mint = position_mint.pubkey()
        position_token_account = associated_token_address(owner, mint)
        open_ix, position = open_position_ix(
            owner, owner, pool.address, mint, position_token_account,
            quote.tick_lower_index, quote.tick_upper_index,
        )

        token_mints = [pool.token_mint_a, pool.token_mint_b]
        plan = await self._token_account_plan(token_mints)

        wrap: List[Instruction] = []
        for token_mint, amount in zip(token_mints, (quote.liquidity.token_max_a, quote.liquidity.token_max_b)):
            if token_mint == SOL_MINT and amount > 0:
                wrap.extend(wrap_sol_ixs(owner, amount))

        accounts = self._liquidity_accounts(
            pool, position, position_token_account, quote.tick_lower_index, quote.tick_upper_index
        )
        deposit = increase_liquidity_ix(
            accounts,
            quote.liquidity.liquidity,
            quote.liquidity.token_max_a,
            quote.liquidity.token_max_b,
        )
        return [open_ix, *plan.setup, *wrap, deposit, *plan.cleanup], position

    async def _token_account_plan(self, mints: Sequence[Pubkey]):
        owner = self.owner
        atas = [associated_token_address(owner, m) for m in mints]
        existing = await self._read(lambda: self.rpc.get_multiple_accounts(atas), "get_token_accounts")
        return plan_token_accounts(owner, mints, existing)

    def _liquidity_accounts(
        self,
        pool: PoolState,
        position: Pubkey,
        position_token_account: Pubkey,
        tick_lower: int,
        tick_upper: int,
    ) -> LiquidityAccounts:
        owner = self.owner
        return LiquidityAccounts(
            whirlpool=pool.address,
            position_authority=owner,
            position=position,
            position_token_account=position_token_account,
            token_owner_account_a=associated_token_address(owner, pool.token_mint_a),
            token_owner_account_b=associated_token_address(owner, pool.token_mint_b),
            token_vault_a=pool.token_vault_a,
            token_vault_b=pool.token_vault_b,
            tick_array_lower=tick_array_for_tick(pool.address, tick_lower, pool.tick_spacing)[0],
            tick_array_upper=tick_array_for_tick(pool.address, tick_upper, pool.tick_spacing)[0],
        )

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    async def close_position(self, address: str) -> ClosedPosition:
        self._transition(PositionPhase.CLOSING, reason="close_requested")
        try:
            closed = await self._close(address)
        except BaseException:
            self._transition(PositionPhase.OPEN, reason="close_failed")
            raise
        self._transition(PositionPhase.NO_POSITION, reason="close_confirmed")
        return closed

    async def _close(self, address: str) -> ClosedPosition:
        plan = await self.build_close_plan(address)
        attempts = 0
        while True:
            attempts += 1
            attempt = await self.submitter.sign(plan.instructions())
            outcome = await self.submitter.submit(attempt, label="close_position")

            if outcome.is_success:
                balances = parse_post_balances(outcome.meta or {}, self.owner, plan.mints)
                self._log_event(
                    "position_closed",
                    address=address,
                    signature=outcome.signature,
                    attempts=attempts,
                    balances=balances,
                )
                return ClosedPosition(address, balances, outcome.signature, attempts)

            if outcome.is_expired:
                self._log_event("close_expired", level=logging.WARNING, address=address, attempts=attempts)
                plan = await self.build_close_plan(address)
                continue

            if outcome.error is not None and outcome.error.is_custom(WHIRLPOOL_SLIPPAGE_ERROR):
                self._log_event(
                    "close_slippage_exceeded",
                    level=logging.WARNING,
                    address=address,
                    attempts=attempts,
                    error=outcome.error.to_dict(),
                )
                if self.metrics is not None:
                    self.metrics.slippage_retries.labels(operation="close_position").inc()
                pool = await self.fetch_pool()
                plan.decrease = self._decrease_ix(pool, plan.position, plan.accounts)
                await asyncio.sleep(self.config.slippage_retry_backoff_sec)
                continue

            raise TransactionFailedError(outcome, "close_position")

    async def build_close_plan(self, address: str) -> ClosePlan:
        """All close instructions, built from freshly fetched position and pool."""
        position = await self.fetch_position(address)
        if position is None:
            raise InvariantViolation(f"position {address} not found on chain")
        pool = await self.fetch_pool()
        if position.whirlpool != pool.address:
            raise InvariantViolation(f"position {address} belongs to whirlpool {position.whirlpool}")

        owner = self.owner
        position_token_account = associated_token_address(owner, position.position_mint)
        accounts = self._liquidity_accounts(
            pool, position.address, position_token_account,
            position.tick_lower_index, position.tick_upper_index,
        )

        reward_indexes = [
            i for i, info in enumerate(pool.reward_infos)
            if info.initialized
            and (position.reward_infos[i].amount_owed > 0 or info.emissions_per_second_x64 > 0)
        ]
        reward_mints = [pool.reward_infos[i].mint for i in reward_indexes]
        token_plan = await self._token_account_plan([pool.token_mint_a, pool.token_mint_b, *reward_mints])

        rewards = [
            collect_reward_ix(
                accounts,
                associated_token_address(owner, pool.reward_infos[i].mint),
                pool.reward_infos[i].vault,
                i,
            )
            for i in reward_indexes
        ]
        prefix = [
            update_fees_and_rewards_ix(accounts),
            *token_plan.setup,
            collect_fees_ix(accounts),
            *rewards,
        ]
        suffix = [
            close_position_ix(owner, owner, position.address, position.position_mint, position_token_account),
            *token_plan.cleanup,
        ]
        return ClosePlan(
            prefix=prefix,
            decrease=self._decrease_ix(pool, position, accounts),
            suffix=suffix,
            accounts=accounts,
            position=position,
            mints=[pool.token_mint_a, pool.token_mint_b],
        )

    def _decrease_ix(self, pool: PoolState, position: PositionData, accounts: LiquidityAccounts) -> Instruction:
        quote = decrease_liquidity_quote(
            position.liquidity,
            pool.sqrt_price,
            position.tick_lower_index,
            position.tick_upper_index,
            self.config.slippage_bps,
        )
        return decrease_liquidity_ix(accounts, quote.liquidity, quote.token_min_a, quote.token_min_b)
