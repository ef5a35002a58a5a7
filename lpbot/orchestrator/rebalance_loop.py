"""
RebalanceLoop: the perpetual control loop keeping one position centred on
the pool price.

Cycle:
    no persisted position  -> open, persist {address, openPrice}, sweep
    price inside dead-band -> hold
    price outside dead-band -> close, open at fresh boundaries, persist, sweep

Ordering within a cycle:
    close confirmed  ->  open confirmed  ->  state written  ->  next poll

The state file is never written before the paired on-chain operation is
confirmed. A crash between close and open leaves the old record in place;
on the next start the recorded position is looked up on chain and, when its
account is gone, the record is dropped and a fresh position opened. Fatal
errors are logged and re-raised; an external supervisor restarts the process.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import traceback
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, List, Optional, TYPE_CHECKING

from solders.pubkey import Pubkey

from lpbot.constants import MIN_SOL_BALANCE_RAW, SOL_MINT, USDC_MINT
from lpbot.context import OpContext
from lpbot.execution.swap_executor import SwapMode, SwapRequest
from lpbot.pool.balances import Balances
from lpbot.pool.quote import Boundary, get_boundaries
from lpbot.state.state_store import PersistedState, Position

if TYPE_CHECKING:
    from lpbot.context import ExecutionContext
    from lpbot.pool.lifecycle import OpenedPosition
    from lpbot.pool.whirlpool import PoolState

log = logging.getLogger("lpbot")


class CycleAction(Enum):
    """What a cycle did."""
    OPENED = auto()
    HOLD = auto()
    REBALANCED = auto()


@dataclass
class CycleResult:
    action: CycleAction
    price: float
    boundary: Boundary
    position_address: Optional[str] = None
    duration_ms: float = 0.0


@dataclass
class RebalanceLoopConfig:
    """Configuration for RebalanceLoop."""
    poll_interval_sec: float = 60.0

    # Range of a newly opened position, as fractions of the price
    lower_boundary_pct: float = 0.05
    upper_boundary_pct: float = 0.05

    # In-band tolerance around the open price
    deadband_lower_pct: float = 0.045
    deadband_upper_pct: float = 0.045

    sweep_enabled: bool = True
    min_sweep_raw: int = 1000
    min_sol_balance_raw: int = MIN_SOL_BALANCE_RAW
    stable_mint: Pubkey = USDC_MINT

    log_event_callback: Optional[Callable[..., None]] = None

    @classmethod
    def from_settings(cls, settings: Any) -> "RebalanceLoopConfig":
        return cls(
            poll_interval_sec=settings.poll_interval_sec,
            lower_boundary_pct=settings.lower_boundary_pct,
            upper_boundary_pct=settings.upper_boundary_pct,
            deadband_lower_pct=settings.deadband_lower_pct,
            deadband_upper_pct=settings.deadband_upper_pct,
            sweep_enabled=settings.sweep_enabled,
            min_sweep_raw=settings.min_sweep_raw,
            min_sol_balance_raw=settings.min_sol_balance_raw,
            stable_mint=Pubkey.from_string(settings.stable_mint),
        )


def is_in_band(price: float, open_price: float, lower_pct: float, upper_pct: float) -> bool:
    """True when `price` lies in [open*(1-lower), open*(1+upper)]."""
    return open_price * (1 - lower_pct) <= price <= open_price * (1 + upper_pct)


class RebalanceLoop:
    """
    Drives the position lifecycle from the persisted state.

    Usage:
        loop = RebalanceLoop(ctx, RebalanceLoopConfig.from_settings(ctx.settings))
        await loop.run()            # forever
        result = await loop.run_cycle()   # one decision
    """

    def __init__(self, ctx: "ExecutionContext", config: Optional[RebalanceLoopConfig] = None) -> None:
        self.ctx = ctx
        self.lifecycle = ctx.lifecycle
        self.store = ctx.store
        self.swap_executor = ctx.swap_executor
        self.metrics = ctx.metrics
        self.health = ctx.health
        self.config = config or RebalanceLoopConfig()
        self._state: Optional[PersistedState] = None
        self._running = True
        self._cycle_count = 0
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.log(level, json.dumps(payload, default=str))

    @property
    def state(self) -> Optional[PersistedState]:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> None:
        self._running = False
        self._log_event("rebalance_loop_stop")

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        self._log_event(
            "rebalance_loop_start",
            whirlpool=str(self.lifecycle.whirlpool_address),
            poll_interval_sec=self.config.poll_interval_sec,
        )
        while self._running:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log_event(
                    "rebalance_fatal",
                    level=logging.ERROR,
                    error=repr(exc),
                    traceback=traceback.format_exc(),
                )
                raise
            if not self._running:
                break
            await asyncio.sleep(self.config.poll_interval_sec)

    async def run_cycle(self) -> CycleResult:
        """One poll: open, hold or rebalance."""
        self._cycle_count += 1
        op = OpContext(str(self.lifecycle.whirlpool_address), cycle=self._cycle_count)
        start = time.monotonic()

        if self._state is None:
            self._state = await self._load_state()

        position = self._state.position
        if position is None:
            pool = await self.lifecycle.fetch_pool()
            boundary = self._boundaries(pool)
            op.info("no_position", **boundary.to_dict())
            opened = await self._open(pool, boundary, op)
            await self._persist(opened, boundary.price)
            await self._sweep(opened.balances, op)
            result = CycleResult(CycleAction.OPENED, boundary.price, boundary, opened.address)
        else:
            op.set_tag("position", position.address)
            self.lifecycle.mark_open()
            pool = await self.lifecycle.fetch_pool()
            boundary = self._boundaries(pool)
            price = boundary.price
            if is_in_band(price, position.open_price, self.config.deadband_lower_pct, self.config.deadband_upper_pct):
                op.debug("in_band", price=price, open_price=position.open_price)
                result = CycleResult(CycleAction.HOLD, price, boundary, position.address)
            else:
                result = await self._rebalance(position, boundary, op)

        result.duration_ms = (time.monotonic() - start) * 1000.0
        self._record(result)
        op.info(
            "cycle_completed",
            action=result.action.name,
            price=result.price,
            lower_boundary=result.boundary.lower_boundary,
            upper_boundary=result.boundary.upper_boundary,
            position=result.position_address,
            duration_ms=result.duration_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _load_state(self) -> PersistedState:
        state = await self.store.read()
        self._log_event("state_loaded", state=state.to_dict())
        if state.position is None:
            return state
        if await self.lifecycle.fetch_position(state.position.address) is None:
            # Closed before the replacement open was recorded
            self._log_event(
                "stale_position_dropped",
                level=logging.WARNING,
                address=state.position.address,
                open_price=state.position.open_price,
            )
            return PersistedState()
        return state

    def _boundaries(self, pool: "PoolState") -> Boundary:
        return get_boundaries(pool, self.config.lower_boundary_pct, self.config.upper_boundary_pct)

    async def _rebalance(self, position: Position, decision: Boundary, op: OpContext) -> CycleResult:
        op.info(
            "out_of_band",
            price=decision.price,
            open_price=position.open_price,
            deadband=[self.config.deadband_lower_pct, self.config.deadband_upper_pct],
        )
        close_op = op.child("close")
        closed = await self.lifecycle.close_position(position.address)
        close_op.info("closed", address=closed.address, signature=closed.signature, attempts=closed.attempts)

        pool = await self.lifecycle.fetch_pool()
        fresh = self._boundaries(pool)
        opened = await self._open(pool, fresh, op)
        await self._persist(opened, decision.price)
        await self._sweep(opened.balances, op)
        return CycleResult(CycleAction.REBALANCED, decision.price, fresh, opened.address)

    async def _open(self, pool: "PoolState", boundary: Boundary, op: OpContext) -> "OpenedPosition":
        open_op = op.child("open")
        opened = await self.lifecycle.open_position(pool, boundary)
        op.set_tag("position", opened.address)
        open_op.info(
            "opened",
            position=opened.address,
            tick_lower=opened.tick_lower_index,
            tick_upper=opened.tick_upper_index,
            **boundary.to_dict(),
        )
        return opened

    async def _persist(self, opened: "OpenedPosition", open_price: float) -> None:
        state = PersistedState(
            position=Position(
                address=opened.address,
                open_price=open_price,
                tick_lower_index=opened.tick_lower_index,
                tick_upper_index=opened.tick_upper_index,
            )
        )
        await self.store.write(state)
        self._state = state

    def sweep_requests(self, balances: Balances) -> List[SwapRequest]:
        """ExactIn swaps moving every non-stable surplus into the stable asset."""
        stable = str(self.config.stable_mint)
        requests: List[SwapRequest] = []
        for mint, amount in balances.items():
            if mint == stable:
                continue
            surplus = amount - self.config.min_sol_balance_raw if mint == str(SOL_MINT) else amount
            if surplus <= self.config.min_sweep_raw:
                continue
            requests.append(SwapRequest(mint, stable, surplus, SwapMode.EXACT_IN))
        return requests

    async def _sweep(self, balances: Balances, op: OpContext) -> None:
        if not self.config.sweep_enabled:
            return
        requests = self.sweep_requests(balances)
        if not requests:
            return
        sweep_op = op.child("sweep")
        for request in requests:
            result = await self.swap_executor.execute_swap(request)
            sweep_op.info(
                "swept",
                input_mint=request.input_mint,
                amount_raw=request.amount_raw,
                cycles=result.cycles,
                signatures=result.signatures,
            )

    def _record(self, result: CycleResult) -> None:
        if self.metrics is not None:
            self.metrics.cycles.labels(action=result.action.name.lower()).inc()
            self.metrics.price.set(result.price)
            self.metrics.lower_boundary.set(result.boundary.lower_boundary)
            self.metrics.upper_boundary.set(result.boundary.upper_boundary)
            if self._state is not None and self._state.position is not None:
                self.metrics.open_price.set(self._state.position.open_price)
            self.metrics.last_cycle_ts.set(time.time())
        if self.health is not None:
            self.health.heartbeat(
                action=result.action.name,
                price=result.price,
                position=result.position_address,
            )
