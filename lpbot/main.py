"""
Entry point wiring all components.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from solders.pubkey import Pubkey

from lpbot.config.config import Settings
from lpbot.context import ExecutionContext
from lpbot.errors import ConfigError
from lpbot.execution.submission import SubmissionConfig, TransactionSubmitter
from lpbot.execution.swap_executor import SwapExecutor, SwapExecutorConfig
from lpbot.infra.coingecko import CoinGeckoClient
from lpbot.infra.jupiter import JupiterClient
from lpbot.infra.logging_cfg import build_logger, log_event
from lpbot.infra.rpc import SolanaRpc
from lpbot.monitoring.metrics import BotMetrics, HealthChecker, start_metrics_server
from lpbot.orchestrator.rebalance_loop import RebalanceLoop, RebalanceLoopConfig
from lpbot.pool.lifecycle import LifecycleConfig, PositionLifecycleManager
from lpbot.state.state_store import AtomicStateStore


def build_context(cfg: Settings) -> ExecutionContext:
    """Construct every component from settings; nothing is global."""
    wallet = cfg.resolve_signer()
    metrics = BotMetrics()
    health = HealthChecker(stale_after_sec=max(600.0, cfg.poll_interval_sec * 5))

    rpc = SolanaRpc(cfg.rpc_url, timeout=cfg.http_timeout, commitment=cfg.commitment)
    jupiter = JupiterClient(cfg.swap_api_url, slippage_bps=cfg.swap_slippage_bps, timeout=cfg.http_timeout)
    price_feed = CoinGeckoClient(timeout=cfg.http_timeout) if cfg.coingecko_id else None

    submitter = TransactionSubmitter(
        rpc,
        wallet,
        SubmissionConfig(max_confirmation_sec=cfg.max_confirmation_sec),
        metrics=metrics,
    )
    swaps = SwapExecutor(jupiter, submitter, SwapExecutorConfig(), metrics=metrics)
    lifecycle = PositionLifecycleManager(
        rpc,
        submitter,
        swaps,
        Pubkey.from_string(cfg.whirlpool_address),
        LifecycleConfig(
            position_size_usd=cfg.position_size_usd,
            slippage_bps=cfg.slippage_bps,
            stable_mint=Pubkey.from_string(cfg.stable_mint),
            min_sol_balance_raw=cfg.min_sol_balance_raw,
            coingecko_id=cfg.coingecko_id,
        ),
        price_feed=price_feed,
        metrics=metrics,
    )
    return ExecutionContext(
        settings=cfg,
        wallet=wallet,
        rpc=rpc,
        jupiter=jupiter,
        submitter=submitter,
        swap_executor=swaps,
        lifecycle=lifecycle,
        store=AtomicStateStore(cfg.state_path),
        metrics=metrics,
        health=health,
        price_feed=price_feed,
    )


async def main() -> None:
    cfg = Settings.load()
    log = build_logger("lpbot", level=getattr(logging, cfg.log_level, logging.INFO), file_path=cfg.log_file)
    ctx = build_context(cfg)

    srv = None
    if cfg.metrics_port:
        srv = await start_metrics_server(ctx.metrics, cfg.metrics_port, health_checker=ctx.health)

    log_event(
        log,
        "startup",
        wallet=str(ctx.wallet.pubkey()),
        whirlpool=cfg.whirlpool_address,
        position_size_usd=cfg.position_size_usd,
        metrics_port=cfg.metrics_port,
    )

    loop = asyncio.get_running_loop()
    rebalancer = RebalanceLoop(ctx, RebalanceLoopConfig.from_settings(cfg))
    run_task = asyncio.create_task(rebalancer.run())

    def stop_all() -> None:
        # Cancellation lands at the next suspension point
        rebalancer.stop()
        if not run_task.done():
            run_task.cancel()

    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_all)
        except NotImplementedError:
            pass

    try:
        await run_task
    except asyncio.CancelledError:
        log.info("Shutdown signal received, cleaning up...")
    finally:
        log.info("Closing servers and connections...")
        if srv is not None:
            srv.close()
            await srv.wait_closed()
        await ctx.close()
        log.info("Shutdown complete")


def run() -> None:
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nBot stopped by user")
    except ConfigError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        sys.exit(2)
    sys.exit(0)


if __name__ == "__main__":
    run()
