"""
Execution context and structured logging context.

ExecutionContext bundles the process-wide resources (RPC connection, wallet,
persisted state, clients, metrics) so every component receives them
explicitly instead of reaching for module globals.

OpContext gives each logical operation (one control loop cycle, an open, a
close, a sweep) a trace_id so all related log entries can be correlated.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from functools import partialmethod
from typing import Any, Optional, TYPE_CHECKING

from lpbot.infra.logging_cfg import log_event

if TYPE_CHECKING:
    from solders.keypair import Keypair

    from lpbot.config.config import Settings
    from lpbot.execution.submission import TransactionSubmitter
    from lpbot.execution.swap_executor import SwapExecutor
    from lpbot.infra.coingecko import CoinGeckoClient
    from lpbot.infra.jupiter import JupiterClient
    from lpbot.infra.rpc import SolanaRpc
    from lpbot.monitoring.metrics import BotMetrics, HealthChecker
    from lpbot.pool.lifecycle import PositionLifecycleManager
    from lpbot.state.state_store import AtomicStateStore


class OpContext:
    """
    Trace scope for one logical operation.

    Every event logged through the scope carries its trace id, the pool
    address, the operation name and any tags. Child scopes (the close, open
    and sweep of a cycle) get their own trace id, point at the parent's and
    inherit its tags, so one grep on a cycle's trace id finds all of it.
    """

    def __init__(
        self,
        pool: str,
        operation: str = "cycle",
        trace_id: Optional[str] = None,
        parent_trace_id: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
        **tags: Any,
    ):
        self.pool = pool
        self.operation = operation
        self.trace_id = trace_id or uuid.uuid4().hex
        self.parent_trace_id = parent_trace_id
        self.logger = logger or logging.getLogger("lpbot")
        self.tags: dict[str, Any] = dict(tags)
        self._started = time.monotonic()

    def set_tag(self, key: str, value: Any) -> None:
        self.tags[key] = value

    def log(self, event: str, level: int = logging.INFO, **data: Any) -> None:
        fields: dict[str, Any] = {"trace_id": self.trace_id}
        if self.parent_trace_id:
            fields["parent_trace_id"] = self.parent_trace_id
        fields.update(pool=self.pool, operation=self.operation, elapsed_ms=round(self.elapsed_ms(), 1))
        fields.update(self.tags)
        fields.update(data)
        log_event(self.logger, event, level=level, **fields)

    debug = partialmethod(log, level=logging.DEBUG)
    info = partialmethod(log, level=logging.INFO)
    warning = partialmethod(log, level=logging.WARNING)
    error = partialmethod(log, level=logging.ERROR)

    def child(self, operation: str) -> "OpContext":
        return OpContext(
            self.pool,
            operation=operation,
            parent_trace_id=self.trace_id,
            logger=self.logger,
            **self.tags,
        )

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self._started) * 1000.0


@dataclass
class ExecutionContext:
    """Everything a control loop cycle needs, built once in main()."""

    settings: "Settings"
    wallet: "Keypair"
    rpc: "SolanaRpc"
    jupiter: "JupiterClient"
    submitter: "TransactionSubmitter"
    swap_executor: "SwapExecutor"
    lifecycle: "PositionLifecycleManager"
    store: "AtomicStateStore"
    metrics: Optional["BotMetrics"] = None
    health: Optional["HealthChecker"] = None
    price_feed: Optional["CoinGeckoClient"] = None

    async def close(self) -> None:
        """Close network clients owned by the context."""
        await self.rpc.close()
        await self.jupiter.close()
        if self.price_feed is not None:
            await self.price_feed.close()
