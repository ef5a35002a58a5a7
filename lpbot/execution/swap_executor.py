"""
SwapExecutor: acquire tokens through the swap aggregator until it succeeds.

Each cycle signs the swap transactions (setup, swap, cleanup) with the
wallet and submits them in order, each confirmed on its own. Until the swap
stage lands, expiry and slippage rejections refetch a fresh route at once
and any other failure backs off first. Once the swap stage has confirmed it
is never repeated: only the remaining stages are re-signed and resubmitted.
Read-only fetches go through the retry primitive; submissions go through
the TransactionSubmitter.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

from lpbot.constants import JUPITER_SLIPPAGE_ERRORS
from lpbot.errors import TransactionFailedError
from lpbot.infra.retry import retry

if TYPE_CHECKING:
    from lpbot.execution.submission import SubmissionOutcome, TransactionSubmitter
    from lpbot.infra.jupiter import JupiterClient, SwapTransactions
    from lpbot.monitoring.metrics import BotMetrics

log = logging.getLogger("lpbot")


class SwapMode(str, Enum):
    EXACT_IN = "ExactIn"
    EXACT_OUT = "ExactOut"


@dataclass(frozen=True)
class SwapRequest:
    input_mint: str
    output_mint: str
    amount_raw: int
    mode: SwapMode = SwapMode.EXACT_IN

    def __post_init__(self) -> None:
        if self.amount_raw <= 0:
            raise ValueError(f"swap amount must be positive, got {self.amount_raw}")
        if self.input_mint == self.output_mint:
            raise ValueError("swap input and output mints must differ")


@dataclass
class SwapExecutorConfig:
    """Configuration for SwapExecutor."""
    failure_backoff_sec: float = 0.5
    fetch_retry_wait_sec: float = 0.5
    slippage_codes: Tuple[int, ...] = JUPITER_SLIPPAGE_ERRORS
    # Production never gives up; tests bound the loop
    max_cycles: Optional[int] = None
    log_event_callback: Optional[Callable[..., None]] = None


@dataclass
class SwapResult:
    """Result of a completed swap."""
    request: SwapRequest
    cycles: int
    signatures: List[str] = field(default_factory=list)
    meta: Optional[dict] = None


class SwapExecutor:
    """
    Executes swaps through the aggregator.

    Usage:
        executor = SwapExecutor(jupiter, submitter)
        await executor.execute_swap(SwapRequest(usdc, sol, 1_000_000, SwapMode.EXACT_OUT))
    """

    def __init__(
        self,
        jupiter: "JupiterClient",
        submitter: "TransactionSubmitter",
        config: Optional[SwapExecutorConfig] = None,
        metrics: Optional["BotMetrics"] = None,
    ) -> None:
        self.jupiter = jupiter
        self.submitter = submitter
        self.config = config or SwapExecutorConfig()
        self.metrics = metrics
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.log(level, json.dumps(payload, default=str))

    async def execute_swap(self, request: SwapRequest) -> SwapResult:
        self._log_event(
            "swap_requested",
            input_mint=request.input_mint,
            output_mint=request.output_mint,
            amount_raw=request.amount_raw,
            mode=request.mode.value,
        )
        cycles = 0
        txs: Optional["SwapTransactions"] = None
        confirmed: Dict[str, "SubmissionOutcome"] = {}
        signatures: List[str] = []
        while True:
            cycles += 1
            if txs is None:
                txs = await self._fetch(request)
            outcome = await self._submit_remaining(txs, confirmed, signatures)

            if outcome.is_success:
                self._log_event("swap_completed", cycles=cycles, signatures=signatures)
                self._record("success")
                meta = confirmed["swap"].meta
                return SwapResult(request=request, cycles=cycles, signatures=signatures, meta=meta)

            reason = self._classify(outcome)
            self._record(reason)
            if self.config.max_cycles is not None and cycles >= self.config.max_cycles:
                raise TransactionFailedError(outcome, "swap")

            swap_landed = "swap" in confirmed
            self._log_event(
                "swap_retry",
                level=logging.WARNING,
                reason=reason,
                cycle=cycles,
                swap_landed=swap_landed,
                signature=outcome.signature,
                error=outcome.error.to_dict() if outcome.error else None,
            )
            if not swap_landed:
                # Nothing of the swap itself is on chain; start over with a fresh route
                txs = None
                confirmed.clear()
            if reason == "failed":
                await asyncio.sleep(self.config.failure_backoff_sec)

    def _classify(self, outcome: "SubmissionOutcome") -> str:
        if outcome.is_expired:
            return "expired"
        if outcome.error is not None and outcome.error.is_custom(*self.config.slippage_codes):
            return "slippage"
        return "failed"

    async def _fetch(self, request: SwapRequest) -> "SwapTransactions":
        user = str(self.submitter.wallet.pubkey())

        async def _fetch_once() -> "SwapTransactions":
            return await self.jupiter.fetch_swap(
                request.input_mint,
                request.output_mint,
                request.amount_raw,
                request.mode.value,
                user,
            )

        return await retry(_fetch_once, self.config.fetch_retry_wait_sec, label="swap_fetch")

    async def _submit_remaining(
        self,
        txs: "SwapTransactions",
        confirmed: Dict[str, "SubmissionOutcome"],
        signatures: List[str],
    ) -> "SubmissionOutcome":
        """
        Submit the stages of `txs` not yet in `confirmed`, in order, and stop
        at the first non-success. Each stage is re-signed with a fresh
        blockhash; confirmed stages are recorded and never resubmitted.
        """
        for label, tx in txs.ordered():
            if label in confirmed:
                continue
            attempt = await self.submitter.sign_prebuilt(tx)
            outcome = await self.submitter.submit(attempt, label=f"swap_{label}")
            if not outcome.is_success:
                return outcome
            confirmed[label] = outcome
            signatures.append(outcome.signature)
        return confirmed["swap"]

    def _record(self, result: str) -> None:
        if self.metrics is not None:
            self.metrics.swaps.labels(result=result).inc()
