"""
Execution layer: getting transactions onto the ledger.

- TransactionSubmitter: sign, submit, race confirmation against expiry
- SwapExecutor: acquire tokens through the swap aggregator
"""

from lpbot.execution.submission import (
    CancellationToken,
    OutcomeStatus,
    SubmissionAttempt,
    SubmissionConfig,
    SubmissionOutcome,
    TransactionSubmitter,
)
from lpbot.execution.swap_executor import (
    SwapExecutor,
    SwapExecutorConfig,
    SwapMode,
    SwapRequest,
    SwapResult,
)

__all__ = [
    "CancellationToken",
    "OutcomeStatus",
    "SubmissionAttempt",
    "SubmissionConfig",
    "SubmissionOutcome",
    "TransactionSubmitter",
    "SwapExecutor",
    "SwapExecutorConfig",
    "SwapMode",
    "SwapRequest",
    "SwapResult",
]
