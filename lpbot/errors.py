"""
Exception hierarchy for the rebalancer.

Transient failures (RpcError, SwapServiceError) are retried by the caller.
Ledger rejections are described by LedgerError and only escalate to
TransactionFailedError when no scoped rebuild applies.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from lpbot.execution.submission import SubmissionOutcome


class LpBotError(Exception):
    """Base class for all bot errors."""


class ConfigError(LpBotError, ValueError):
    """Invalid or missing configuration."""


class RpcError(LpBotError):
    """JSON-RPC error object returned by the ledger node."""

    def __init__(self, method: str, code: Optional[int], message: str) -> None:
        super().__init__(f"{method}: [{code}] {message}")
        self.method = method
        self.code = code
        self.message = message


class SwapServiceError(LpBotError):
    """Swap route or swap transaction could not be fetched."""


class InvariantViolation(LpBotError):
    """On-chain state contradicts what the bot expects (e.g. missing position)."""


@dataclass(frozen=True)
class LedgerError:
    """
    Structured form of a transaction's `meta.err`.

    The ledger reports errors as a string (`"AccountInUse"`) or as a tagged
    object (`{"InstructionError": [2, {"Custom": 6018}]}`). Only the program
    custom code and the failing instruction index matter for retry decisions.
    """
    raw: Any
    instruction_index: Optional[int] = None
    custom_code: Optional[int] = None

    @classmethod
    def parse(cls, err: Any) -> "LedgerError":
        if isinstance(err, dict) and "InstructionError" in err:
            detail = err["InstructionError"]
            if isinstance(detail, (list, tuple)) and len(detail) == 2:
                index, inner = detail
                code = inner.get("Custom") if isinstance(inner, dict) else None
                return cls(raw=err, instruction_index=index, custom_code=code)
        return cls(raw=err)

    def is_custom(self, *codes: int) -> bool:
        return self.custom_code is not None and self.custom_code in codes

    def to_dict(self) -> dict:
        return {
            "raw": self.raw,
            "instruction_index": self.instruction_index,
            "custom_code": self.custom_code,
        }


class TransactionFailedError(LpBotError):
    """A confirmed transaction failed with an error no rebuild can fix."""

    def __init__(self, outcome: "SubmissionOutcome", label: str = "transaction") -> None:
        error = outcome.error
        super().__init__(f"{label} {outcome.signature} failed: {error.raw if error else 'unknown'}")
        self.outcome = outcome
        self.label = label

    @property
    def error(self) -> Optional[LedgerError]:
        return self.outcome.error
