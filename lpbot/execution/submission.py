"""
TransactionSubmitter: sign, submit and confirm ledger transactions.

A signed transaction carries a blockhash that stops being valid once the
chain passes `expiry_height`. After that height the transaction can never
land, so resubmitting a freshly signed copy cannot execute twice.

Architecture:
    submit() sends the raw bytes, then races two watchers that share a
    CancellationToken and a hard deadline (MAX_CONFIRMATION_TIME):

    - confirmation watcher: polls getTransaction(signature) until the
      ledger returns a record with `meta`, classifying it as SUCCESS or
      FAILED(LedgerError).
    - expiry watcher: polls getBlockHeight until it exceeds the attempt's
      expiry height, producing EXPIRED.

    The first watcher with a result wins and cancels the token. The loser
    stops at its next poll boundary; its in-flight request is left to finish
    and its result is discarded. A SUCCESS/FAILED always beats EXPIRED when
    both are available. If the deadline passes without a result the outcome
    is EXPIRED(timed_out=True), which callers treat like expiry.

Usage:
    submitter = TransactionSubmitter(rpc, wallet)

    attempt = await submitter.sign(instructions, signers=[position_mint])
    outcome = await submitter.submit(attempt)

    # or let the submitter re-sign on expiry and raise on failure
    meta = await submitter.submit_until_confirmed(build_attempt, label="open")
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence, Set, TYPE_CHECKING

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.transaction import VersionedTransaction

from lpbot.errors import LedgerError, TransactionFailedError
from lpbot.infra.retry import retry

if TYPE_CHECKING:
    from lpbot.infra.rpc import SolanaRpc
    from lpbot.monitoring.metrics import BotMetrics

log = logging.getLogger("lpbot")

MAX_CONFIRMATION_TIME = 120.0


class OutcomeStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SubmissionOutcome:
    """Result of one submission attempt. Exactly one variant per attempt."""
    status: OutcomeStatus
    signature: str
    meta: Optional[dict] = None
    error: Optional[LedgerError] = None
    timed_out: bool = False

    @classmethod
    def success(cls, signature: str, meta: dict) -> "SubmissionOutcome":
        return cls(OutcomeStatus.SUCCESS, signature, meta=meta)

    @classmethod
    def failed(cls, signature: str, error: LedgerError) -> "SubmissionOutcome":
        return cls(OutcomeStatus.FAILED, signature, error=error)

    @classmethod
    def expired(cls, signature: str, timed_out: bool = False) -> "SubmissionOutcome":
        return cls(OutcomeStatus.EXPIRED, signature, timed_out=timed_out)

    @property
    def is_success(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    @property
    def is_failed(self) -> bool:
        return self.status is OutcomeStatus.FAILED

    @property
    def is_expired(self) -> bool:
        return self.status is OutcomeStatus.EXPIRED


@dataclass(frozen=True)
class SubmissionAttempt:
    """A signed transaction and the block height after which it is dead."""
    transaction: VersionedTransaction
    signature: str
    blockhash: str
    expiry_height: int

    @property
    def raw(self) -> bytes:
        return bytes(self.transaction)


class CancellationToken:
    """Cooperative stop signal shared by the two watchers of one attempt."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to `seconds`; wake early and return True if cancelled."""
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return False
        return True


@dataclass
class SubmissionConfig:
    """Configuration for TransactionSubmitter."""
    max_confirmation_sec: float = MAX_CONFIRMATION_TIME
    confirm_poll_sec: float = 1.0
    height_poll_sec: float = 2.0
    fetch_timeout_sec: float = 5.0

    # Re-sends of identical bytes when the send call itself errors
    send_attempts: int = 3
    send_retry_wait_sec: float = 0.5
    send_max_retries: int = 20

    # Wait between blockhash fetch retries
    read_retry_wait_sec: float = 0.5

    log_event_callback: Optional[Callable[..., None]] = None


class TransactionSubmitter:
    """
    Submission and confirmation engine.

    One instance is shared by every component that writes to the ledger;
    it holds no per-attempt state apart from the set of still-running
    losing watchers.
    """

    def __init__(
        self,
        rpc: "SolanaRpc",
        wallet: Keypair,
        config: Optional[SubmissionConfig] = None,
        metrics: Optional["BotMetrics"] = None,
    ) -> None:
        self.rpc = rpc
        self.wallet = wallet
        self.config = config or SubmissionConfig()
        self.metrics = metrics
        self._stragglers: Set[asyncio.Task] = set()
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.log(level, json.dumps(payload, default=str))

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    async def sign(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair] = (),
    ) -> SubmissionAttempt:
        """Compile a v0 message with a fresh blockhash and sign it."""
        blockhash, last_valid = await retry(
            self.rpc.get_latest_blockhash,
            self.config.read_retry_wait_sec,
            label="get_latest_blockhash",
        )
        message = MessageV0.try_compile(
            self.wallet.pubkey(),
            list(instructions),
            [],
            Hash.from_string(blockhash),
        )
        tx = VersionedTransaction(message, [self.wallet, *signers])
        return SubmissionAttempt(
            transaction=tx,
            signature=str(tx.signatures[0]),
            blockhash=blockhash,
            expiry_height=last_valid,
        )

    async def sign_prebuilt(self, transaction: VersionedTransaction) -> SubmissionAttempt:
        """
        Re-stamp a transaction built by an external service with a fresh
        blockhash and sign it with the wallet. Instructions and address
        table lookups are kept as built.
        """
        blockhash, last_valid = await retry(
            self.rpc.get_latest_blockhash,
            self.config.read_retry_wait_sec,
            label="get_latest_blockhash",
        )
        built = transaction.message
        message = MessageV0(
            built.header,
            list(built.account_keys),
            Hash.from_string(blockhash),
            list(built.instructions),
            list(built.address_table_lookups),
        )
        signed = VersionedTransaction(message, [self.wallet])
        return SubmissionAttempt(
            transaction=signed,
            signature=str(signed.signatures[0]),
            blockhash=blockhash,
            expiry_height=last_valid,
        )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, attempt: SubmissionAttempt, label: str = "transaction") -> SubmissionOutcome:
        """Send `attempt` and resolve its outcome within the confirmation window."""
        loop = asyncio.get_running_loop()
        start = loop.time()
        deadline = start + self.config.max_confirmation_sec

        self._log_event(
            "tx_submitted",
            label=label,
            signature=attempt.signature,
            expiry_height=attempt.expiry_height,
        )
        await self._send(attempt, label)

        token = CancellationToken()
        confirm_task = asyncio.create_task(self._watch_confirmation(attempt, token, deadline))
        expiry_task = asyncio.create_task(self._watch_expiry(attempt, token, deadline))
        pending: Set[asyncio.Task] = {confirm_task, expiry_task}
        outcome: Optional[SubmissionOutcome] = None

        try:
            while pending and outcome is None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                if confirm_task in done and confirm_task.result() is not None:
                    outcome = confirm_task.result()
                elif expiry_task in done and expiry_task.result() is not None:
                    outcome = expiry_task.result()
        finally:
            token.cancel()
            for task in pending:
                self._stragglers.add(task)
                task.add_done_callback(self._stragglers.discard)

        if outcome is None:
            outcome = SubmissionOutcome.expired(attempt.signature, timed_out=True)

        if outcome.is_expired:
            # The transaction may have landed between the last confirmation
            # poll and the height check; a recorded result is authoritative.
            record = await self._fetch_record(attempt.signature, label)
            if record is not None and record.get("meta") is not None:
                outcome = self._classify(attempt.signature, record)

        self._report(outcome, label, (loop.time() - start) * 1000.0)
        return outcome

    async def submit_until_confirmed(
        self,
        build: Callable[[], Awaitable[SubmissionAttempt]],
        label: str = "transaction",
    ) -> dict:
        """
        Submit `build()` until it confirms.

        EXPIRED rebuilds (fresh blockhash) and resubmits; FAILED raises
        TransactionFailedError. Returns the confirmed transaction meta.
        """
        attempt = await build()
        while True:
            outcome = await self.submit(attempt, label=label)
            if outcome.is_success:
                return outcome.meta or {}
            if outcome.is_failed:
                raise TransactionFailedError(outcome, label)
            attempt = await build()

    async def _send(self, attempt: SubmissionAttempt, label: str) -> bool:
        attempts = max(1, self.config.send_attempts)
        for i in range(1, attempts + 1):
            try:
                await self.rpc.send_raw_transaction(
                    attempt.raw,
                    skip_preflight=True,
                    max_retries=self.config.send_max_retries,
                )
                return True
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log_event(
                    "send_retry",
                    level=logging.WARNING,
                    label=label,
                    signature=attempt.signature,
                    attempt=i,
                    error=repr(exc),
                )
                if i < attempts:
                    await asyncio.sleep(self.config.send_retry_wait_sec)
        # The bytes may still have reached a leader; the watchers decide.
        self._log_event("send_failed", level=logging.WARNING, label=label, signature=attempt.signature)
        return False

    # ------------------------------------------------------------------
    # Watchers
    # ------------------------------------------------------------------

    async def _watch_confirmation(
        self,
        attempt: SubmissionAttempt,
        token: CancellationToken,
        deadline: float,
    ) -> Optional[SubmissionOutcome]:
        loop = asyncio.get_running_loop()
        while not token.cancelled and loop.time() < deadline:
            record = await self._fetch_record(attempt.signature, "confirm_watch")
            if token.cancelled:
                return None
            if record is not None and record.get("meta") is not None:
                return self._classify(attempt.signature, record)
            if await token.sleep(min(self.config.confirm_poll_sec, deadline - loop.time())):
                return None
        return None

    async def _watch_expiry(
        self,
        attempt: SubmissionAttempt,
        token: CancellationToken,
        deadline: float,
    ) -> Optional[SubmissionOutcome]:
        loop = asyncio.get_running_loop()
        while not token.cancelled and loop.time() < deadline:
            height = await self._fetch_height()
            if token.cancelled:
                return None
            if height > attempt.expiry_height:
                return SubmissionOutcome.expired(attempt.signature)
            if await token.sleep(min(self.config.height_poll_sec, deadline - loop.time())):
                return None
        return None

    async def _fetch_record(self, signature: str, label: str) -> Optional[dict]:
        try:
            return await asyncio.wait_for(
                self.rpc.get_transaction(signature),
                timeout=self.config.fetch_timeout_sec,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._log_event(
                "watch_poll_error",
                level=logging.DEBUG,
                label=label,
                signature=signature,
                error=repr(exc),
            )
            return None

    async def _fetch_height(self) -> int:
        """Current block height, or -1 when unknown."""
        try:
            return await asyncio.wait_for(
                self.rpc.get_block_height(),
                timeout=self.config.fetch_timeout_sec,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._log_event("watch_poll_error", level=logging.DEBUG, label="expiry_watch", error=repr(exc))
            return -1

    @staticmethod
    def _classify(signature: str, record: dict) -> SubmissionOutcome:
        meta = record["meta"]
        err = meta.get("err")
        if err is not None:
            return SubmissionOutcome.failed(signature, LedgerError.parse(err))
        return SubmissionOutcome.success(signature, meta)

    def _report(self, outcome: SubmissionOutcome, label: str, duration_ms: float) -> None:
        level = logging.INFO if outcome.is_success else logging.WARNING
        fields: dict = {
            "label": label,
            "signature": outcome.signature,
            "status": outcome.status.value,
            "duration_ms": round(duration_ms, 1),
        }
        if outcome.error is not None:
            fields["error"] = outcome.error.to_dict()
        if outcome.timed_out:
            fields["timed_out"] = True
        self._log_event("tx_outcome", level=level, **fields)
        if self.metrics is not None:
            self.metrics.record_submission(label, outcome.status.value, duration_ms)
