"""
Tests for TransactionSubmitter - the confirmation/expiry race.

Tests cover:
- Outcome classification (success, failed, expired, timed out)
- Race termination within the confirmation window
- Confirmation beating expiry, and the loser being ignored
- Resubmission after expiry never reusing the expired signature
- Send retries and metrics
"""

import asyncio
from dataclasses import replace

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from conftest import EXPIRY_HEIGHT, FakeLedger, LandingPlan
from lpbot.errors import TransactionFailedError
from lpbot.execution.submission import (
    CancellationToken,
    OutcomeStatus,
    SubmissionOutcome,
    TransactionSubmitter,
)
from lpbot.monitoring.metrics import BotMetrics


def _transfer(wallet: Keypair):
    return transfer(TransferParams(from_pubkey=wallet.pubkey(), to_pubkey=Keypair().pubkey(), lamports=1))


@pytest.fixture
def make_submitter(wallet, fast_submission_config):
    def _make(ledger: FakeLedger, config=None, metrics=None) -> TransactionSubmitter:
        return TransactionSubmitter(ledger, wallet, config or fast_submission_config, metrics=metrics)
    return _make


class TestSigning:
    @pytest.mark.asyncio
    async def test_sign_uses_latest_blockhash_and_expiry(self, wallet, make_submitter):
        ledger = FakeLedger()
        submitter = make_submitter(ledger)

        attempt = await submitter.sign([_transfer(wallet)])

        assert attempt.expiry_height == EXPIRY_HEIGHT
        assert attempt.signature == str(attempt.transaction.signatures[0])
        assert str(attempt.transaction.message.recent_blockhash) == attempt.blockhash
        assert ledger.blockhash_calls == 1

    @pytest.mark.asyncio
    async def test_sign_includes_extra_signers(self, wallet, make_submitter):
        submitter = make_submitter(FakeLedger())
        extra = Keypair()
        ix = _transfer(extra)

        attempt = await submitter.sign([ix], signers=[extra])

        assert len(attempt.transaction.signatures) == 2
        keys = attempt.transaction.message.account_keys
        assert keys[0] == wallet.pubkey()
        assert extra.pubkey() in keys

    @pytest.mark.asyncio
    async def test_resigning_changes_signature(self, wallet, make_submitter):
        submitter = make_submitter(FakeLedger())
        ix = _transfer(wallet)

        first = await submitter.sign([ix])
        second = await submitter.sign([ix])

        assert first.signature != second.signature

    @pytest.mark.asyncio
    async def test_sign_prebuilt_restamps_blockhash(self, wallet, make_submitter):
        ledger = FakeLedger()
        submitter = make_submitter(ledger)
        ix = _transfer(wallet)
        stale = MessageV0.try_compile(wallet.pubkey(), [ix], [], Hash.default())
        built = VersionedTransaction.populate(stale, [Signature.default()])

        attempt = await submitter.sign_prebuilt(built)

        message = attempt.transaction.message
        assert message.recent_blockhash != Hash.default()
        assert str(message.recent_blockhash) == attempt.blockhash
        assert attempt.expiry_height == EXPIRY_HEIGHT
        assert list(message.instructions) == list(stale.instructions)
        assert attempt.signature == str(attempt.transaction.signatures[0])


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_confirmation_before_expiry_is_success(self, wallet, make_submitter):
        ledger = FakeLedger([LandingPlan(confirm_after=0.03, expire_after=0.3)])
        submitter = make_submitter(ledger)

        outcome = await submitter.submit(await submitter.sign([_transfer(wallet)]))

        assert outcome.status is OutcomeStatus.SUCCESS
        assert outcome.meta["err"] is None
        assert outcome.signature == ledger.sent[0]

    @pytest.mark.asyncio
    async def test_expiry_before_confirmation_is_expired(self, wallet, make_submitter):
        ledger = FakeLedger([LandingPlan(confirm_after=None, expire_after=0.03)])
        submitter = make_submitter(ledger)

        outcome = await submitter.submit(await submitter.sign([_transfer(wallet)]))

        assert outcome.is_expired
        assert not outcome.timed_out

    @pytest.mark.asyncio
    async def test_no_result_within_window_times_out(self, wallet, make_submitter, fast_submission_config):
        submitter = make_submitter(FakeLedger([LandingPlan()]))
        loop = asyncio.get_running_loop()

        start = loop.time()
        outcome = await submitter.submit(await submitter.sign([_transfer(wallet)]))
        elapsed = loop.time() - start

        assert outcome.is_expired
        assert outcome.timed_out
        cfg = fast_submission_config
        assert elapsed < cfg.max_confirmation_sec + cfg.confirm_poll_sec + cfg.fetch_timeout_sec + 0.2

    @pytest.mark.asyncio
    async def test_ledger_error_is_failed_with_code(self, wallet, make_submitter):
        err = {"InstructionError": [3, {"Custom": 6018}]}
        submitter = make_submitter(FakeLedger([LandingPlan(confirm_after=0.0, err=err)]))

        outcome = await submitter.submit(await submitter.sign([_transfer(wallet)]))

        assert outcome.is_failed
        assert outcome.error.custom_code == 6018
        assert outcome.error.instruction_index == 3
        assert outcome.error.is_custom(6018)

    @pytest.mark.asyncio
    async def test_non_custom_error_has_no_code(self, wallet, make_submitter):
        submitter = make_submitter(FakeLedger([LandingPlan(confirm_after=0.0, err="AccountInUse")]))

        outcome = await submitter.submit(await submitter.sign([_transfer(wallet)]))

        assert outcome.is_failed
        assert outcome.error.custom_code is None
        assert outcome.error.raw == "AccountInUse"


class TestRace:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "confirm_after, expire_after",
        [
            (0.02, None),
            (None, 0.02),
            (None, None),
            (0.02, 0.25),
            (0.25, 0.02),
        ],
    )
    async def test_race_resolves_within_window(
        self, wallet, make_submitter, fast_submission_config, confirm_after, expire_after
    ):
        submitter = make_submitter(FakeLedger([LandingPlan(confirm_after=confirm_after, expire_after=expire_after)]))
        loop = asyncio.get_running_loop()

        start = loop.time()
        outcome = await submitter.submit(await submitter.sign([_transfer(wallet)]))
        elapsed = loop.time() - start

        confirms_first = confirm_after is not None and (expire_after is None or confirm_after < expire_after)
        assert outcome.is_success is confirms_first
        assert outcome.is_expired is not confirms_first
        cfg = fast_submission_config
        assert elapsed < cfg.max_confirmation_sec + cfg.confirm_poll_sec + cfg.fetch_timeout_sec + 0.2

    @pytest.mark.asyncio
    async def test_confirmation_wins_tie(self, wallet, make_submitter):
        submitter = make_submitter(FakeLedger([LandingPlan(confirm_after=0.0, expire_after=0.0)]))

        outcome = await submitter.submit(await submitter.sign([_transfer(wallet)]))

        assert outcome.is_success

    @pytest.mark.asyncio
    async def test_record_found_after_expiry_is_authoritative(self, wallet, make_submitter, fast_submission_config):
        # Confirmation watcher polls once, then sleeps past the landing time;
        # the expiry watcher fires, and the final lookup sees the record.
        config = replace(fast_submission_config, confirm_poll_sec=1.0)
        submitter = make_submitter(FakeLedger([LandingPlan(confirm_after=0.02, expire_after=0.05)]), config)

        outcome = await submitter.submit(await submitter.sign([_transfer(wallet)]))

        assert outcome.is_success

    @pytest.mark.asyncio
    async def test_losing_watcher_is_ignored(self, wallet, make_submitter):
        # Every getTransaction call hangs past the fetch timeout
        ledger = FakeLedger([LandingPlan(confirm_after=None, expire_after=0.0, fetch_delay=0.3)])
        submitter = make_submitter(ledger)
        loop = asyncio.get_running_loop()

        start = loop.time()
        outcome = await submitter.submit(await submitter.sign([_transfer(wallet)]))
        elapsed = loop.time() - start

        assert outcome.is_expired
        assert not outcome.timed_out
        assert elapsed < 0.3

        await asyncio.sleep(0.2)
        assert not submitter._stragglers


class TestResubmission:
    @pytest.mark.asyncio
    async def test_expired_attempt_is_rebuilt_with_new_signature(self, wallet, make_submitter):
        ledger = FakeLedger([
            LandingPlan(confirm_after=None, expire_after=0.0),
            LandingPlan(confirm_after=0.0),
        ])
        submitter = make_submitter(ledger)
        ix = _transfer(wallet)
        builds = 0

        async def build():
            nonlocal builds
            builds += 1
            return await submitter.sign([ix])

        meta = await submitter.submit_until_confirmed(build, label="test")

        assert meta["err"] is None
        assert builds == 2
        assert len(ledger.sent) == 2
        assert ledger.sent[0] != ledger.sent[1]
        # The expired attempt never produced a record
        assert await ledger.get_transaction(ledger.sent[0]) is None

    @pytest.mark.asyncio
    async def test_failure_raises_transaction_failed(self, wallet, make_submitter):
        err = {"InstructionError": [0, {"Custom": 1}]}
        submitter = make_submitter(FakeLedger([LandingPlan(confirm_after=0.0, err=err)]))

        async def build():
            return await submitter.sign([_transfer(wallet)])

        with pytest.raises(TransactionFailedError) as exc_info:
            await submitter.submit_until_confirmed(build, label="test")

        assert exc_info.value.error.custom_code == 1
        assert exc_info.value.label == "test"

    @pytest.mark.asyncio
    async def test_send_error_is_retried_with_same_bytes(self, wallet, make_submitter):
        ledger = FakeLedger([LandingPlan(confirm_after=0.0)])
        ledger.send_failures = 2
        submitter = make_submitter(ledger)
        attempt = await submitter.sign([_transfer(wallet)])

        outcome = await submitter.submit(attempt)

        assert outcome.is_success
        assert ledger.sent == [attempt.signature]


class TestMetricsAndLogging:
    @pytest.mark.asyncio
    async def test_outcome_recorded_in_metrics(self, wallet, make_submitter):
        metrics = BotMetrics()
        submitter = make_submitter(FakeLedger([LandingPlan(confirm_after=0.0)]), metrics=metrics)

        await submitter.submit(await submitter.sign([_transfer(wallet)]), label="open_position")

        value = metrics.registry.get_sample_value(
            "tx_submissions_total", {"label": "open_position", "status": "success"}
        )
        assert value == 1.0

    @pytest.mark.asyncio
    async def test_log_event_callback_receives_outcome(self, wallet, fast_submission_config):
        events = []
        config = replace(fast_submission_config, log_event_callback=lambda event, **kw: events.append((event, kw)))
        submitter = TransactionSubmitter(FakeLedger([LandingPlan(confirm_after=0.0)]), wallet, config)

        await submitter.submit(await submitter.sign([_transfer(wallet)]), label="x")

        names = [e for e, _ in events]
        assert names[0] == "tx_submitted"
        assert ("tx_outcome", "success") in [(e, kw.get("status")) for e, kw in events]


class TestCancellationToken:
    @pytest.mark.asyncio
    async def test_sleep_wakes_on_cancel(self):
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, token.cancel)

        start = loop.time()
        cancelled = await token.sleep(5.0)

        assert cancelled
        assert loop.time() - start < 1.0

    @pytest.mark.asyncio
    async def test_sleep_times_out_when_not_cancelled(self):
        token = CancellationToken()
        assert await token.sleep(0.01) is False
        assert not token.cancelled


def test_outcome_variants_are_exclusive():
    outcome = SubmissionOutcome.expired("sig", timed_out=True)
    assert outcome.is_expired and not outcome.is_success and not outcome.is_failed
    assert outcome.timed_out
