"""
Tests for the retry engine.
"""

import pytest

from droidpilot.automation.retry_engine import RetryEngine, RetryOptions, is_retriable_error
from droidpilot.core.models import TestOutcome, WorkItem


def options(**kwargs):
    base = dict(max_retries=3, initial_delay=5.0, backoff_multiplier=2.0, max_delay=120.0)
    base.update(kwargs)
    return RetryOptions(**base)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def scripted(*results):
    """Attempt function returning/raising the given results in order."""
    calls = []

    async def attempt():
        result = results[len(calls)]
        calls.append(result)
        if isinstance(result, Exception):
            raise result
        return result

    attempt.calls = calls
    return attempt


def passed():
    return TestOutcome(identity="t", content_hash="h", passed=True, duration=1.0)


def failed(message):
    return TestOutcome.failure("t", "h", message)


class TestRetriablePredicate:
    """Default transient-signal matching."""

    @pytest.mark.parametrize("message", [
        "Connection refused",
        "Timeout waiting for idle",
        "network is unreachable",
        "service unavailable",
        "Element not found: Login",
    ])
    def test_transient_messages(self, message):
        assert is_retriable_error(message)

    def test_assertion_is_not_retriable(self):
        assert not is_retriable_error("Expected 'Welcome' but found 'Error'")

    def test_missing_message_is_retriable(self):
        assert is_retriable_error(None)


class TestRunWithRetry:
    """Attempt counting, backoff and failure synthesis."""

    @pytest.mark.asyncio
    async def test_passes_on_third_attempt(self):
        sleep = RecordingSleep()
        engine = RetryEngine(sleep=sleep)
        attempt = scripted(failed("Connection refused"), failed("Connection refused"), passed())

        outcome = await engine.run_with_retry("t", attempt, options())

        assert outcome.passed
        assert outcome.attempt_count == 3
        assert outcome.failure_reasons == ("Connection refused", "Connection refused")
        assert sleep.delays == [5.0, 10.0]

    @pytest.mark.asyncio
    async def test_at_most_max_retries_plus_one_attempts(self):
        engine = RetryEngine(sleep=RecordingSleep())
        attempt = scripted(*[failed("timeout")] * 10)

        outcome = await engine.run_with_retry("t", attempt, options(max_retries=2))

        assert len(attempt.calls) == 3
        assert not outcome.passed
        assert outcome.attempt_count == 3
        assert outcome.error_type == "RetryExhausted"
        assert len(outcome.failure_reasons) == 3

    @pytest.mark.asyncio
    async def test_non_retriable_failure_returns_immediately(self):
        sleep = RecordingSleep()
        engine = RetryEngine(sleep=sleep)
        attempt = scripted(failed("Expected 'Welcome'"), passed())

        outcome = await engine.run_with_retry("t", attempt, options())

        assert len(attempt.calls) == 1
        assert not outcome.passed
        assert outcome.error_type is None
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_delays_are_non_decreasing_and_capped(self):
        sleep = RecordingSleep()
        engine = RetryEngine(sleep=sleep)
        attempt = scripted(*[failed("network")] * 7)

        await engine.run_with_retry("t", attempt, options(max_retries=6, initial_delay=1.0, backoff_multiplier=3.0, max_delay=20.0))

        assert sleep.delays == [1.0, 3.0, 9.0, 20.0, 20.0, 20.0]
        assert all(a <= b for a, b in zip(sleep.delays, sleep.delays[1:]))

    @pytest.mark.asyncio
    async def test_initial_delay_is_capped_too(self):
        sleep = RecordingSleep()
        engine = RetryEngine(sleep=sleep)

        await engine.run_with_retry("t", scripted(failed("timeout"), passed()), options(initial_delay=30.0, max_delay=10.0))

        assert sleep.delays == [10.0]

    @pytest.mark.asyncio
    async def test_exception_synthesizes_failure_and_never_raises(self):
        engine = RetryEngine(sleep=RecordingSleep())
        attempt = scripted(*[ConnectionError("connection reset")] * 4)

        outcome = await engine.run_with_retry("t", attempt, options(), content_hash="h", device_id="emulator-5554")

        assert not outcome.passed
        assert outcome.error_message == "Failed after 4 attempts: connection reset"
        assert outcome.device_id == "emulator-5554"
        assert outcome.content_hash == "h"
        assert outcome.error_type == "RetryExhausted"

    @pytest.mark.asyncio
    async def test_non_retriable_exception_keeps_its_type(self):
        engine = RetryEngine(sleep=RecordingSleep())

        outcome = await engine.run_with_retry("t", scripted(AssertionError("wrong title")), options())

        assert outcome.error_message == "wrong title"
        assert outcome.error_type == "AssertionError"
        assert outcome.attempt_count == 1

    @pytest.mark.asyncio
    async def test_on_retry_called_before_each_sleep(self):
        engine = RetryEngine(sleep=RecordingSleep())
        seen = []

        await engine.run_with_retry(
            "t",
            scripted(failed("timeout"), failed("timeout"), passed()),
            options(),
            on_retry=lambda attempt, max_retries, delay: seen.append((attempt, max_retries, delay)),
        )

        assert seen == [(1, 3, 5.0), (2, 3, 10.0)]

    @pytest.mark.asyncio
    async def test_work_item_attempts_are_monotonic_and_bounded(self):
        engine = RetryEngine(sleep=RecordingSleep())
        item = WorkItem(identity="t", assigned_device="emulator-5554", max_attempts=2)

        outcome = await engine.run_with_retry("t", scripted(*[failed("timeout")] * 5), options(), work_item=item)

        assert item.attempt == 2
        assert outcome.attempt_count == 2
        assert not outcome.passed
        with pytest.raises(ValueError):
            item.next_attempt()

    @pytest.mark.asyncio
    async def test_custom_predicate(self):
        engine = RetryEngine(sleep=RecordingSleep())
        attempt = scripted(failed("golden mismatch"), passed())

        outcome = await engine.run_with_retry(
            "t", attempt, options(retry_predicate=lambda text: "golden" in (text or "")),
        )

        assert outcome.passed
        assert outcome.attempt_count == 2

    @pytest.mark.asyncio
    async def test_raising_predicate_means_no_retry(self):
        engine = RetryEngine(sleep=RecordingSleep())
        attempt = scripted(failed("timeout"), passed())

        def broken(text):
            raise KeyError(text)

        outcome = await engine.run_with_retry("t", attempt, options(retry_predicate=broken))

        assert not outcome.passed
        assert outcome.attempt_count == 1
        assert len(attempt.calls) == 1

    @pytest.mark.asyncio
    async def test_raising_on_retry_callback_is_ignored(self):
        sleep = RecordingSleep()
        engine = RetryEngine(sleep=sleep)

        def broken(attempt, max_retries, delay):
            raise RuntimeError("progress bar closed")

        outcome = await engine.run_with_retry(
            "t", scripted(failed("timeout"), passed()), options(), on_retry=broken,
        )

        assert outcome.passed
        assert outcome.attempt_count == 2
        assert sleep.delays == [5.0]


class TestRetryStatistics:
    """Per-identity and aggregate statistics."""

    @pytest.mark.asyncio
    async def test_statistics(self):
        engine = RetryEngine(sleep=RecordingSleep())
        await engine.run_with_retry("a", scripted(passed()), options())
        await engine.run_with_retry("b", scripted(failed("timeout"), passed()), options())
        await engine.run_with_retry("c", scripted(failed("bad assertion")), options())

        stats = engine.statistics()

        assert stats["total_tests"] == 3
        assert stats["passed_first_try"] == 1
        assert stats["passed_after_retry"] == 1
        assert stats["failed"] == 1
        assert stats["retry_success_rate"] == pytest.approx(0.5)
        assert engine.stats_for("b").attempts == 2
        assert engine.stats_for("b").delays == [5.0]

    @pytest.mark.asyncio
    async def test_retry_multiple_sequential_and_parallel(self):
        engine = RetryEngine(sleep=RecordingSleep())
        previous = [failed("timeout"), TestOutcome.failure("u", "h2", "timeout")]

        def factory(outcome):
            async def attempt():
                return TestOutcome(identity=outcome.identity, content_hash=outcome.content_hash, passed=True, duration=0.1)
            return attempt

        sequential = await engine.retry_multiple(previous, factory)
        parallel = await engine.retry_multiple(previous, factory, parallel=True)

        assert [o.identity for o in sequential] == ["t", "u"]
        assert all(o.passed for o in parallel)

    def test_calculate_delay(self):
        opts = options(initial_delay=5.0, backoff_multiplier=2.0, max_delay=30.0)

        assert [opts.calculate_delay(n) for n in range(1, 6)] == [5.0, 10.0, 20.0, 30.0, 30.0]
