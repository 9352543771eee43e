"""Bounded retries with exponential backoff for flaky test executions."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..core.config import config
from ..core.errors import RetryExhausted
from ..core.logger import log
from ..core.models import TestOutcome, WorkItem

TRANSIENT_SIGNALS = (
    "timeout",
    "network",
    "connection",
    "unavailable",
    "element not found",
)


def is_retriable_error(error_text: Optional[str]) -> bool:
    """Whether a failure message looks transient.

    A failure without any message is treated as retriable since nothing rules
    out a flake.
    """
    if error_text is None:
        return True
    lowered = error_text.lower()
    return any(signal in lowered for signal in TRANSIENT_SIGNALS)


@dataclass
class RetryOptions:
    """Retry schedule for :meth:`RetryEngine.run_with_retry`."""

    max_retries: int = field(default_factory=lambda: config.retry_max_retries)
    initial_delay: float = field(default_factory=lambda: config.retry_initial_delay)
    backoff_multiplier: float = field(default_factory=lambda: config.retry_backoff_multiplier)
    max_delay: float = field(default_factory=lambda: config.retry_max_delay)
    retry_predicate: Callable[[Optional[str]], bool] = is_retriable_error

    @property
    def max_attempts(self) -> int:
        return 1 + self.max_retries

    def calculate_delay(self, retry: int) -> float:
        """Delay before the ``retry``-th retry (1-based), capped at ``max_delay``."""
        if retry < 1:
            raise ValueError("retry numbers start at 1")
        return min(self.initial_delay * (self.backoff_multiplier ** (retry - 1)), self.max_delay)


@dataclass
class RetryStats:
    """Per-identity retry bookkeeping, accumulated across calls."""

    identity: str
    runs: int = 0
    attempts: int = 0
    passed_first_try: int = 0
    passed_after_retry: int = 0
    failed: int = 0
    exhausted: int = 0
    delays: List[float] = field(default_factory=list)


OnRetry = Callable[[int, int, float], Any]


class RetryEngine:
    """Runs one test execution with bounded retries; never raises."""

    def __init__(
        self,
        options: Optional[RetryOptions] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.options = options or RetryOptions()
        self._sleep = sleep
        self._stats: Dict[str, RetryStats] = {}

    async def run_with_retry(
        self,
        identity: str,
        attempt_fn: Callable[[], Awaitable[TestOutcome]],
        options: Optional[RetryOptions] = None,
        *,
        content_hash: str = "",
        device_id: Optional[str] = None,
        work_item: Optional[WorkItem] = None,
        on_retry: Optional[OnRetry] = None,
    ) -> TestOutcome:
        """Run ``attempt_fn`` until it passes or the retry budget is spent.

        Args:
            identity: Test identity, used for statistics and synthesized outcomes.
            attempt_fn: Coroutine factory performing one attempt.
            options: Overrides the engine's default schedule.
            content_hash: Hash recorded on synthesized failure outcomes.
            device_id: Device recorded on synthesized failure outcomes.
            work_item: Advanced once per attempt when given.
            on_retry: Called as ``on_retry(attempt, max_retries, delay)`` before each backoff sleep.

        Returns:
            The passing outcome, or the final failure with every attempt's
            reason attached.
        """
        opts = options or self.options
        stats = self._stats.setdefault(identity, RetryStats(identity=identity))
        stats.runs += 1

        delay = min(opts.initial_delay, opts.max_delay)
        reasons: List[str] = []
        attempt = 0

        while True:
            if work_item is not None:
                try:
                    work_item.next_attempt()
                except ValueError as e:
                    log.warning(str(e))
                    break
            attempt += 1
            stats.attempts += 1
            started = time.monotonic()

            try:
                outcome = await attempt_fn()
                error_text = outcome.error_message
                raised = None
            except Exception as e:
                outcome = None
                error_text = str(e) or type(e).__name__
                raised = e

            if outcome is not None and outcome.passed:
                if attempt == 1:
                    stats.passed_first_try += 1
                else:
                    stats.passed_after_retry += 1
                    log.success(f"{identity} passed on attempt {attempt}")
                return replace(outcome, attempt_count=attempt, failure_reasons=tuple(reasons))

            reasons.append(error_text or "unknown failure")
            predicate_text = f"{type(raised).__name__}: {error_text}" if raised is not None else error_text
            retryable = self._is_retryable(opts, predicate_text)
            exhausted = attempt >= opts.max_attempts

            if not retryable or exhausted:
                stats.failed += 1
                if retryable and opts.max_retries > 0:
                    stats.exhausted += 1
                return self._final_failure(
                    identity, outcome, raised, attempt, reasons, started,
                    content_hash=content_hash,
                    device_id=device_id,
                    exhausted=retryable and opts.max_retries > 0,
                )

            log.log_retry(identity, attempt + 1, opts.max_attempts, delay)
            if on_retry is not None:
                try:
                    on_retry(attempt, opts.max_retries, delay)
                except Exception as e:
                    log.debug(f"Retry callback failed: {e}")
            stats.delays.append(delay)
            await self._sleep(delay)
            delay = min(delay * opts.backoff_multiplier, opts.max_delay)

        # Work item ran out of attempts before the schedule did
        stats.failed += 1
        return self._final_failure(
            identity, None, None, attempt, reasons or ["attempt budget exhausted"], time.monotonic(),
            content_hash=content_hash, device_id=device_id, exhausted=True,
        )

    @staticmethod
    def _is_retryable(opts: RetryOptions, error_text: Optional[str]) -> bool:
        try:
            return bool(opts.retry_predicate(error_text))
        except Exception as e:
            log.warning(f"Retry predicate failed, not retrying: {e}")
            return False

    def _final_failure(
        self,
        identity: str,
        outcome: Optional[TestOutcome],
        raised: Optional[BaseException],
        attempts: int,
        reasons: List[str],
        started: float,
        *,
        content_hash: str,
        device_id: Optional[str],
        exhausted: bool,
    ) -> TestOutcome:
        error_type = RetryExhausted.__name__ if exhausted else None

        if outcome is not None:
            log.error(f"{identity} failed after {attempts} attempt(s)")
            return replace(
                outcome,
                attempt_count=attempts,
                failure_reasons=tuple(reasons),
                error_type=error_type or outcome.error_type,
            )

        last = reasons[-1]
        message = f"Failed after {attempts} attempts: {last}" if exhausted else last
        log.error(f"{identity}: {message}")
        return TestOutcome(
            identity=identity,
            content_hash=content_hash,
            passed=False,
            duration=time.monotonic() - started,
            device_id=device_id,
            error_message=message,
            attempt_count=attempts,
            failure_reasons=tuple(reasons),
            error_type=error_type or (type(raised).__name__ if raised is not None else None),
        )

    async def retry_multiple(
        self,
        failed: Sequence[TestOutcome],
        attempt_factory: Callable[[TestOutcome], Callable[[], Awaitable[TestOutcome]]],
        parallel: bool = False,
        options: Optional[RetryOptions] = None,
    ) -> List[TestOutcome]:
        """Re-run previously failed outcomes, each under its own retry budget."""

        async def rerun(previous: TestOutcome) -> TestOutcome:
            return await self.run_with_retry(
                previous.identity,
                attempt_factory(previous),
                options,
                content_hash=previous.content_hash,
                device_id=previous.device_id,
            )

        if parallel:
            return list(await asyncio.gather(*(rerun(outcome) for outcome in failed)))
        results = []
        for outcome in failed:
            results.append(await rerun(outcome))
        return results

    def stats_for(self, identity: str) -> Optional[RetryStats]:
        return self._stats.get(identity)

    def statistics(self) -> Dict[str, Any]:
        """Totals across every identity this engine has run."""
        runs = sum(s.runs for s in self._stats.values())
        first = sum(s.passed_first_try for s in self._stats.values())
        after = sum(s.passed_after_retry for s in self._stats.values())
        failed = sum(s.failed for s in self._stats.values())
        retried = runs - first
        return {
            "total_tests": len(self._stats),
            "total_runs": runs,
            "total_attempts": sum(s.attempts for s in self._stats.values()),
            "passed_first_try": first,
            "passed_after_retry": after,
            "failed": failed,
            "exhausted": sum(s.exhausted for s in self._stats.values()),
            "retry_success_rate": (after / retried) if retried else 0.0,
        }
