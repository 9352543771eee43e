"""Fan tests out across a pool of devices with bounded concurrency.

One worker runs per device, so a device never executes two tests at once,
and at most ``max_concurrency`` workers exist. The scheduler does not retry;
wrapping the runner in :class:`RetryEngine` is the caller's job.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Sequence

from ..core.config import config
from ..core.errors import DeviceUnavailable
from ..core.logger import log
from ..core.models import TestCase, TestOutcome, WorkItem
from ..utils.helpers import format_duration

Runner = Callable[[TestCase, str, WorkItem], Awaitable[TestOutcome]]
ProgressCallback = Callable[[str, str, str], Any]


class DistributionMode(str, Enum):
    """How queued tests are handed to devices."""

    LEAST_LOADED = "least_loaded"  # shared queue, a free device takes the next test
    ROUND_ROBIN = "round_robin"  # fixed per-device queues assigned up front


@dataclass
class DeviceStats:
    """Per-device counters for one scheduling call."""

    device_id: str
    started: int = 0
    passed: int = 0
    failed: int = 0
    total_duration: float = 0.0
    aborted: bool = False

    @property
    def success_rate(self) -> float:
        return self.passed / self.started if self.started else 0.0


def optimal_device_count(test_count: int, avg_duration: float = 0.0, max_devices: Optional[int] = None) -> int:
    """Suggest how many devices a run should use.

    Non-decreasing in ``test_count``; long tests (a minute or more on average)
    earn one extra device once there is more than a handful of them.
    """
    limit = max_devices or config.max_devices
    if test_count <= 0:
        return 0
    if test_count <= 3:
        count = 1
    elif test_count <= 10:
        count = 2
    elif test_count <= 20:
        count = 3
    else:
        count = 4
    if avg_duration >= 60 and test_count > 3:
        count += 1
    return max(1, min(count, limit, test_count))


class DeviceWorkScheduler:
    """Runs (test, device) work items, at most one per device at a time."""

    def __init__(
        self,
        max_concurrency: Optional[int] = None,
        mode: DistributionMode = DistributionMode.LEAST_LOADED,
        batch_pause: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.max_concurrency = max_concurrency or config.max_concurrency
        self.mode = mode
        self.batch_pause = batch_pause if batch_pause is not None else config.batch_pause
        self._sleep = sleep
        self.device_stats: Dict[str, DeviceStats] = {}
        self.in_flight = 0
        self.peak_in_flight = 0

    async def run_parallel(
        self,
        tests: Sequence[TestCase],
        devices: Sequence[str],
        runner: Runner,
        max_concurrency: Optional[int] = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
        estimated_durations: Optional[Mapping[str, float]] = None,
        max_attempts: int = 1,
    ) -> List[TestOutcome]:
        """Run every test once on some device.

        Args:
            tests: Tests to run.
            devices: Device ids available to this call.
            runner: ``runner(test, device_id, work_item)`` coroutine.
            max_concurrency: Overrides the scheduler's limit for this call.
            on_progress: Called as ``on_progress(identity, device_id, status)``.
            estimated_durations: Seconds per identity; longest tests go first.
            max_attempts: Attempt bound stamped on each work item.

        Returns:
            One outcome per test, in completion order.

        Raises:
            DeviceUnavailable: If ``devices`` is empty.
        """
        if not tests:
            return []
        if not devices:
            raise DeviceUnavailable(None, "no devices available for parallel execution")

        limit = max(1, min(max_concurrency or self.max_concurrency, len(devices)))
        workers = list(devices[:limit])

        ordered = list(tests)
        if estimated_durations:
            ordered.sort(key=lambda t: estimated_durations.get(t.identity, 0.0), reverse=True)
            log.info("Load balancing enabled (running longest tests first)")

        log.info(f"Running {len(ordered)} tests on {len(workers)} device(s) (max concurrency: {limit})")

        results: List[TestOutcome] = []
        self.device_stats = {device: DeviceStats(device_id=device) for device in workers}
        self.in_flight = 0
        self.peak_in_flight = 0

        if self.mode == DistributionMode.ROUND_ROBIN:
            queues: Dict[str, Deque[TestCase]] = {
                device: deque(ordered[i::len(workers)]) for i, device in enumerate(workers)
            }
        else:
            shared: Deque[TestCase] = deque(ordered)
            queues = {device: shared for device in workers}

        started = time.monotonic()
        await asyncio.gather(
            *(
                self._worker(device, queues[device], runner, results, on_progress, max_attempts)
                for device in workers
            )
        )

        # Work left over once every device dropped out
        leftovers = {id(q): q for q in queues.values()}
        for queue in leftovers.values():
            while queue:
                test = queue.popleft()
                results.append(self._unavailable(test, None, "no device left to run this test"))

        self._log_summary(results, time.monotonic() - started)
        return results

    async def _worker(
        self,
        device: str,
        queue: Deque[TestCase],
        runner: Runner,
        results: List[TestOutcome],
        on_progress: Optional[ProgressCallback],
        max_attempts: int,
    ) -> None:
        stats = self.device_stats[device]

        while queue:
            test = queue.popleft()
            item = WorkItem(identity=test.identity, assigned_device=device, max_attempts=max_attempts)
            stats.started += 1
            self._notify(on_progress, test.identity, device, "running")
            log.debug(f"[Device {device}] Running: {test.identity}")

            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            begin = time.monotonic()
            try:
                outcome = await runner(test, device, item)
            except DeviceUnavailable as e:
                stats.failed += 1
                stats.aborted = True
                results.append(self._unavailable(test, device, e.reason))
                self._notify(on_progress, test.identity, device, "error")
                log.error(f"[Device {device}] Unavailable, aborting its share: {e}")
                if self.mode == DistributionMode.ROUND_ROBIN:
                    while queue:
                        results.append(self._unavailable(queue.popleft(), device, e.reason))
                return
            except Exception as e:
                stats.failed += 1
                outcome = TestOutcome.failure(
                    test.identity, test.content_hash, e,
                    device_id=device, duration=time.monotonic() - begin,
                )
                results.append(outcome)
                self._notify(on_progress, test.identity, device, "error")
                log.error(f"[Device {device}] Error: {test.identity} - {e}")
                continue
            finally:
                self.in_flight -= 1
                stats.total_duration += time.monotonic() - begin

            results.append(outcome)
            if outcome.passed:
                stats.passed += 1
                self._notify(on_progress, test.identity, device, "passed")
            else:
                stats.failed += 1
                self._notify(on_progress, test.identity, device, "failed")
            log.log_test_result(test.identity, outcome.passed, outcome.duration, device)

        log.debug(f"[Device {device}] Worker finished")

    async def run_in_batches(
        self,
        tests: Sequence[TestCase],
        devices: Sequence[str],
        runner: Runner,
        batch_size: Optional[int] = None,
        **kwargs: Any,
    ) -> List[TestOutcome]:
        """Run ``tests`` in consecutive batches with a pause between them."""
        size = batch_size or config.batch_size
        batches = [list(tests[i:i + size]) for i in range(0, len(tests), size)]
        log.info(f"Running {len(tests)} tests in {len(batches)} batch(es)")

        results: List[TestOutcome] = []
        for index, batch in enumerate(batches):
            log.info(f"Batch {index + 1}/{len(batches)} ({len(batch)} tests)")
            results.extend(await self.run_parallel(batch, devices, runner, **kwargs))
            if index < len(batches) - 1:
                await self._sleep(self.batch_pause)
        return results

    @staticmethod
    def expected_wall_time(total: int, devices: int, max_concurrency: int, per_test: float) -> float:
        """Upper bound on wall time for uniform tests."""
        slots = max(1, min(devices, max_concurrency))
        return math.ceil(total / slots) * per_test

    @staticmethod
    def _unavailable(test: TestCase, device: Optional[str], reason: str) -> TestOutcome:
        return TestOutcome.failure(
            test.identity,
            test.content_hash,
            f"{device or 'no device'}: {reason}",
            device_id=device,
            error_type=DeviceUnavailable.__name__,
        )

    @staticmethod
    def _notify(callback: Optional[ProgressCallback], identity: str, device: str, status: str) -> None:
        if callback is None:
            return
        try:
            callback(identity, device, status)
        except Exception as e:
            log.debug(f"Progress callback failed: {e}")

    def _log_summary(self, results: List[TestOutcome], wall_time: float) -> None:
        passed = sum(1 for r in results if r.passed)
        total_time = sum(r.duration for r in results)
        log.info(
            f"Parallel execution: {passed}/{len(results)} passed, "
            f"total {format_duration(total_time)}, wall {format_duration(wall_time)}"
        )
        if total_time > 0 and wall_time > 0:
            log.info(f"Speedup: {total_time / wall_time:.1f}x")
        for stats in self.device_stats.values():
            if stats.started:
                log.debug(
                    f"{stats.device_id}: {stats.passed}/{stats.started} passed in "
                    f"{format_duration(stats.total_duration)}{' (aborted)' if stats.aborted else ''}"
                )
