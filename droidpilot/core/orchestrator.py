"""Run orchestration: cache lookup, device selection, fan-out and persistence."""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

from ..automation.interruption_automaton import InterruptionAutomaton
from ..automation.pump_coordinator import PumpConfig, PumpCoordinator, PumpResult, PumpStrategy, Requester
from ..automation.retry_engine import RetryEngine, RetryOptions
from ..automation.scheduler import DeviceWorkScheduler, optimal_device_count
from ..device.models import ElementQuery, ElementRef, InteractionKind, InteractionResult, WatcherHandle
from ..device.protocols import DeviceControl, UiDriver
from ..utils.helpers import truncate_message
from .config import config
from .errors import DeviceUnavailable, StoreUnavailable
from .logger import log
from .models import RunReport, TestCase, TestOutcome, WorkItem
from .result_store import ResultStore

DriverFactory = Callable[[str], Union[UiDriver, Awaitable[UiDriver]]]


@dataclass
class DeviceSession:
    """Everything bound to one device for the duration of a run.

    Scripts should drive the UI through :meth:`find`, :meth:`interact` and
    :meth:`pump` so that each action holds the pump lease and never
    interleaves with an automaton tick.
    """

    device_id: str
    driver: UiDriver
    coordinator: PumpCoordinator
    automaton: InterruptionAutomaton
    watcher: Optional[WatcherHandle] = None

    async def find(self, query: ElementQuery) -> List[ElementRef]:
        async with self.coordinator.lease(Requester.SCRIPT):
            return await self.driver.find(query)

    async def interact(self, ref: ElementRef, kind: InteractionKind = InteractionKind.TAP) -> InteractionResult:
        async with self.coordinator.lease(Requester.SCRIPT):
            return await self.driver.interact(ref, kind)

    async def pump(
        self, strategy: PumpStrategy = PumpStrategy.SETTLE, config: Optional[PumpConfig] = None
    ) -> PumpResult:
        return await self.coordinator.pump(strategy, requester=Requester.SCRIPT, config=config)


ScriptBody = Callable[[DeviceSession, TestCase], Awaitable[None]]


@dataclass
class RunOptions:
    """Per-run knobs; unset values fall back to :data:`config`."""

    app_package: Optional[str] = None
    device_ids: Optional[List[str]] = None
    auto_provision: bool = True
    use_cache: bool = True
    reuse_failures: bool = False
    prune_cache: bool = False
    capabilities: List[str] = field(default_factory=list)
    expected_permissions: List[str] = field(default_factory=list)
    start_watcher: bool = False
    max_concurrency: Optional[int] = None
    test_timeout: Optional[float] = None
    retry: Optional[RetryOptions] = None
    estimated_durations: Optional[Mapping[str, float]] = None
    batch_size: Optional[int] = None


class RunOrchestrator:
    """Wires the result store, device pool, scheduler, retries and automatons into one run."""

    def __init__(
        self,
        device_control: DeviceControl,
        driver_factory: DriverFactory,
        store: Optional[ResultStore] = None,
        retry_engine: Optional[RetryEngine] = None,
        scheduler: Optional[DeviceWorkScheduler] = None,
        automaton_factory: Optional[Callable[[UiDriver, PumpCoordinator, str], InterruptionAutomaton]] = None,
    ) -> None:
        self.device_control = device_control
        self.driver_factory = driver_factory
        self.store = store
        self.retry_engine = retry_engine or RetryEngine()
        self.scheduler = scheduler or DeviceWorkScheduler()
        self.automaton_factory = automaton_factory or (
            lambda driver, coordinator, device: InterruptionAutomaton(driver, coordinator, device_id=device)
        )
        self.sessions: Dict[str, DeviceSession] = {}

    @classmethod
    def from_config(
        cls,
        device_control: DeviceControl,
        driver_factory: DriverFactory,
        **kwargs: Any,
    ) -> RunOrchestrator:
        """Build an orchestrator whose result store comes from :data:`config`.

        Raises:
            ValueError: If the configuration is inconsistent.
        """
        config.validate_config()
        store = None
        if config.cache_enabled:
            try:
                store = ResultStore(config.get_cache_path())
            except StoreUnavailable as e:
                log.warning(f"{e}; running without a result cache")
        return cls(device_control, driver_factory, store=store, **kwargs)

    async def run(
        self,
        tests: Sequence[TestCase],
        body: ScriptBody,
        options: Optional[RunOptions] = None,
    ) -> RunReport:
        """Run ``tests`` and return one outcome per identity.

        Never raises for test failures, store failures, a missing device pool
        or a device whose UI driver cannot be opened; those all show up as
        per-test outcomes.
        """
        opts = options or RunOptions()
        started = time.monotonic()
        report = RunReport()

        if opts.prune_cache:
            self.prune_cache()

        pending: List[TestCase] = []
        for test in tests:
            cached = self._cached_outcome(test, opts)
            if cached is not None:
                report.outcomes[test.identity] = cached
                report.cached.append(test.identity)
                log.info(f"Cache hit: {test.identity} ({'passed' if cached.passed else 'failed'})")
            else:
                pending.append(test)
        log.log_performance("cache lookup", (time.monotonic() - started) * 1000)

        if not pending:
            report.wall_time = time.monotonic() - started
            log.success(f"All {len(tests)} tests served from cache")
            return report

        devices = await self._select_devices(len(pending), opts)
        report.devices = list(devices)
        if not devices:
            log.error("No available devices; failing every pending test")
            return self._fail_pending(report, pending, "no device available", started)

        try:
            await self._open_sessions(devices, opts)
            report.devices = list(self.sessions)
            if not self.sessions:
                log.error("No device could be opened; failing every pending test")
                return self._fail_pending(report, pending, "no device could be opened", started)

            runner = self._make_runner(body, opts)
            retry_opts = opts.retry or self.retry_engine.options
            kwargs: Dict[str, Any] = {
                "max_concurrency": opts.max_concurrency,
                "estimated_durations": opts.estimated_durations,
                "max_attempts": retry_opts.max_attempts,
            }
            if opts.batch_size:
                outcomes = await self.scheduler.run_in_batches(
                    pending, list(self.sessions), runner, opts.batch_size, **kwargs
                )
            else:
                outcomes = await self.scheduler.run_parallel(pending, list(self.sessions), runner, **kwargs)
        finally:
            await self._close_sessions()

        for outcome in outcomes:
            outcome = self._bounded(outcome)
            report.outcomes[outcome.identity] = outcome
            if opts.use_cache and outcome.error_type != DeviceUnavailable.__name__:
                self._record(outcome)

        report.wall_time = time.monotonic() - started
        summary = report.summary()
        log.info(
            f"Run finished: {summary['passed']}/{summary['total']} passed "
            f"({summary['cached']} cached) in {summary['wall_time']}s"
        )
        return report

    def _fail_pending(
        self, report: RunReport, pending: Sequence[TestCase], reason: str, started: float
    ) -> RunReport:
        for test in pending:
            report.outcomes[test.identity] = self._bounded(
                TestOutcome.failure(
                    test.identity, test.content_hash, reason, error_type=DeviceUnavailable.__name__,
                )
            )
        report.wall_time = time.monotonic() - started
        return report

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _cached_outcome(self, test: TestCase, opts: RunOptions) -> Optional[TestOutcome]:
        if self.store is None or not opts.use_cache:
            return None
        try:
            cached = self.store.get_outcome(test.identity, test.content_hash)
        except StoreUnavailable as e:
            log.warning(f"{e}; treating {test.identity} as a cache miss")
            return None
        if cached is None or (not cached.passed and not opts.reuse_failures):
            return None
        return cached

    def _record(self, outcome: TestOutcome) -> None:
        if self.store is None:
            return
        try:
            self.store.put_outcome(outcome)
        except StoreUnavailable as e:
            log.warning(f"Could not cache result for {outcome.identity}: {e}")

    def prune_cache(self, max_age: Optional[timedelta] = None) -> int:
        """Drop cached rows past the retention window; 0 when the store is unusable."""
        if self.store is None:
            return 0
        try:
            return self.store.prune_older_than(max_age or timedelta(days=config.cache_retention_days))
        except StoreUnavailable as e:
            log.warning(str(e))
            return 0

    def _bounded(self, outcome: TestOutcome) -> TestOutcome:
        limit = config.max_error_length
        if outcome.error_message is None or len(outcome.error_message) <= limit:
            return outcome
        return replace(
            outcome,
            error_message=truncate_message(outcome.error_message, limit),
            failure_reasons=tuple(truncate_message(r, limit) for r in outcome.failure_reasons),
        )

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    async def _select_devices(self, test_count: int, opts: RunOptions) -> List[str]:
        try:
            listed = await self.device_control.list_devices()
        except Exception as e:
            log.error(f"Could not list devices: {e}")
            return []

        available = [
            d.device_id
            for d in listed
            if d.is_available and (not opts.device_ids or d.device_id in opts.device_ids)
        ]
        if opts.auto_provision and available:
            durations = list((opts.estimated_durations or {}).values())
            avg = sum(durations) / len(durations) if durations else 0.0
            wanted = optimal_device_count(test_count, avg, config.max_devices)
            available = available[:wanted]

        log.info(f"Selected {len(available)} device(s): {', '.join(available) or '-'}")
        return available

    async def _open_sessions(self, devices: Sequence[str], opts: RunOptions) -> None:
        app = opts.app_package or config.app_package
        for device in devices:
            try:
                driver = self.driver_factory(device)
                if inspect.isawaitable(driver):
                    driver = await driver
            except Exception as e:
                log.error(f"[Device {device}] UI driver unavailable, leaving it out of this run: {e}")
                continue
            coordinator = PumpCoordinator(driver)
            automaton = self.automaton_factory(driver, coordinator, device)
            session = DeviceSession(device_id=device, driver=driver, coordinator=coordinator, automaton=automaton)

            for permission in opts.expected_permissions:
                automaton.expect_permission(permission)

            if app:
                for capability in opts.capabilities:
                    try:
                        await self.device_control.grant_capability(device, app, capability)
                    except Exception as e:
                        log.warning(f"Granting {capability} on {device} failed: {e}")

            if opts.start_watcher:
                try:
                    session.watcher = await self.device_control.start_watcher_process(device)
                except Exception as e:
                    log.warning(f"Watcher did not start on {device}, relying on the automaton: {e}")

            self.sessions[device] = session

    async def _close_sessions(self) -> None:
        for session in self.sessions.values():
            await session.automaton.stop()
            if session.watcher is not None:
                try:
                    await self.device_control.stop_watcher_process(session.watcher)
                except Exception as e:
                    log.warning(f"Stopping watcher on {session.device_id} failed: {e}")
        self.sessions = {}

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _make_runner(self, body: ScriptBody, opts: RunOptions):
        timeout = opts.test_timeout or config.test_timeout
        base = opts.retry or self.retry_engine.options

        async def runner(test: TestCase, device: str, item: WorkItem) -> TestOutcome:
            session = self.sessions[device]
            lost: List[DeviceUnavailable] = []

            async def attempt() -> TestOutcome:
                await session.automaton.start()
                begin = time.monotonic()
                try:
                    await asyncio.wait_for(body(session, test), timeout=timeout)
                except asyncio.TimeoutError:
                    return TestOutcome.failure(
                        test.identity, test.content_hash, f"Test timeout after {timeout:.0f}s",
                        device_id=device, duration=time.monotonic() - begin,
                    )
                except DeviceUnavailable as e:
                    lost.append(e)
                    raise
                finally:
                    await session.automaton.stop()
                return TestOutcome(
                    identity=test.identity,
                    content_hash=test.content_hash,
                    passed=True,
                    duration=time.monotonic() - begin,
                    device_id=device,
                )

            # A lost device is not worth retrying on
            options = replace(base, retry_predicate=lambda text: not lost and base.retry_predicate(text))
            outcome = await self.retry_engine.run_with_retry(
                test.identity,
                attempt,
                options,
                content_hash=test.content_hash,
                device_id=device,
                work_item=item,
            )
            if lost:
                raise lost[0]
            return outcome

        return runner
