"""Frame pumping shared by the test script and the interruption automaton.

Only one party may drive a device's render clock at a time. Ownership is
expressed as a :class:`PumpLease` handed out by :meth:`PumpCoordinator.acquire`;
a second requester receives :class:`Busy` instead of waiting. Pump strategies
are bounded alternatives to an unconditional settle, which can hang forever
under a continuous animation.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar, Union

from ..core.config import config as settings
from ..core.errors import LeaseConflict
from ..core.logger import log
from ..device.models import UiState
from ..device.protocols import UiDriver

T = TypeVar("T")


class Requester(str, Enum):
    """Parties competing for a device's frame clock."""

    SCRIPT = "script"
    AUTOMATON = "automaton"


@dataclass(frozen=True)
class PumpLease:
    """Exclusive right to drive the UI driver until released."""

    token: int
    requester: Requester
    acquired_at: float


@dataclass(frozen=True)
class Busy:
    """Returned by :meth:`PumpCoordinator.acquire` when another party holds the lease."""

    holder: Optional[Requester]


class PumpStrategy(str, Enum):
    """How frames are advanced for a single pump call."""

    SINGLE = "single"
    BOUNDED = "bounded"
    SETTLE = "settle"
    NAVIGATION = "navigation"
    ADAPTIVE = "adaptive"


@dataclass(frozen=True)
class PumpConfig:
    """Frame pacing for one pump call.

    ``timeout`` bounds the settle phase; the whole call is additionally
    guarded by ``timeout + guard_margin``.
    """

    frame_duration: float = 0.1
    max_frames: int = 50
    timeout: float = 10.0
    settle_frames: int = 2
    max_conflict_retries: int = 3
    conflict_retry_delay: float = 0.1
    guard_margin: float = 1.0

    @classmethod
    def single(cls) -> PumpConfig:
        return cls(max_frames=1, timeout=1.0)

    @classmethod
    def bounded(cls) -> PumpConfig:
        return cls(max_frames=20, timeout=5.0)

    @classmethod
    def navigation(cls) -> PumpConfig:
        return cls(frame_duration=0.05, max_frames=60, timeout=10.0)

    @classmethod
    def aggressive(cls) -> PumpConfig:
        return cls(frame_duration=0.016, max_frames=100, timeout=15.0)

    @classmethod
    def for_strategy(cls, strategy: PumpStrategy) -> PumpConfig:
        if strategy == PumpStrategy.SINGLE:
            return cls.single()
        if strategy == PumpStrategy.BOUNDED:
            return cls.bounded()
        if strategy == PumpStrategy.NAVIGATION:
            return cls.navigation()
        return cls()


@dataclass
class PumpResult:
    """Outcome of a pump call."""

    success: bool
    frames: int
    elapsed: float
    conflict: bool = False
    timed_out: bool = False
    error: Optional[str] = None


@dataclass
class _FrameCounter:
    frames: int = 0
    settle_timed_out: bool = False
    last_fingerprint: Optional[str] = None
    stable: int = 0


NAVIGATION_SETTLE_AFTER = 6
TRAILING_FRAMES = 3
TRAILING_FRAME_DURATION = 0.1
PROBE_FRAMES = 5
PROBE_FRAME_DURATION = 0.016
PROBE_SETTLE_TIMEOUT = 0.5


class PumpCoordinator:
    """Mutual exclusion and frame pumping for one device's UI driver."""

    def __init__(
        self,
        driver: UiDriver,
        lease_max_attempts: Optional[int] = None,
        lease_retry_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.driver = driver
        self.lease_max_attempts = (
            lease_max_attempts if lease_max_attempts is not None else settings.lease_max_attempts
        )
        self.lease_retry_delay = (
            lease_retry_delay if lease_retry_delay is not None else settings.lease_retry_delay
        )
        self._sleep = sleep
        self._lock = threading.Lock()
        self._current: Optional[PumpLease] = None
        self._tokens = itertools.count(1)
        self._stats: Dict[str, Any] = {
            "total_pumps": 0,
            "successful_pumps": 0,
            "failed_pumps": 0,
            "conflicts": 0,
            "timeouts": 0,
            "total_frames": 0,
            "by_strategy": {},
        }

    # ------------------------------------------------------------------
    # Lease
    # ------------------------------------------------------------------

    def acquire(self, requester: Requester) -> Union[PumpLease, Busy]:
        """Take the lease if it is free; never blocks."""
        with self._lock:
            if self._current is not None:
                return Busy(holder=self._current.requester)
            self._current = PumpLease(
                token=next(self._tokens), requester=requester, acquired_at=time.monotonic()
            )
            return self._current

    def release(self, lease: PumpLease) -> bool:
        """Give the lease back. Releasing a stale lease is a no-op."""
        with self._lock:
            if self._current is None or self._current.token != lease.token:
                return False
            self._current = None
            return True

    def is_live(self, lease: PumpLease) -> bool:
        with self._lock:
            return self._current is not None and self._current.token == lease.token

    @property
    def holder(self) -> Optional[Requester]:
        current = self._current
        return current.requester if current else None

    @asynccontextmanager
    async def lease(
        self,
        requester: Requester,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> AsyncIterator[PumpLease]:
        """Hold the lease for the body of an ``async with`` block.

        Raises:
            LeaseConflict: If the lease stayed busy for every attempt.
        """
        attempts = max_attempts if max_attempts is not None else self.lease_max_attempts
        delay = retry_delay if retry_delay is not None else self.lease_retry_delay

        granted: Optional[PumpLease] = None
        busy: Optional[Busy] = None
        for attempt in range(1, attempts + 1):
            result = self.acquire(requester)
            if isinstance(result, PumpLease):
                granted = result
                break
            busy = result
            if attempt < attempts:
                await self._sleep(delay)

        if granted is None:
            holder = busy.holder.value if busy and busy.holder else None
            raise LeaseConflict(requester.value, attempts, holder)

        try:
            yield granted
        finally:
            self.release(granted)

    async def with_lease(
        self,
        requester: Requester,
        body: Callable[[PumpLease], Awaitable[T]],
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> T:
        """Run ``body(lease)`` while holding the lease, releasing it on every exit path."""
        async with self.lease(requester, max_attempts, retry_delay) as held:
            return await body(held)

    # ------------------------------------------------------------------
    # Pumping
    # ------------------------------------------------------------------

    async def pump(
        self,
        strategy: PumpStrategy = PumpStrategy.SETTLE,
        *,
        requester: Requester = Requester.SCRIPT,
        config: Optional[PumpConfig] = None,
        lease: Optional[PumpLease] = None,
        debug_label: Optional[str] = None,
    ) -> PumpResult:
        """Advance frames according to ``strategy``.

        When ``lease`` is given it must be live and is left held; otherwise the
        lease is acquired for the duration of the call, retrying briefly on
        conflict. Never raises: conflicts, driver errors and guard timeouts
        come back as an unsuccessful :class:`PumpResult`.
        """
        cfg = config or PumpConfig.for_strategy(strategy)
        started = time.monotonic()

        owned: Optional[PumpLease] = None
        if lease is not None:
            if not self.is_live(lease):
                return self._record(strategy, PumpResult(
                    success=False, frames=0, elapsed=0.0, conflict=True, error="Lease is not held",
                ))
        else:
            for attempt in range(cfg.max_conflict_retries + 1):
                result = self.acquire(requester)
                if isinstance(result, PumpLease):
                    owned = result
                    break
                if attempt < cfg.max_conflict_retries:
                    await self._sleep(cfg.conflict_retry_delay)
            if owned is None:
                return self._record(strategy, PumpResult(
                    success=False,
                    frames=0,
                    elapsed=time.monotonic() - started,
                    conflict=True,
                    error=f"Pump lease busy after {cfg.max_conflict_retries} retries",
                ))

        counter = _FrameCounter()
        try:
            await asyncio.wait_for(self._run_strategy(strategy, cfg, counter), timeout=cfg.timeout + cfg.guard_margin)
            result = PumpResult(
                success=True,
                frames=counter.frames,
                elapsed=time.monotonic() - started,
                timed_out=counter.settle_timed_out,
            )
        except asyncio.TimeoutError:
            result = PumpResult(
                success=False,
                frames=counter.frames,
                elapsed=time.monotonic() - started,
                timed_out=True,
                error=f"{strategy.value} pump exceeded {cfg.timeout + cfg.guard_margin:.1f}s",
            )
        except Exception as e:
            result = PumpResult(
                success=False, frames=counter.frames, elapsed=time.monotonic() - started, error=str(e),
            )
        finally:
            if owned is not None:
                self.release(owned)

        if debug_label:
            log.debug(f"Pump ({debug_label}): {result.frames} frames in {result.elapsed * 1000:.0f}ms")
        return self._record(strategy, result)

    async def wait_and_pump(
        self,
        delay: float,
        strategy: PumpStrategy = PumpStrategy.BOUNDED,
        **kwargs: Any,
    ) -> PumpResult:
        """Sleep for ``delay`` seconds, then pump."""
        await self._sleep(delay)
        return await self.pump(strategy, **kwargs)

    async def pump_until(
        self,
        condition: Callable[[UiState], Union[bool, Awaitable[bool]]],
        timeout: float = 30.0,
        check_interval: float = 0.5,
        requester: Requester = Requester.SCRIPT,
    ) -> bool:
        """Pump one frame per ``check_interval`` until ``condition(snapshot)`` holds.

        Each frame and the snapshot after it are taken under one lease, so an
        automaton tick never runs in between. A snapshot that does not return
        before the deadline (or within ``check_interval`` once it has passed)
        ends the wait.

        Returns:
            True if the condition was met, False if ``timeout`` elapsed first.
        """
        deadline = time.monotonic() + timeout
        frame = PumpConfig(frame_duration=check_interval, max_frames=1, timeout=max(check_interval, 1.0))
        while True:
            state: Optional[UiState] = None
            try:
                async with self.lease(requester) as held:
                    await self.pump(PumpStrategy.SINGLE, config=frame, lease=held)
                    remaining = max(deadline - time.monotonic(), check_interval)
                    state = await asyncio.wait_for(self.driver.snapshot(), timeout=remaining)
            except LeaseConflict as e:
                log.debug(f"pump_until skipped a check: {e}")
            except asyncio.TimeoutError:
                log.warning(f"Snapshot did not return within {timeout:.1f}s while waiting for a condition")
                return False

            if state is not None:
                met = condition(state)
                if inspect.isawaitable(met):
                    met = await met
                if met:
                    return True
            if time.monotonic() >= deadline:
                return False

    @property
    def statistics(self) -> Dict[str, Any]:
        stats = dict(self._stats)
        stats["by_strategy"] = dict(self._stats["by_strategy"])
        stats["currently_held_by"] = self.holder.value if self.holder else None
        return stats

    def reset_statistics(self) -> None:
        for key in ("total_pumps", "successful_pumps", "failed_pumps", "conflicts", "timeouts", "total_frames"):
            self._stats[key] = 0
        self._stats["by_strategy"] = {}

    def _record(self, strategy: PumpStrategy, result: PumpResult) -> PumpResult:
        self._stats["total_pumps"] += 1
        self._stats["total_frames"] += result.frames
        self._stats["successful_pumps" if result.success else "failed_pumps"] += 1
        if result.conflict:
            self._stats["conflicts"] += 1
        if result.timed_out:
            self._stats["timeouts"] += 1
        by_strategy = self._stats["by_strategy"]
        by_strategy[strategy.value] = by_strategy.get(strategy.value, 0) + 1
        return result

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _run_strategy(self, strategy: PumpStrategy, cfg: PumpConfig, counter: _FrameCounter) -> None:
        if strategy == PumpStrategy.SINGLE:
            await self._frame(counter, cfg.frame_duration)
        elif strategy == PumpStrategy.BOUNDED:
            await self._bounded(cfg, counter, cfg.max_frames)
        elif strategy == PumpStrategy.SETTLE:
            await self._settle(cfg, counter, cfg.timeout)
        elif strategy == PumpStrategy.NAVIGATION:
            await self._navigation(cfg, counter)
        elif strategy == PumpStrategy.ADAPTIVE:
            await self._adaptive(cfg, counter)
        else:
            raise ValueError(f"Unknown pump strategy: {strategy}")

    async def _frame(self, counter: _FrameCounter, duration: float) -> None:
        await self.driver.advance_frame(duration)
        counter.frames += 1

    async def _is_settled(self, cfg: PumpConfig, counter: _FrameCounter) -> bool:
        """True once the snapshot fingerprint repeated ``settle_frames`` times in a row."""
        fingerprint = (await self.driver.snapshot()).fingerprint
        if fingerprint == counter.last_fingerprint:
            counter.stable += 1
        else:
            counter.stable = 0
            counter.last_fingerprint = fingerprint
        return counter.stable >= cfg.settle_frames

    async def _bounded(self, cfg: PumpConfig, counter: _FrameCounter, frames: int) -> None:
        for _ in range(max(frames, 0)):
            await self._frame(counter, cfg.frame_duration)

    async def _settle(self, cfg: PumpConfig, counter: _FrameCounter, timeout: float) -> bool:
        """Advance frames until the screen stops changing; False on timeout."""
        counter.stable = 0
        counter.last_fingerprint = None
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            await self._frame(counter, cfg.frame_duration)
            if await self._is_settled(cfg, counter):
                return True
        counter.settle_timed_out = True
        return False

    async def _navigation(self, cfg: PumpConfig, counter: _FrameCounter) -> None:
        await self._frame(counter, 0)
        for i in range(cfg.max_frames - 1):
            await self._frame(counter, cfg.frame_duration)
            # route transitions complete within a few hundred ms
            if await self._is_settled(cfg, counter) and i > NAVIGATION_SETTLE_AFTER:
                break
        for _ in range(TRAILING_FRAMES):
            await self._frame(counter, TRAILING_FRAME_DURATION)

    async def _adaptive(self, cfg: PumpConfig, counter: _FrameCounter) -> None:
        for _ in range(PROBE_FRAMES):
            await self._frame(counter, PROBE_FRAME_DURATION)

        probe = replace(cfg, frame_duration=PROBE_FRAME_DURATION)
        if await self._settle(probe, counter, PROBE_SETTLE_TIMEOUT):
            return

        # Continuous animation: the probe timeout is expected, not a failure
        counter.settle_timed_out = False
        await self._bounded(cfg, counter, cfg.max_frames - counter.frames)
