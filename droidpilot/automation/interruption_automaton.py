"""Background loop that dismisses transient OS interruptions during a test.

Every tick the automaton takes the device's pump lease (skipping the tick if
the script holds it), snapshots the UI, walks the rule table from highest
priority down and dismisses the first visible interruption it has not handled
yet. Handled instances are remembered by signature so the same dialog is
never dismissed twice, while a later dialog of the same kind still is.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from ..core.config import config
from ..core.errors import InterruptionUnhandled
from ..core.logger import log
from ..core.models import InterruptionRecord
from ..device.models import BoundingBox, ElementQuery, ElementRef, ElementRole, InteractionKind, UiState
from ..device.protocols import UiDriver
from ..utils.helpers import utc_now
from .dismissal import DEFAULT_STRATEGIES, DismissStrategy, run_cascade
from .interruption_rules import (
    DISMISS_LABELS,
    DEFAULT_RULES,
    Detection,
    Fallback,
    InterruptionKind,
    InterruptionRule,
    build_rules,
    capability_category,
    detect,
    icon_category,
)
from .pump_coordinator import Busy, PumpConfig, PumpCoordinator, PumpLease, PumpStrategy, Requester

SETTLE_FRAME = PumpConfig(frame_duration=0.1, max_frames=1, timeout=1.0)
DISMISS_SETTLE = PumpConfig(frame_duration=0.2, max_frames=5, timeout=2.0)
BARRIER_Y = 50


class AutomatonState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


@dataclass(frozen=True)
class _Target:
    ref: ElementRef
    kind: InteractionKind = InteractionKind.TAP
    cascade: bool = True
    name: Optional[str] = None


class InterruptionAutomaton:
    """Detects and dismisses interruptions on one device."""

    def __init__(
        self,
        driver: UiDriver,
        coordinator: PumpCoordinator,
        rules: Optional[Sequence[InterruptionRule]] = None,
        *,
        extra_accept_labels: Optional[Iterable[str]] = None,
        strategies: Sequence[DismissStrategy] = DEFAULT_STRATEGIES,
        tick_interval: Optional[float] = None,
        status_every: Optional[int] = None,
        error_every: Optional[int] = None,
        max_dismiss_attempts: int = 3,
        device_id: Optional[str] = None,
    ) -> None:
        """
        Args:
            driver: UI driver of the device under test.
            coordinator: Pump coordinator shared with the test script.
            rules: Rule table; defaults to the built-in interruptions.
            extra_accept_labels: Labels appended to the permission accept list.
            strategies: Dismissal cascade tried on each target.
            tick_interval: Seconds between ticks.
            status_every: Heartbeat log period in ticks.
            error_every: Only every Nth tick error is logged.
            max_dismiss_attempts: Failed dismissals before an instance is abandoned.
            device_id: Used in log lines.
        """
        labels = list(config.extra_accept_labels)
        if extra_accept_labels:
            labels.extend(extra_accept_labels)
        self.driver = driver
        self.coordinator = coordinator
        self.rules = build_rules(labels, rules if rules is not None else DEFAULT_RULES)
        self.strategies = tuple(strategies)
        self.tick_interval = tick_interval if tick_interval is not None else config.automaton_tick_interval
        self.status_every = status_every if status_every is not None else config.automaton_status_every
        self.error_every = error_every if error_every is not None else config.automaton_error_every
        self.max_dismiss_attempts = max_dismiss_attempts
        self.device_id = device_id

        self.state = AutomatonState.STOPPED
        self._task: Optional[asyncio.Task] = None
        self._tick = 0
        self._records: List[InterruptionRecord] = []
        self._handled: Set[str] = set()
        self._active: Dict[tuple[str, str], int] = {}
        self._failures: Dict[str, int] = {}
        self._abandoned: Set[str] = set()
        self._pending: Set[str] = set()
        self._stats: Dict[str, Any] = {}
        self._reset_statistics()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Clear this run's records and start ticking in the background."""
        if self.state != AutomatonState.STOPPED:
            log.warning("Interruption automaton already running")
            return

        self._tick = 0
        self._records.clear()
        self._handled.clear()
        self._active.clear()
        self._failures.clear()
        self._abandoned.clear()
        self._reset_statistics()
        self.state = AutomatonState.RUNNING
        self._task = asyncio.create_task(self._run_loop())
        log.debug(f"Interruption automaton started (every {self.tick_interval * 1000:.0f}ms)")

    async def stop(self) -> None:
        if self.state == AutomatonState.STOPPED:
            return
        self.state = AutomatonState.STOPPED
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        log.debug(f"Interruption automaton stopped ({len(self._records)} interruptions handled)")

    def pause(self) -> None:
        if self.state == AutomatonState.RUNNING:
            self.state = AutomatonState.PAUSED

    def resume(self) -> None:
        if self.state == AutomatonState.PAUSED:
            self.state = AutomatonState.RUNNING

    @property
    def is_running(self) -> bool:
        return self.state != AutomatonState.STOPPED

    @property
    def is_paused(self) -> bool:
        return self.state == AutomatonState.PAUSED

    @property
    def records(self) -> List[InterruptionRecord]:
        return list(self._records)

    @property
    def statistics(self) -> Dict[str, Any]:
        stats = dict(self._stats)
        stats["by_kind"] = dict(self._stats["by_kind"])
        stats["state"] = self.state.value
        return stats

    def expect_permission(self, capability_id: str) -> None:
        """Note that the app may ask for ``capability_id`` soon; enables its icon cues."""
        self._pending.add(capability_category(capability_id))

    async def _run_loop(self) -> None:
        while self.state != AutomatonState.STOPPED:
            await self.tick()
            if self.status_every and self._tick and self._tick % self.status_every == 0:
                log.debug(
                    f"Interruption automaton active... ({self._stats['handled']} handled, "
                    f"{self._stats['skipped_busy']} ticks yielded to script)"
                )
            await asyncio.sleep(self.tick_interval)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> Optional[InterruptionRecord]:
        """Run one detection pass; never raises.

        Returns:
            The record of the interruption dismissed during this tick, if any.
        """
        if self.state == AutomatonState.PAUSED:
            self._stats["skipped_paused"] += 1
            return None

        self._tick += 1
        self._stats["ticks"] += 1

        lease = self.coordinator.acquire(Requester.AUTOMATON)
        if isinstance(lease, Busy):
            self._stats["skipped_busy"] += 1
            return None

        try:
            return await self._evaluate(lease)
        except Exception as e:
            self._stats["errors"] += 1
            if self._stats["errors"] == 1 or (self.error_every and self._stats["errors"] % self.error_every == 0):
                log.warning(f"Interruption automaton tick {self._tick} failed: {e}")
            return None
        finally:
            self.coordinator.release(lease)

    async def _evaluate(self, lease: PumpLease) -> Optional[InterruptionRecord]:
        state = await self.driver.snapshot()
        pending = frozenset(self._pending)

        due = [(rule, detect(rule, state, pending)) for rule in self.rules if rule.due(self._tick)]
        for rule, detections in due:
            self._forget_vanished(rule, detections)

        for rule, detections in due:
            for detection in detections:
                discovered = self._active.setdefault((rule.pattern_id, detection.content_key), self._tick)
                signature = f"{rule.kind.value}|{detection.content_key}|{discovered}"
                if signature in self._handled or signature in self._abandoned:
                    continue
                return await self._handle(detection, signature, state, lease)

        return None

    def _forget_vanished(self, rule: InterruptionRule, detections: List[Detection]) -> None:
        """Drop instances of ``rule`` that are no longer on screen."""
        visible = {d.content_key for d in detections}
        for key in [k for k in self._active if k[0] == rule.pattern_id and k[1] not in visible]:
            del self._active[key]

    async def _handle(
        self, detection: Detection, signature: str, state: UiState, lease: PumpLease
    ) -> Optional[InterruptionRecord]:
        rule = detection.rule
        label = detection.trigger.label or detection.trigger.icon or rule.kind.value

        strategy = await self._dismiss(detection, state)
        if strategy is None:
            self._stats["failed_dismissals"] += 1
            failures = self._failures.get(signature, 0) + 1
            self._failures[signature] = failures
            if failures >= self.max_dismiss_attempts:
                self._abandoned.add(signature)
                error = InterruptionUnhandled(rule.pattern_id, label)
                log.warning(f"{error} after {failures} attempts")
            return None

        await self.coordinator.pump(PumpStrategy.SINGLE, config=SETTLE_FRAME, lease=lease)

        record = InterruptionRecord(
            pattern_id=rule.pattern_id,
            signature=signature,
            handled_at=utc_now(),
            strategy_used=strategy,
        )
        self._records.append(record)
        self._handled.add(signature)
        self._stats["handled"] += 1
        by_kind = self._stats["by_kind"]
        by_kind[rule.kind.value] = by_kind.get(rule.kind.value, 0) + 1

        if rule.kind == InterruptionKind.PERMISSION_ICON:
            self._pending.discard(icon_category(detection.trigger.icon))

        log.log_interruption(rule.kind.value, label, strategy, self.device_id)
        return record

    # ------------------------------------------------------------------
    # Dismissal
    # ------------------------------------------------------------------

    async def _dismiss(self, detection: Detection, state: UiState) -> Optional[str]:
        for target in await self._targets(detection, state):
            strategy = await self._activate(target)
            if strategy:
                return strategy
        return None

    async def _activate(self, target: _Target) -> Optional[str]:
        if target.cascade:
            return await run_cascade(self.driver, target.ref, self.strategies)
        try:
            result = await self.driver.interact(target.ref, target.kind)
        except Exception as e:
            log.debug(f"{target.name} interaction failed: {e}")
            return None
        return target.name if result.ok else None

    async def _targets(self, detection: Detection, state: UiState) -> List[_Target]:
        rule = detection.rule
        container = detection.container.ref() if detection.container is not None else None
        targets: List[_Target] = []

        if rule.act_on_trigger and detection.trigger is not detection.container:
            targets.append(_Target(detection.trigger.ref()))

        for label in rule.action_labels:
            refs = await self._find(ElementQuery(label=label), container, rule.screen_fallback)
            if refs:
                targets.append(_Target(refs[0]))

        for icon in rule.action_icons:
            refs = await self._find(ElementQuery(icon=icon), container, rule.screen_fallback)
            if refs:
                targets.append(_Target(refs[0]))

        for fallback in rule.fallbacks:
            if fallback in (Fallback.FIRST_BUTTON, Fallback.LAST_BUTTON):
                buttons = await self._find(
                    ElementQuery(role=ElementRole.BUTTON.value), container, rule.screen_fallback
                )
                if buttons:
                    pick = buttons[0] if fallback == Fallback.FIRST_BUTTON else buttons[-1]
                    targets.append(_Target(pick))
            elif fallback == Fallback.BARRIER:
                # Tap above the sheet, on the modal barrier
                barrier = self._screen_ref(state, "barrier").at((state.screen_size[0] // 2, BARRIER_Y))
                targets.append(_Target(barrier, cascade=False, name="barrier"))
            elif fallback == Fallback.BACK:
                targets.append(self._back_target(state))

        return targets

    async def _find(
        self, query: ElementQuery, container: Optional[ElementRef], screen_fallback: bool
    ) -> List[ElementRef]:
        """Search inside ``container`` first, then the whole screen if allowed."""
        if container is not None:
            refs = await self.driver.find(replace(query, within=container))
            if refs or not screen_fallback:
                return refs
        return await self.driver.find(query)

    @staticmethod
    def _screen_ref(state: UiState, name: str) -> ElementRef:
        width, height = state.screen_size
        return ElementRef(
            element_id=f"screen:{name}",
            role=ElementRole.BARRIER.value,
            label="",
            bounds=BoundingBox(0, 0, width, height),
        )

    def _back_target(self, state: UiState) -> _Target:
        return _Target(self._screen_ref(state, "back"), kind=InteractionKind.BACK, cascade=False, name="back")

    async def dismiss_any(self) -> Optional[str]:
        """One-shot attempt to clear whatever is covering the app.

        Tries the bottom sheet rule, then common dismiss labels, then system
        back. Runs under the pump lease.

        Raises:
            LeaseConflict: If the script keeps the lease for every attempt.
        """
        async with self.coordinator.lease(Requester.AUTOMATON) as lease:
            state = await self.driver.snapshot()

            for rule in self.rules:
                if rule.kind != InterruptionKind.BOTTOM_SHEET:
                    continue
                for detection in detect(rule, state):
                    strategy = await self._dismiss(detection, state)
                    if strategy:
                        await self.coordinator.pump(PumpStrategy.BOUNDED, config=DISMISS_SETTLE, lease=lease)
                        return strategy

            for label in DISMISS_LABELS:
                refs = await self.driver.find(ElementQuery(label=label))
                if refs:
                    strategy = await run_cascade(self.driver, refs[0], self.strategies)
                    if strategy:
                        await self.coordinator.pump(PumpStrategy.BOUNDED, config=DISMISS_SETTLE, lease=lease)
                        log.info(f"Dismissed UI element with: {label}")
                        return strategy

            strategy = await self._activate(self._back_target(state))
            if strategy:
                await self.coordinator.pump(PumpStrategy.BOUNDED, config=DISMISS_SETTLE, lease=lease)
                return strategy

        log.warning("Could not dismiss any visible element")
        return None

    def _reset_statistics(self) -> None:
        self._stats = {
            "ticks": 0,
            "skipped_paused": 0,
            "skipped_busy": 0,
            "errors": 0,
            "handled": 0,
            "failed_dismissals": 0,
            "by_kind": {},
        }
