"""
Tests for the pump lease and frame pumping strategies.
"""

import asyncio

import pytest

from conftest import FakeUiDriver, dialog, no_sleep
from droidpilot.automation.pump_coordinator import (
    Busy,
    PumpConfig,
    PumpCoordinator,
    PumpLease,
    PumpStrategy,
    Requester,
)
from droidpilot.core.errors import LeaseConflict


class LeaseRecordingDriver(FakeUiDriver):
    """Notes who holds the pump lease whenever a snapshot is taken."""

    def __init__(self):
        super().__init__()
        self.coordinator = None
        self.holders = []

    async def snapshot(self):
        self.holders.append(self.coordinator.holder)
        return await super().snapshot()


class HangingSnapshotDriver(FakeUiDriver):
    async def snapshot(self):
        await asyncio.Event().wait()


@pytest.fixture
def coordinator(driver):
    return PumpCoordinator(driver, lease_max_attempts=3, lease_retry_delay=0.0, sleep=no_sleep)


class TestLease:
    """Exclusive, non-blocking ownership of the frame clock."""

    def test_second_requester_gets_busy(self, coordinator):
        lease = coordinator.acquire(Requester.SCRIPT)

        other = coordinator.acquire(Requester.AUTOMATON)

        assert isinstance(lease, PumpLease)
        assert isinstance(other, Busy)
        assert other.holder == Requester.SCRIPT
        assert coordinator.holder == Requester.SCRIPT

    def test_release_frees_the_lease(self, coordinator):
        lease = coordinator.acquire(Requester.SCRIPT)

        assert coordinator.release(lease)
        assert coordinator.holder is None
        assert isinstance(coordinator.acquire(Requester.AUTOMATON), PumpLease)

    def test_stale_release_is_a_noop(self, coordinator):
        first = coordinator.acquire(Requester.SCRIPT)
        coordinator.release(first)
        second = coordinator.acquire(Requester.AUTOMATON)

        assert not coordinator.release(first)
        assert coordinator.is_live(second)
        assert coordinator.holder == Requester.AUTOMATON

    @pytest.mark.asyncio
    async def test_lease_context_releases_on_error(self, coordinator):
        with pytest.raises(RuntimeError):
            async with coordinator.lease(Requester.SCRIPT):
                assert coordinator.holder == Requester.SCRIPT
                raise RuntimeError("script failed")

        assert coordinator.holder is None

    @pytest.mark.asyncio
    async def test_lease_conflict_after_attempts(self, coordinator):
        coordinator.acquire(Requester.AUTOMATON)

        with pytest.raises(LeaseConflict) as excinfo:
            async with coordinator.lease(Requester.SCRIPT):
                pass

        assert excinfo.value.attempts == 3
        assert excinfo.value.holder == "automaton"

    @pytest.mark.asyncio
    async def test_with_lease_returns_body_result(self, coordinator):
        async def body(lease):
            assert coordinator.is_live(lease)
            return "done"

        assert await coordinator.with_lease(Requester.SCRIPT, body) == "done"
        assert coordinator.holder is None

    @pytest.mark.asyncio
    async def test_explicit_zero_attempts_is_kept(self, driver):
        coordinator = PumpCoordinator(driver, lease_max_attempts=0, lease_retry_delay=0.0, sleep=no_sleep)

        assert coordinator.lease_max_attempts == 0
        with pytest.raises(LeaseConflict):
            async with coordinator.lease(Requester.SCRIPT):
                pass
        assert coordinator.holder is None


class TestPumpStrategies:
    """Frame counts and termination of each strategy."""

    @pytest.mark.asyncio
    async def test_single_advances_one_frame(self, coordinator, driver):
        result = await coordinator.pump(PumpStrategy.SINGLE)

        assert result.success
        assert result.frames == 1
        assert driver.frames == [0.1]
        assert coordinator.holder is None

    @pytest.mark.asyncio
    async def test_bounded_advances_exactly_max_frames(self, coordinator, driver):
        result = await coordinator.pump(PumpStrategy.BOUNDED, config=PumpConfig(frame_duration=0.0, max_frames=7))

        assert result.success
        assert result.frames == 7
        assert len(driver.frames) == 7

    @pytest.mark.asyncio
    async def test_settle_stops_on_static_screen(self, coordinator):
        coordinator.driver.show(*dialog("d1", "OK"))

        result = await coordinator.pump(PumpStrategy.SETTLE, config=PumpConfig(frame_duration=0.0, settle_frames=2))

        assert result.success
        assert not result.timed_out
        assert result.frames == 3

    @pytest.mark.asyncio
    async def test_settle_times_out_under_continuous_animation(self, coordinator, driver):
        driver.animating = True

        result = await coordinator.pump(
            PumpStrategy.SETTLE, config=PumpConfig(frame_duration=0.0, timeout=0.05, guard_margin=1.0),
        )

        assert result.success
        assert result.timed_out
        assert result.frames > 0

    @pytest.mark.asyncio
    async def test_navigation_frame_pattern(self, coordinator, driver):
        result = await coordinator.pump(PumpStrategy.NAVIGATION)

        assert result.success
        assert driver.frames[0] == 0
        assert driver.frames[-3:] == [0.1, 0.1, 0.1]
        # one initial frame, eight before the settle check may stop, three trailing
        assert result.frames == 12

    @pytest.mark.asyncio
    async def test_adaptive_settles_after_warmup_frames(self, coordinator, driver):
        result = await coordinator.pump(PumpStrategy.ADAPTIVE)

        assert result.success
        assert not result.timed_out
        assert driver.frames[:5] == [0.016] * 5
        assert result.frames == 8

    @pytest.mark.asyncio
    async def test_adaptive_falls_back_to_bounded_frames(self, coordinator, driver):
        driver.animating = True

        result = await coordinator.pump(
            PumpStrategy.ADAPTIVE, config=PumpConfig(frame_duration=0.0, max_frames=400, timeout=10.0),
        )

        assert result.success
        assert not result.timed_out
        assert result.frames >= 400

    @pytest.mark.asyncio
    async def test_guard_timeout_releases_lease(self, coordinator, driver):
        driver.frame_delay = 0.2

        result = await coordinator.pump(
            PumpStrategy.BOUNDED, config=PumpConfig(max_frames=10, timeout=0.1, guard_margin=0.1),
        )

        assert not result.success
        assert result.timed_out
        assert result.frames < 10
        assert coordinator.holder is None

    @pytest.mark.asyncio
    async def test_driver_error_is_reported_not_raised(self, coordinator, driver):
        driver.snapshot_error = RuntimeError("driver disconnected")

        result = await coordinator.pump(PumpStrategy.SETTLE)

        assert not result.success
        assert "driver disconnected" in result.error
        assert coordinator.holder is None


class TestPumpConflicts:
    """Pumping while another party holds the lease."""

    @pytest.mark.asyncio
    async def test_conflict_result_without_frames(self, coordinator, driver):
        coordinator.acquire(Requester.AUTOMATON)

        result = await coordinator.pump(PumpStrategy.SINGLE)

        assert not result.success
        assert result.conflict
        assert driver.frames == []
        assert coordinator.statistics["conflicts"] == 1

    @pytest.mark.asyncio
    async def test_pump_under_held_lease(self, coordinator, driver):
        lease = coordinator.acquire(Requester.AUTOMATON)

        result = await coordinator.pump(PumpStrategy.SINGLE, lease=lease)

        assert result.success
        assert coordinator.is_live(lease)

    @pytest.mark.asyncio
    async def test_stale_lease_is_rejected(self, coordinator, driver):
        lease = coordinator.acquire(Requester.AUTOMATON)
        coordinator.release(lease)

        result = await coordinator.pump(PumpStrategy.SINGLE, lease=lease)

        assert result.conflict
        assert driver.frames == []


class TestPumpUntil:
    """Condition polling with one frame per check."""

    @pytest.mark.asyncio
    async def test_condition_met(self, coordinator, driver):
        def loaded(state):
            if len(driver.frames) >= 3:
                driver.show(*dialog("home", "Continue"))
            return "Continue" in state.labels()

        assert await coordinator.pump_until(loaded, timeout=5.0, check_interval=0.01)

    @pytest.mark.asyncio
    async def test_condition_never_met(self, coordinator):
        assert not await coordinator.pump_until(lambda state: False, timeout=0.05, check_interval=0.01)

    @pytest.mark.asyncio
    async def test_snapshot_taken_under_lease(self):
        driver = LeaseRecordingDriver()
        coordinator = PumpCoordinator(driver, lease_max_attempts=3, lease_retry_delay=0.0, sleep=no_sleep)
        driver.coordinator = coordinator

        assert await coordinator.pump_until(lambda state: True, timeout=1.0, check_interval=0.01)

        assert driver.holders == [Requester.SCRIPT]
        assert coordinator.holder is None

    @pytest.mark.asyncio
    async def test_hung_snapshot_times_out(self):
        driver = HangingSnapshotDriver()
        coordinator = PumpCoordinator(driver, lease_max_attempts=3, lease_retry_delay=0.0, sleep=no_sleep)

        met = await asyncio.wait_for(
            coordinator.pump_until(lambda state: True, timeout=0.05, check_interval=0.01), timeout=2.0
        )

        assert met is False
        assert coordinator.holder is None

    @pytest.mark.asyncio
    async def test_no_snapshot_while_automaton_holds_lease(self, coordinator, driver):
        lease = coordinator.acquire(Requester.AUTOMATON)

        assert not await coordinator.pump_until(lambda state: True, timeout=0.05, check_interval=0.01)

        assert driver.snapshots == 0
        assert coordinator.is_live(lease)

    @pytest.mark.asyncio
    async def test_statistics_reset(self, coordinator):
        await coordinator.pump(PumpStrategy.SINGLE)
        await coordinator.pump(PumpStrategy.BOUNDED, config=PumpConfig(frame_duration=0.0, max_frames=2))

        stats = coordinator.statistics
        assert stats["total_pumps"] == 2
        assert stats["total_frames"] == 3
        assert stats["by_strategy"] == {"single": 1, "bounded": 1}

        coordinator.reset_statistics()
        assert coordinator.statistics["total_pumps"] == 0


def test_presets_are_bounded():
    assert PumpConfig.single().max_frames == 1
    assert PumpConfig.for_strategy(PumpStrategy.BOUNDED).max_frames == 20
    assert PumpConfig.navigation().frame_duration == 0.05
