"""
Pytest configuration and shared fixtures.

Provides an in-memory UI driver and device control so the orchestrator and
automaton can be exercised without a device.
"""

import asyncio
import os

# Console logging only; must be set before droidpilot reads its settings
os.environ.setdefault("DROIDPILOT_LOG_TO_FILE", "false")
os.environ.setdefault("DROIDPILOT_LOG_LEVEL", "WARNING")

import pytest

from droidpilot.core.result_store import ResultStore
from droidpilot.device.models import (
    BoundingBox,
    DeviceInfo,
    ElementQuery,
    InteractionKind,
    InteractionResult,
    UiElement,
    UiState,
    WatcherHandle,
)


def dialog(dialog_id, *buttons, title="", role="dialog"):
    """Elements of a dialog container holding one button per label."""
    elements = [UiElement(dialog_id, role, label=title, bounds=BoundingBox(100, 600, 980, 1300))]
    for index, label in enumerate(buttons):
        left = 150 + index * 250
        elements.append(
            UiElement(
                f"{dialog_id}-button{index}",
                "button",
                label=label,
                bounds=BoundingBox(left, 1150, left + 200, 1250),
                ancestors=(dialog_id,),
            )
        )
    return elements


class FakeUiDriver:
    """Scriptable stand-in for a device UI driver.

    A successful tap removes the tapped element's outermost container (or the
    element itself), which is how a dismissed dialog disappears.
    """

    def __init__(self, elements=(), screen_size=(1080, 1920)):
        self.elements = list(elements)
        self.screen_size = screen_size
        self.interactions = []
        self.frames = []
        self.snapshots = 0
        self.fail_kinds = set()
        self.raise_kinds = set()
        self.dismiss_on_tap = True
        self.animating = False
        self.snapshot_error = None
        self.frame_delay = 0.0

    def show(self, *elements):
        self.elements.extend(elements)

    def labels(self):
        return [e.label for e in self.elements if e.label]

    async def snapshot(self):
        self.snapshots += 1
        if self.snapshot_error is not None:
            raise self.snapshot_error
        elements = tuple(self.elements)
        if self.animating:
            elements += (UiElement("spinner", "other", label=f"frame-{len(self.frames)}"),)
        return UiState(elements=elements, screen_size=self.screen_size)

    async def find(self, query: ElementQuery):
        state = UiState(elements=tuple(self.elements), screen_size=self.screen_size)
        return [element.ref() for element in state.query(query)]

    async def interact(self, ref, kind):
        self.interactions.append((ref, kind))
        if kind in self.raise_kinds:
            raise RuntimeError(f"{kind.value} not supported")
        if kind in self.fail_kinds:
            return InteractionResult(ok=False, detail="missed")
        if self.dismiss_on_tap and kind == InteractionKind.TAP:
            self._remove(ref.element_id)
        return InteractionResult(ok=True)

    async def advance_frame(self, duration):
        self.frames.append(duration)
        await asyncio.sleep(self.frame_delay)

    def _remove(self, element_id):
        target = next((e for e in self.elements if e.element_id == element_id), None)
        if target is None:
            return
        root = target.ancestors[-1] if target.ancestors else target.element_id
        self.elements = [
            e for e in self.elements if e.element_id != root and root not in e.ancestors
        ]


class FakeDeviceControl:
    """Device control double recording grants and watcher lifecycle."""

    def __init__(self, devices=None):
        self.devices = devices if devices is not None else [
            DeviceInfo("emulator-5554", "Pixel 7"),
            DeviceInfo("emulator-5556", "Pixel 8"),
        ]
        self.granted = []
        self.started = []
        self.stopped = []
        self.list_error = None

    async def list_devices(self):
        if self.list_error is not None:
            raise self.list_error
        return list(self.devices)

    async def grant_capability(self, device, app, capability_id):
        self.granted.append((device, app, capability_id))
        return True

    async def start_watcher_process(self, device):
        self.started.append(device)
        return WatcherHandle(device_id=device, pid=None)

    async def stop_watcher_process(self, handle):
        self.stopped.append(handle.device_id)


async def no_sleep(_delay):
    """Sleep replacement that only yields to the event loop."""
    await asyncio.sleep(0)


@pytest.fixture
def driver():
    return FakeUiDriver()


@pytest.fixture
def device_control():
    return FakeDeviceControl()


@pytest.fixture
def store(tmp_path):
    return ResultStore(tmp_path / "cache" / "test_cache.db")
