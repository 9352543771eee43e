"""Protocol definitions for the device-side collaborators.

A concrete UI driver (instrumentation bridge, accessibility service, test
harness) and device control backend implement these so they can be handed
to :class:`droidpilot.core.orchestrator.RunOrchestrator`.
"""

from __future__ import annotations

from typing import List, Protocol

from .models import DeviceInfo, ElementQuery, ElementRef, InteractionKind, InteractionResult, UiState, WatcherHandle


class UiDriver(Protocol):
    """Inspects and manipulates the UI of one running application."""

    async def snapshot(self) -> UiState:
        """Return the current UI tree."""
        ...

    async def find(self, query: ElementQuery) -> List[ElementRef]:
        """Return references to elements matching ``query``."""
        ...

    async def interact(self, ref: ElementRef, kind: InteractionKind) -> InteractionResult:
        """Perform ``kind`` on ``ref`` (at ``ref.point`` when set)."""
        ...

    async def advance_frame(self, duration: float) -> None:
        """Advance the render clock by ``duration`` seconds (0 for one frame)."""
        ...


class DeviceControl(Protocol):
    """Enumerates devices and manages per-device helper processes."""

    async def list_devices(self) -> List[DeviceInfo]:
        ...

    async def grant_capability(self, device: str, app: str, capability_id: str) -> bool:
        ...

    async def start_watcher_process(self, device: str) -> WatcherHandle:
        ...

    async def stop_watcher_process(self, handle: WatcherHandle) -> None:
        ...


__all__ = ["DeviceControl", "UiDriver"]
