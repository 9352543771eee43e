"""Data models describing device UI state and device inventory."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional


@dataclass(slots=True, frozen=True)
class BoundingBox:
    """Axis-aligned rectangle (left, top, right, bottom) in pixel coordinates."""

    left: int
    top: int
    right: int
    bottom: int

    def width(self) -> int:
        """Width in pixels."""
        return self.right - self.left

    def height(self) -> int:
        """Height in pixels."""
        return self.bottom - self.top

    def center(self) -> tuple[int, int]:
        """Geometric centre ``(x, y)``."""
        return (self.left + self.right) // 2, (self.top + self.bottom) // 2

    def contains(self, point: tuple[int, int]) -> bool:
        x, y = point
        return self.left <= x <= self.right and self.top <= y <= self.bottom

    def as_tuple(self) -> tuple[int, int, int, int]:
        """Return bounding box as ``(left, top, right, bottom)`` tuple."""
        return self.left, self.top, self.right, self.bottom


class ElementRole(str, Enum):
    """Roles a UI driver reports for elements the automaton cares about."""

    BUTTON = "button"
    TEXT = "text"
    ICON = "icon"
    DIALOG = "dialog"
    BOTTOM_SHEET = "bottom_sheet"
    PICKER = "picker"
    BARRIER = "barrier"
    PLATFORM_VIEW = "platform_view"
    OTHER = "other"


@dataclass(slots=True, frozen=True)
class UiElement:
    """One node of a UI snapshot."""

    element_id: str
    role: str
    label: str = ""
    bounds: BoundingBox = field(default_factory=lambda: BoundingBox(0, 0, 0, 0))
    ancestors: tuple[str, ...] = ()  # element ids, nearest first
    icon: Optional[str] = None

    def ref(self) -> ElementRef:
        return ElementRef(
            element_id=self.element_id,
            role=self.role,
            label=self.label,
            bounds=self.bounds,
            icon=self.icon,
        )


@dataclass(slots=True, frozen=True)
class ElementRef:
    """Handle to an element returned by :meth:`UiDriver.find`.

    ``point`` is set when an interaction should target explicit coordinates
    instead of whatever the driver considers the element's hit point.
    """

    element_id: str
    role: str
    label: str
    bounds: BoundingBox
    icon: Optional[str] = None
    point: Optional[tuple[int, int]] = None

    def at(self, point: tuple[int, int]) -> ElementRef:
        """Copy of this reference aimed at ``point``."""
        return replace(self, point=point)

    def center(self) -> tuple[int, int]:
        return self.bounds.center()


@dataclass(slots=True, frozen=True)
class ElementQuery:
    """Selector accepted by :meth:`UiDriver.find`.

    All given criteria must hold. ``label`` matches case-insensitively, as a
    substring unless ``exact``; ``within`` restricts results to descendants of
    a container; ``point`` keeps only elements whose bounds contain it.
    """

    role: Optional[str] = None
    label: Optional[str] = None
    exact: bool = True
    icon: Optional[str] = None
    within: Optional[ElementRef] = None
    point: Optional[tuple[int, int]] = None

    def matches(self, element: UiElement) -> bool:
        if self.role is not None and element.role != self.role:
            return False
        if self.label is not None:
            wanted = self.label.lower()
            have = element.label.lower()
            if self.exact and have != wanted:
                return False
            if not self.exact and wanted not in have:
                return False
        if self.icon is not None and element.icon != self.icon:
            return False
        if self.within is not None and self.within.element_id not in element.ancestors:
            return False
        if self.point is not None and not element.bounds.contains(self.point):
            return False
        return True


@dataclass(slots=True, frozen=True)
class UiState:
    """Snapshot of the screen as reported by the UI driver."""

    elements: tuple[UiElement, ...] = ()
    screen_size: tuple[int, int] = (1080, 1920)

    def query(self, query: ElementQuery) -> list[UiElement]:
        """Elements matching ``query`` in document order."""
        return [element for element in self.elements if query.matches(element)]

    def labels(self) -> list[str]:
        return [element.label for element in self.elements if element.label]

    @property
    def fingerprint(self) -> str:
        """Stable hash of the visible structure, used to detect a settled screen."""
        payload = [
            (e.element_id, e.role, e.label, e.bounds.as_tuple(), e.icon) for e in self.elements
        ]
        return hashlib.md5(json.dumps(payload, sort_keys=True).encode()).hexdigest()


class InteractionKind(str, Enum):
    """Gestures the automaton and scripts issue through the UI driver."""

    TAP = "tap"
    LONG_PRESS = "long_press"
    DOUBLE_TAP = "double_tap"
    BACK = "back"


@dataclass(slots=True, frozen=True)
class InteractionResult:
    ok: bool
    detail: Optional[str] = None


@dataclass
class DeviceInfo:
    """A device as reported by device control."""

    device_id: str
    name: str = ""
    platform: str = "android"
    status: str = "device"
    version: Optional[str] = None

    @property
    def is_available(self) -> bool:
        return self.status in ("device", "booted")


@dataclass
class WatcherHandle:
    """Running on-device watcher process."""

    device_id: str
    pid: Optional[int] = None
    process: Any = None
