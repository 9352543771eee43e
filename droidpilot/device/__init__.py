"""Device-side interfaces and the adb backend."""

from .adb import AdbDeviceControl, AdbError
from .models import (
    BoundingBox,
    DeviceInfo,
    ElementQuery,
    ElementRef,
    ElementRole,
    InteractionKind,
    InteractionResult,
    UiElement,
    UiState,
    WatcherHandle,
)
from .protocols import DeviceControl, UiDriver

__all__ = [
    "AdbDeviceControl",
    "AdbError",
    "BoundingBox",
    "DeviceControl",
    "DeviceInfo",
    "ElementQuery",
    "ElementRef",
    "ElementRole",
    "InteractionKind",
    "InteractionResult",
    "UiDriver",
    "UiElement",
    "UiState",
    "WatcherHandle",
]
