"""Ordered interaction strategies used to dismiss an interruption.

Each strategy performs one way of activating an element and reports whether
the driver accepted it. :func:`run_cascade` tries them in order and stops at
the first success.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from ..core.logger import log
from ..device.models import ElementRef, InteractionKind
from ..device.protocols import UiDriver


@dataclass(frozen=True)
class DismissStrategy:
    name: str
    run: Callable[[UiDriver, ElementRef], Awaitable[bool]]


async def tap_direct(driver: UiDriver, ref: ElementRef) -> bool:
    result = await driver.interact(ref, InteractionKind.TAP)
    return result.ok


async def tap_center(driver: UiDriver, ref: ElementRef) -> bool:
    result = await driver.interact(ref.at(ref.center()), InteractionKind.TAP)
    return result.ok


async def long_press(driver: UiDriver, ref: ElementRef) -> bool:
    result = await driver.interact(ref, InteractionKind.LONG_PRESS)
    return result.ok


async def double_tap(driver: UiDriver, ref: ElementRef) -> bool:
    first = await driver.interact(ref, InteractionKind.TAP)
    if not first.ok:
        return False
    await driver.advance_frame(0.05)
    second = await driver.interact(ref, InteractionKind.TAP)
    return second.ok


DEFAULT_STRATEGIES: tuple[DismissStrategy, ...] = (
    DismissStrategy("direct", tap_direct),
    DismissStrategy("center", tap_center),
    DismissStrategy("long_press", long_press),
    DismissStrategy("double_tap", double_tap),
)


async def run_cascade(
    driver: UiDriver,
    ref: ElementRef,
    strategies: Sequence[DismissStrategy] = DEFAULT_STRATEGIES,
) -> Optional[str]:
    """Try each strategy on ``ref``; return the name of the first that succeeded."""
    for strategy in strategies:
        try:
            if await strategy.run(driver, ref):
                return strategy.name
        except Exception as e:
            log.debug(f"Dismiss strategy {strategy.name} failed on '{ref.label}': {e}")
    return None
