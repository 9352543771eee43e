"""Test execution machinery.

This sub-package provides:
- Pump lease and frame pumping strategies
- Interruption detection and dismissal
- Retry with exponential backoff
- Parallel scheduling across devices
"""

from .interruption_automaton import AutomatonState, InterruptionAutomaton
from .interruption_rules import DEFAULT_RULES, InterruptionKind, InterruptionRule
from .pump_coordinator import Busy, PumpConfig, PumpCoordinator, PumpLease, PumpResult, PumpStrategy, Requester
from .retry_engine import RetryEngine, RetryOptions, is_retriable_error
from .scheduler import DeviceWorkScheduler, DistributionMode, optimal_device_count

__all__ = [
    "AutomatonState",
    "Busy",
    "DEFAULT_RULES",
    "DeviceWorkScheduler",
    "DistributionMode",
    "InterruptionAutomaton",
    "InterruptionKind",
    "InterruptionRule",
    "PumpConfig",
    "PumpCoordinator",
    "PumpLease",
    "PumpResult",
    "PumpStrategy",
    "Requester",
    "RetryEngine",
    "RetryOptions",
    "is_retriable_error",
    "optimal_device_count",
]
