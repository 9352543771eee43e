"""Core components of DroidPilot."""

from .config import Config, config
from .errors import (
    DeviceUnavailable,
    DroidPilotError,
    InterruptionUnhandled,
    LeaseConflict,
    RetryExhausted,
    StoreUnavailable,
)
from .logger import Logger, log
from .models import CacheEntry, InterruptionRecord, RunReport, TestCase, TestOutcome, WorkItem
from .result_store import ResultStore

__all__ = [
    "CacheEntry",
    "Config",
    "DeviceUnavailable",
    "DroidPilotError",
    "InterruptionRecord",
    "InterruptionUnhandled",
    "LeaseConflict",
    "Logger",
    "ResultStore",
    "RetryExhausted",
    "RunReport",
    "StoreUnavailable",
    "TestCase",
    "TestOutcome",
    "WorkItem",
    "config",
    "log",
]
