"""DroidPilot - parallel, cached UI acceptance test runs on Android devices."""

from .core.orchestrator import DeviceSession, RunOptions, RunOrchestrator

__version__ = "0.1.0"

__all__ = ["DeviceSession", "RunOptions", "RunOrchestrator", "__version__"]
