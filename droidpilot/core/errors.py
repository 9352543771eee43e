"""Exception taxonomy shared by DroidPilot components."""

from __future__ import annotations


class DroidPilotError(Exception):
    """Base exception for all DroidPilot errors."""
    pass


class StoreUnavailable(DroidPilotError):
    """Raised when the result store cannot be read or written.

    Callers treat this as a cache miss; a run never fails on its account.
    """

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Result store unavailable during {operation}: {reason}")


class LeaseConflict(DroidPilotError):
    """Raised when the pump lease could not be obtained within the allowed attempts."""

    def __init__(self, requester: str, attempts: int, holder: str | None = None):
        self.requester = requester
        self.attempts = attempts
        self.holder = holder
        held_by = f" (held by {holder})" if holder else ""
        super().__init__(f"{requester} could not acquire pump lease after {attempts} attempts{held_by}")


class InterruptionUnhandled(DroidPilotError):
    """Raised when every dismissal strategy failed for a detected interruption."""

    def __init__(self, pattern_id: str, label: str):
        self.pattern_id = pattern_id
        self.label = label
        super().__init__(f"Could not dismiss interruption {pattern_id} ('{label}')")


class RetryExhausted(DroidPilotError):
    """Raised when a retryable failure persisted through every allowed attempt."""

    def __init__(self, identity: str, attempts: int, reasons: list[str]):
        self.identity = identity
        self.attempts = attempts
        self.reasons = list(reasons)
        last = reasons[-1] if reasons else "unknown error"
        super().__init__(f"Failed after {attempts} attempts: {last}")


class DeviceUnavailable(DroidPilotError):
    """Raised when a device cannot accept work (disconnected, offline, or none selected)."""

    def __init__(self, device_id: str | None, reason: str = "device unavailable"):
        self.device_id = device_id
        self.reason = reason
        target = device_id or "no device"
        super().__init__(f"{target}: {reason}")
