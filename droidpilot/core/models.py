"""Core data model shared across the orchestrator components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..utils.helpers import file_hash, utc_now


@dataclass(frozen=True)
class TestCase:
    """A single schedulable test, identified by path and source hash."""

    __test__ = False  # not a pytest collection target

    identity: str
    content_hash: str
    path: Optional[str] = None

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> TestCase:
        """Build a test case whose hash is the SHA-256 of the file bytes."""
        return cls(identity=str(path), content_hash=file_hash(path), path=str(path))


@dataclass(frozen=True)
class TestOutcome:
    """Immutable result of running one test (possibly across several attempts)."""

    __test__ = False

    identity: str
    content_hash: str
    passed: bool
    duration: float
    timestamp: datetime = field(default_factory=utc_now)
    device_id: Optional[str] = None
    error_message: Optional[str] = None
    artifact_refs: tuple[str, ...] = ()
    attempt_count: int = 1
    failure_reasons: tuple[str, ...] = ()
    error_type: Optional[str] = None
    cached: bool = False

    @classmethod
    def failure(
        cls,
        identity: str,
        content_hash: str,
        error: Union[str, BaseException],
        *,
        device_id: Optional[str] = None,
        duration: float = 0.0,
        error_type: Optional[str] = None,
    ) -> TestOutcome:
        """Synthesize a failed outcome from an error or message."""
        if isinstance(error, BaseException):
            message = str(error) or type(error).__name__
            error_type = error_type or type(error).__name__
        else:
            message = error
        return cls(
            identity=identity,
            content_hash=content_hash,
            passed=False,
            duration=duration,
            device_id=device_id,
            error_message=message,
            failure_reasons=(message,),
            error_type=error_type,
        )


@dataclass(frozen=True)
class CacheEntry:
    """Generic cache row addressed by (namespace, key, hash)."""

    key: str
    hash: str
    payload: Any
    namespace: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class WorkItem:
    """One (test, device) execution unit with a bounded attempt counter."""

    identity: str
    assigned_device: str
    max_attempts: int = 1
    attempt: int = 0

    def next_attempt(self) -> int:
        """Advance the attempt counter.

        Raises:
            ValueError: If the counter is already at ``max_attempts``.
        """
        if self.attempt >= self.max_attempts:
            raise ValueError(
                f"{self.identity} on {self.assigned_device} exceeded {self.max_attempts} attempts"
            )
        self.attempt += 1
        return self.attempt


@dataclass(frozen=True)
class InterruptionRecord:
    """A handled interruption instance."""

    pattern_id: str
    signature: str
    handled_at: datetime
    strategy_used: str


@dataclass
class RunReport:
    """Per-test outcomes of one orchestrated run."""

    outcomes: Dict[str, TestOutcome] = field(default_factory=dict)
    cached: List[str] = field(default_factory=list)
    devices: List[str] = field(default_factory=list)
    wall_time: float = 0.0

    @property
    def passed(self) -> List[str]:
        return [identity for identity, outcome in self.outcomes.items() if outcome.passed]

    @property
    def failed(self) -> List[str]:
        return [identity for identity, outcome in self.outcomes.items() if not outcome.passed]

    def summary(self) -> Dict[str, Any]:
        """Counts suitable for a final log line or a report header."""
        return {
            "total": len(self.outcomes),
            "passed": len(self.passed),
            "failed": len(self.failed),
            "cached": len(self.cached),
            "devices": list(self.devices),
            "wall_time": round(self.wall_time, 2),
        }
