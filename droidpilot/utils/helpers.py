"""Helper utility functions for DroidPilot."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Union

TRUNCATION_SUFFIX = "... [truncated]"


def truncate_message(message: str | None, max_length: int) -> str | None:
    """Bound an error message to ``max_length`` characters.

    Args:
        message: Message to truncate, may be ``None``.
        max_length: Maximum length of the returned string, suffix included.

    Returns:
        The original message when short enough, otherwise a truncated copy
        ending in a marker.
    """
    if message is None or len(message) <= max_length:
        return message
    if max_length <= len(TRUNCATION_SUFFIX):
        return message[:max_length]
    return message[: max_length - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds.

    Returns:
        Formatted duration string.
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = seconds / 60
        return f"{minutes:.1f}m"
    else:
        hours = seconds / 3600
        return f"{hours:.1f}h"


def ensure_directory(directory_path: Union[str, Path]) -> str:
    """Ensure a directory exists, creating it if necessary.

    Returns:
        Absolute path to the directory.
    """
    path = Path(directory_path).resolve()
    path.mkdir(parents=True, exist_ok=True)
    return str(path)


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def file_hash(path: Union[str, Path]) -> str:
    """SHA-256 hex digest of a file's bytes, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
