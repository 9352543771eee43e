"""Utility functions for DroidPilot.

This sub-package provides:
- Hashing of test sources
- Message truncation and duration formatting
- Filesystem helpers
"""

from .helpers import content_hash, ensure_directory, file_hash, format_duration, truncate_message, utc_now

__all__ = [
    "content_hash",
    "ensure_directory",
    "file_hash",
    "format_duration",
    "truncate_message",
    "utc_now",
]
