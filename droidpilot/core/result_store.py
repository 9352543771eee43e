"""Content-addressed result cache backed by SQLite.

Two tables are kept:

- ``test_cache``: fixed schema, one row per (test path, content hash), holding
  pass/fail, duration, error text and artifact references.
- ``cache_entries``: generic rows addressed by (namespace, key, hash) holding a
  JSON payload.

Both are timestamp-indexed so retention pruning stays cheap. Rows are upserted
with last-write-wins semantics; a lookup only ever matches the exact content
hash, so any change to a test's source invalidates its prior result.
"""

from __future__ import annotations

import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from ..utils.helpers import content_hash, ensure_directory, file_hash, utc_now
from .errors import StoreUnavailable
from .logger import log
from .models import CacheEntry, TestOutcome

DEFAULT_NAMESPACE = ""


def _to_iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


class ResultStore:
    """SQLite persistence for test outcomes and generic cache entries.

    Every public operation opens its own connection; the store is meant for a
    single writer in a single process. Any ``sqlite3.Error`` or filesystem
    error is re-raised as :class:`StoreUnavailable`.
    """

    def __init__(self, db_path: Union[str, Path]):
        """
        Initialize the store, creating the schema when missing.

        Args:
            db_path: Path to the SQLite database file.

        Raises:
            StoreUnavailable: If the database cannot be created or opened.
        """
        self.db_path = str(db_path)
        try:
            parent = os.path.dirname(self.db_path)
            if parent:
                ensure_directory(parent)
        except OSError as e:
            raise StoreUnavailable("init", str(e)) from e
        self._init_db()

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Read-only connection; storage errors become StoreUnavailable."""
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise StoreUnavailable(operation, str(e)) from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise StoreUnavailable(operation, str(e)) from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Connection committed on success and rolled back on any error."""
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise StoreUnavailable(operation, str(e)) from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreUnavailable(operation, str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._transaction("init") as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS test_cache (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    test_path TEXT NOT NULL,
                    test_hash TEXT NOT NULL,
                    passed INTEGER NOT NULL,
                    duration_ms INTEGER NOT NULL,
                    timestamp TEXT NOT NULL,
                    device_id TEXT,
                    error_message TEXT,
                    artifacts TEXT NOT NULL DEFAULT '[]',
                    attempt_count INTEGER NOT NULL DEFAULT 1,
                    error_type TEXT,
                    UNIQUE(test_path, test_hash)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_test_path ON test_cache(test_path)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_test_timestamp ON test_cache(timestamp)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS cache_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    namespace TEXT NOT NULL DEFAULT '',
                    key TEXT NOT NULL,
                    hash TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    UNIQUE(namespace, key, hash)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_entries_key ON cache_entries(namespace, key)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_entries_timestamp ON cache_entries(timestamp)")

    # ------------------------------------------------------------------
    # Generic entries
    # ------------------------------------------------------------------

    def put(self, entry: CacheEntry) -> None:
        """Upsert ``entry`` by (namespace, key, hash); the last write wins."""
        namespace = entry.namespace or DEFAULT_NAMESPACE
        with self._transaction("put") as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO cache_entries (namespace, key, hash, timestamp, payload)
                VALUES (?, ?, ?, ?, ?)
                """,
                (namespace, entry.key, entry.hash, _to_iso(entry.timestamp), json.dumps(entry.payload, default=str)),
            )

    def get(self, key: str, hash: str, namespace: Optional[str] = None) -> Optional[CacheEntry]:
        """Return the most recent entry matching the exact hash, or ``None``."""
        with self._connection("get") as conn:
            row = conn.execute(
                """
                SELECT namespace, key, hash, timestamp, payload FROM cache_entries
                WHERE namespace = ? AND key = ? AND hash = ?
                ORDER BY timestamp DESC, id DESC LIMIT 1
                """,
                (namespace or DEFAULT_NAMESPACE, key, hash),
            ).fetchone()

        if row is None:
            return None
        return CacheEntry(
            key=row["key"],
            hash=row["hash"],
            payload=json.loads(row["payload"]),
            namespace=row["namespace"] or None,
            timestamp=_from_iso(row["timestamp"]),
        )

    def invalidate_namespace(self, namespace: Optional[str] = None) -> int:
        """Delete every entry in ``namespace``; ``None`` clears all namespaces.

        Returns:
            Number of rows removed.
        """
        with self._transaction("invalidate_namespace") as conn:
            if namespace is None:
                cursor = conn.execute("DELETE FROM cache_entries")
            else:
                cursor = conn.execute("DELETE FROM cache_entries WHERE namespace = ?", (namespace,))
            removed = cursor.rowcount
        log.debug(f"Invalidated {removed} cache entries (namespace={namespace!r})")
        return removed

    # ------------------------------------------------------------------
    # Test outcomes
    # ------------------------------------------------------------------

    def put_outcome(self, outcome: TestOutcome) -> None:
        """Record ``outcome`` for its (identity, content hash)."""
        with self._transaction("put_outcome") as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO test_cache
                (test_path, test_hash, passed, duration_ms, timestamp, device_id,
                 error_message, artifacts, attempt_count, error_type)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    outcome.identity,
                    outcome.content_hash,
                    1 if outcome.passed else 0,
                    int(outcome.duration * 1000),
                    _to_iso(outcome.timestamp),
                    outcome.device_id,
                    outcome.error_message,
                    json.dumps(list(outcome.artifact_refs)),
                    outcome.attempt_count,
                    outcome.error_type,
                ),
            )

    def get_outcome(self, identity: str, content_hash: str) -> Optional[TestOutcome]:
        """Return the cached outcome for this exact content hash, or ``None``."""
        with self._connection("get_outcome") as conn:
            row = conn.execute(
                """
                SELECT * FROM test_cache
                WHERE test_path = ? AND test_hash = ?
                ORDER BY timestamp DESC, id DESC LIMIT 1
                """,
                (identity, content_hash),
            ).fetchone()

        if row is None:
            return None
        return TestOutcome(
            identity=row["test_path"],
            content_hash=row["test_hash"],
            passed=bool(row["passed"]),
            duration=row["duration_ms"] / 1000.0,
            timestamp=_from_iso(row["timestamp"]),
            device_id=row["device_id"],
            error_message=row["error_message"],
            artifact_refs=tuple(json.loads(row["artifacts"])),
            attempt_count=row["attempt_count"],
            error_type=row["error_type"],
            cached=True,
        )

    def clear_test(self, identity: str) -> int:
        """Drop every cached outcome for ``identity``."""
        with self._transaction("clear_test") as conn:
            return conn.execute("DELETE FROM test_cache WHERE test_path = ?", (identity,)).rowcount

    def cached_identities(self) -> List[str]:
        """Distinct test identities that have at least one cached outcome."""
        with self._connection("cached_identities") as conn:
            rows = conn.execute("SELECT DISTINCT test_path FROM test_cache ORDER BY test_path").fetchall()
        return [row["test_path"] for row in rows]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def prune_older_than(self, max_age: Union[timedelta, float]) -> int:
        """Delete rows older than ``max_age`` from both tables and compact the file.

        Args:
            max_age: Age as a ``timedelta`` or a number of seconds.

        Returns:
            Total number of rows removed.
        """
        if not isinstance(max_age, timedelta):
            max_age = timedelta(seconds=max_age)
        cutoff = _to_iso(utc_now() - max_age)

        with self._transaction("prune_older_than") as conn:
            removed = conn.execute("DELETE FROM test_cache WHERE timestamp < ?", (cutoff,)).rowcount
            removed += conn.execute("DELETE FROM cache_entries WHERE timestamp < ?", (cutoff,)).rowcount

        self._vacuum()
        log.info(f"Pruned {removed} cache rows older than {max_age}")
        return removed

    def clear_all(self) -> None:
        """Remove every row from both tables."""
        with self._transaction("clear_all") as conn:
            conn.execute("DELETE FROM test_cache")
            conn.execute("DELETE FROM cache_entries")
        self._vacuum()
        log.info("Result cache cleared")

    def _vacuum(self) -> None:
        with self._connection("vacuum") as conn:
            conn.execute("VACUUM")

    def get_stats(self) -> Dict[str, Any]:
        """Summary of the outcome table and the on-disk size."""
        with self._connection("get_stats") as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(passed), 0) AS passed,
                       COALESCE(AVG(duration_ms), 0) AS avg_duration_ms
                FROM test_cache
                """
            ).fetchone()
            entries = conn.execute("SELECT COUNT(*) FROM cache_entries").fetchone()[0]

        try:
            size_bytes = os.path.getsize(self.db_path)
        except OSError:
            size_bytes = 0

        return {
            "total": row["total"],
            "passed": row["passed"],
            "failed": row["total"] - row["passed"],
            "avg_duration_ms": round(row["avg_duration_ms"], 1),
            "entries": entries,
            "cache_size_mb": round(size_bytes / (1024 * 1024), 3),
            "cache_path": self.db_path,
        }

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    @staticmethod
    def file_hash(path: Union[str, Path]) -> str:
        """SHA-256 of a test file's bytes."""
        return file_hash(path)

    @staticmethod
    def content_hash(data: Union[str, bytes]) -> str:
        """SHA-256 of raw test source."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        return content_hash(data)
