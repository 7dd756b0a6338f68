"""
PROCESSED_EXECUTION_TRACKER
===========================

Durable exactly-once claims for recurring task executions.

Each claim is a row keyed by ``(store_id, task_id, due_timestamp)`` in a
sqlite database shared by every scheduler in the process (and by other
processes pointing at the same data directory). A claim is created with
``INSERT OR IGNORE``, so of any number of concurrent callers exactly one
sees ``try_claim() == True``.

Usage:
    from taskloop.scheduler.tracker import ProcessedExecutionTracker

    with ProcessedExecutionTracker("./data") as tracker:
        if tracker.try_claim("store-1", "task-1", due_at):
            run_task()

Known limitation: ``cleanup()`` is purely age-based. A claim whose run is
still in flight after ``max_age_days`` can be deleted, after which the same
due time may be claimed again.
"""

import logging
import sqlite3
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from ..config.loader import resolve_data_path
from ..errors import TrackerError, TrackerNotInitializedError

logger = logging.getLogger(__name__)

DB_FILENAME = "processed-task-executions.db"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS processed_task_executions (
    task_id TEXT NOT NULL,
    scheduled_time INTEGER NOT NULL,
    store_id TEXT NOT NULL,
    processed_at REAL NOT NULL,
    PRIMARY KEY (task_id, scheduled_time, store_id)
);
CREATE INDEX IF NOT EXISTS idx_task_store_time
    ON processed_task_executions (store_id, task_id, scheduled_time);
CREATE INDEX IF NOT EXISTS idx_processed_at
    ON processed_task_executions (processed_at);
"""

DueTimestamp = Union[datetime, int, float]


def to_epoch_ms(due: DueTimestamp) -> int:
    """Normalize a due time to integer epoch milliseconds (naive datetimes are UTC)."""
    if isinstance(due, datetime):
        if due.tzinfo is None:
            due = due.replace(tzinfo=timezone.utc)
        return int(round(due.timestamp() * 1000))
    return int(due)


class ProcessedExecutionTracker:
    """sqlite-backed registry of claimed task executions."""

    def __init__(self, data_path: Optional[str] = None, clock: Callable[[], float] = time.time):
        self.data_path = resolve_data_path(data_path)
        self.db_path: Path = self.data_path / DB_FILENAME
        self._clock = clock
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Open (creating if needed) the database. Idempotent."""
        with self._lock:
            if self._conn is not None:
                return
            try:
                self.data_path.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(
                    str(self.db_path),
                    timeout=10.0,
                    check_same_thread=False,
                    isolation_level=None,  # autocommit; each statement is atomic
                )
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA busy_timeout=10000")
                conn.executescript(_SCHEMA)
            except (OSError, sqlite3.Error) as e:
                raise TrackerError(f"Failed to open tracker database {self.db_path}: {e}") from e
            self._conn = conn
        logger.info(f"Processed execution tracker ready at {self.db_path}")

    def close(self) -> None:
        """Close the database. Safe to call when not initialized."""
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
        logger.debug("Processed execution tracker closed")

    @property
    def is_initialized(self) -> bool:
        return self._conn is not None

    def __enter__(self) -> "ProcessedExecutionTracker":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def try_claim(self, store_id: str, task_id: str, due_timestamp: DueTimestamp) -> bool:
        """
        Atomically claim one execution.

        Returns:
            True if this caller created the claim, False if it already existed

        Raises:
            TrackerNotInitializedError: If called before initialize()
            TrackerError: On storage failure
        """
        scheduled = to_epoch_ms(due_timestamp)
        with self._lock:
            conn = self._require_conn()
            try:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO processed_task_executions "
                    "(task_id, scheduled_time, store_id, processed_at) VALUES (?, ?, ?, ?)",
                    (task_id, scheduled, store_id, self._clock()),
                )
            except sqlite3.Error as e:
                raise TrackerError(f"Failed to claim {store_id}/{task_id}@{scheduled}: {e}") from e
            claimed = cursor.rowcount == 1

        if claimed:
            logger.debug(f"Claimed task {task_id} in store {store_id} for {scheduled}")
        else:
            logger.debug(f"Task {task_id} in store {store_id} already processed for {scheduled}")
        return claimed

    def is_processed(self, store_id: str, task_id: str, due_timestamp: DueTimestamp) -> bool:
        scheduled = to_epoch_ms(due_timestamp)
        with self._lock:
            conn = self._require_conn()
            row = conn.execute(
                "SELECT 1 FROM processed_task_executions "
                "WHERE store_id = ? AND task_id = ? AND scheduled_time = ?",
                (store_id, task_id, scheduled),
            ).fetchone()
        return row is not None

    def count_for(self, store_id: Optional[str] = None) -> int:
        """Number of claims, optionally for one store. 0 when not initialized."""
        with self._lock:
            if self._conn is None:
                return 0
            if store_id is None:
                row = self._conn.execute("SELECT COUNT(*) FROM processed_task_executions").fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(*) FROM processed_task_executions WHERE store_id = ?",
                    (store_id,),
                ).fetchone()
        return int(row[0])

    def get_stats(self, store_id: Optional[str] = None) -> Dict:
        stats: Dict = {"processedExecutions": self.count_for(store_id)}
        if store_id is not None:
            stats["storeId"] = store_id
        return stats

    def cleanup(self, max_age_days: float = 30) -> int:
        """
        Delete claims older than ``max_age_days``.

        ``max_age_days <= 0`` deletes every claim.

        Returns:
            Number of rows deleted (0 when not initialized)
        """
        with self._lock:
            if self._conn is None:
                return 0
            try:
                if max_age_days <= 0:
                    cursor = self._conn.execute("DELETE FROM processed_task_executions")
                else:
                    cutoff = self._clock() - max_age_days * 86400
                    cursor = self._conn.execute(
                        "DELETE FROM processed_task_executions WHERE processed_at < ?",
                        (cutoff,),
                    )
            except sqlite3.Error as e:
                raise TrackerError(f"Cleanup failed: {e}") from e
            deleted = cursor.rowcount

        if deleted:
            logger.info(f"Cleaned up {deleted} processed task executions older than {max_age_days} days")
        return deleted

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise TrackerNotInitializedError()
        return self._conn
