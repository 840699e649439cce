"""Worker exchange logs.

One row per exchange (one request frame written to a worker and its outcome),
kept for observability and debugging. Only request metadata is stored, never
the request payload itself.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .db_config import get_db


def _utc_now() -> str:
    # Same text format as sqlite's datetime('now') so range queries compare correctly
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def ensure_table() -> None:
    """Create worker_logs table if it doesn't exist."""
    with get_db() as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS worker_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,

                -- Request identification
                request_id TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 1,

                -- Timing
                started_at DATETIME NOT NULL,
                completed_at DATETIME,
                duration_ms INTEGER,

                -- Worker metadata
                worker_pid INTEGER,
                worker_slot INTEGER,

                -- Frame sizes
                input_size_bytes INTEGER,
                output_size_bytes INTEGER,

                -- Status
                status TEXT NOT NULL DEFAULT 'running',  -- running, completed, failed
                failure_kind TEXT,
                error_message TEXT,

                -- Timestamps
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_worker_logs_time
            ON worker_logs (started_at DESC)
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_worker_logs_status
            ON worker_logs (status)
        """)


def create_log(
    request_id: str,
    attempt: int = 1,
    worker_pid: Optional[int] = None,
    worker_slot: Optional[int] = None,
    input_size_bytes: Optional[int] = None,
) -> int:
    """
    Create a new log entry when an exchange starts.

    Returns:
        The log ID for updating later
    """
    ensure_table()

    with get_db() as conn:
        cursor = conn.execute(
            """
            INSERT INTO worker_logs (
                request_id, attempt, started_at,
                worker_pid, worker_slot, input_size_bytes, status
            ) VALUES (?, ?, ?, ?, ?, ?, 'running')
            """,
            (
                request_id, attempt, _utc_now(),
                worker_pid, worker_slot, input_size_bytes,
            )
        )
        return cursor.lastrowid


def complete_log(
    log_id: int,
    duration_ms: int,
    output_size_bytes: Optional[int] = None,
    status: str = "completed",
    failure_kind: Optional[str] = None,
    error_message: Optional[str] = None,
) -> None:
    """Update a log entry when the exchange ends."""
    with get_db() as conn:
        conn.execute(
            """
            UPDATE worker_logs SET
                completed_at = ?,
                duration_ms = ?,
                output_size_bytes = ?,
                status = ?,
                failure_kind = ?,
                error_message = ?
            WHERE id = ?
            """,
            (
                _utc_now(),
                duration_ms,
                output_size_bytes,
                status,
                failure_kind,
                error_message,
                log_id,
            )
        )


def get_recent_logs(
    limit: int = 100,
    status: Optional[str] = None,
    failure_kind: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Get recent exchange logs with optional filtering.

    Returns list of log entries as dictionaries.
    """
    ensure_table()

    conditions = []
    params: List[Any] = []

    if status:
        conditions.append("status = ?")
        params.append(status)
    if failure_kind:
        conditions.append("failure_kind = ?")
        params.append(failure_kind)

    where_clause = ""
    if conditions:
        where_clause = "WHERE " + " AND ".join(conditions)

    params.append(limit)

    with get_db() as conn:
        cursor = conn.execute(
            f"""
            SELECT * FROM worker_logs
            {where_clause}
            ORDER BY id DESC
            LIMIT ?
            """,
            params
        )
        return [dict(row) for row in cursor.fetchall()]


def get_log_stats(hours: int = 24) -> Dict[str, Any]:
    """
    Get aggregated statistics for recent exchanges.

    Returns dict with:
    - total_exchanges: Number of finished exchanges
    - completed: Number completed successfully
    - failed: Number that failed
    - avg_duration_ms: Average duration
    - max_duration_ms: Slowest exchange
    """
    ensure_table()

    with get_db() as conn:
        cursor = conn.execute(
            """
            SELECT
                COUNT(*) as total_exchanges,
                SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) as completed,
                SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) as failed,
                AVG(duration_ms) as avg_duration_ms,
                MAX(duration_ms) as max_duration_ms
            FROM worker_logs
            WHERE started_at >= datetime('now', ?) AND status != 'running'
            """,
            (f"-{hours} hours",)
        )
        row = cursor.fetchone()
        return dict(row) if row else {}


def cleanup_old_logs(days: int = 30) -> int:
    """
    Delete logs older than specified days.

    Returns number of deleted rows.
    """
    ensure_table()

    with get_db() as conn:
        cursor = conn.execute(
            """
            DELETE FROM worker_logs
            WHERE started_at < datetime('now', ?)
            """,
            (f"-{days} days",)
        )
        return cursor.rowcount
