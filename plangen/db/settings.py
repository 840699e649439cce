"""Database schema and functions for application settings."""

from typing import Optional, Any

from .db_config import get_db

# Seeded empty: an empty value falls through to the PLANGEN_<KEY> environment
# variable, then to the built-in default named in the description
DEFAULT_SETTINGS = [
    ("pool_size", "", "Number of inference worker processes kept running (default 2)"),
    ("request_timeout_seconds", "", "Overall time budget for one plan generation request (default 30)"),
    ("acquire_timeout_seconds", "", "Maximum seconds a request waits for an idle worker (default 5)"),
    ("max_requests_per_worker", "", "Requests a worker serves before it is retired and replaced, 0=never (default 500)"),
    ("respawn_backoff_seconds", "", "Initial delay between failed worker respawn attempts (default 1)"),
    ("respawn_backoff_max_seconds", "", "Upper bound for the respawn backoff delay (default 30)"),
    ("worker_startup_timeout_seconds", "", "Max seconds for a worker to load its model and report ready (default 120)"),
    ("terminate_grace_seconds", "", "Seconds between SIGTERM and SIGKILL when stopping a worker (default 5)"),
    ("health_check_interval_seconds", "", "Seconds between worker liveness sweeps (default 10)"),
    ("queue_policy", "", "What to do when all workers are busy: wait (bounded) or shed (default wait)"),
    ("max_queue", "", "Maximum requests waiting for a worker, 0=bounded only by acquire timeout (default 0)"),
    ("max_frame_bytes", "", "Largest response frame accepted from a worker (default 16777216)"),
    ("degraded_after_failures", "", "Consecutive spawn failures before the pool reports degraded (default 3)"),
    ("max_worker_rss_mb", "", "Retire idle workers above this resident memory in MB (default no limit)"),
    ("worker_command", "", "Worker command line (default bundled plan worker)"),
    ("worker_cwd", "", "Working directory for worker processes (default inherit)"),
    ("model_path", "", "Model artifact passed to the bundled plan worker (default bundled artifact)"),
    ("record_exchanges", "", "Record every worker exchange in the exchange log, true/false (default true)"),
]


def init_settings_table():
    """Initialize settings table schema."""
    with get_db() as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                description TEXT,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        for key, value, description in DEFAULT_SETTINGS:
            conn.execute("""
                INSERT OR IGNORE INTO settings (key, value, description)
                VALUES (?, ?, ?)
            """, (key, value, description))


def get_setting(key: str, default: Any = None) -> Optional[str]:
    """
    Get a setting value by key.

    Args:
        key: Setting key
        default: Default value if setting not found

    Returns:
        Setting value as string, or default if not found
    """
    with get_db() as conn:
        cursor = conn.execute("""
            SELECT value FROM settings WHERE key = ?
        """, (key,))
        row = cursor.fetchone()
        return row["value"] if row else default


def set_setting(key: str, value: str, description: Optional[str] = None) -> None:
    """
    Set or update a setting value.

    Args:
        key: Setting key
        value: Setting value (will be stored as string)
        description: Optional description of the setting
    """
    with get_db() as conn:
        if description is not None:
            conn.execute("""
                INSERT INTO settings (key, value, description, updated_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    description = excluded.description,
                    updated_at = CURRENT_TIMESTAMP
            """, (key, str(value), description))
        else:
            conn.execute("""
                INSERT INTO settings (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = CURRENT_TIMESTAMP
            """, (key, str(value)))


def get_all_settings() -> dict:
    """
    Get all settings as a dictionary.

    Returns:
        Dictionary of all settings {key: value}
    """
    with get_db() as conn:
        cursor = conn.execute("SELECT key, value FROM settings")
        return {row["key"]: row["value"] for row in cursor.fetchall()}
