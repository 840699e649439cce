"""SQLite access shared by the settings store and the exchange log."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DB_FILENAME = "plangen.db"


def get_db_path() -> Path:
    """Database file inside the data directory, created on first use."""
    from ..config import get_data_dir

    data_dir = get_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / DB_FILENAME


@contextmanager
def get_db(timeout: float = 5.0) -> Iterator[sqlite3.Connection]:
    """
    Open a connection for one unit of work.

    Commits when the block exits normally, rolls back when it raises.
    Connections are never shared between calls.

    Args:
        timeout: Seconds to wait for another writer's lock
    """
    conn = sqlite3.connect(get_db_path(), timeout=timeout)
    conn.row_factory = sqlite3.Row

    # Settings reads keep going while the orchestrator appends exchange rows
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")

    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
