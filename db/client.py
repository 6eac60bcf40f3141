"""SQLite connection factory for FlowLane.

The API, the broadcaster, and every automation dispatch open their own
connection, so writers wait on each other through ``busy_timeout``
instead of failing with ``database is locked``.
"""

import sqlite3
from pathlib import Path

BUSY_TIMEOUT_MS = 5000


def get_connection(
    db_path: str | Path, busy_timeout_ms: int = BUSY_TIMEOUT_MS
) -> sqlite3.Connection:
    """Open a WAL-mode connection with foreign keys and dict-like rows."""
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    # Async routes may receive a connection opened in the threadpool
    conn = sqlite3.connect(str(path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn
