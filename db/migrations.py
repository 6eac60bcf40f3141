"""Schema creation for FlowLane.

Every statement uses IF NOT EXISTS, so migrating an up-to-date database
is a no-op. The schema version is stamped into ``PRAGMA user_version``.
"""

import logging
import sqlite3
from pathlib import Path

from db.client import get_connection
from db.schema import INDEXES, SCHEMA_VERSION, TABLE_CREATION_ORDER, TABLES

logger = logging.getLogger(__name__)


def schema_version(conn: sqlite3.Connection) -> int:
    return conn.execute("PRAGMA user_version").fetchone()[0]


def run_migrations(conn: sqlite3.Connection) -> int:
    """Create missing tables and indexes, returning the resulting schema version."""
    current = schema_version(conn)
    if current > SCHEMA_VERSION:
        raise RuntimeError(
            f"Database schema version {current} is newer than this build ({SCHEMA_VERSION})"
        )

    for table_name in TABLE_CREATION_ORDER:
        conn.execute(TABLES[table_name])
    for statement in INDEXES:
        conn.execute(statement)
    if current != SCHEMA_VERSION:
        conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")
        logger.info("Migrated schema from version %d to %d", current, SCHEMA_VERSION)
    conn.commit()
    return SCHEMA_VERSION


def init_db(db_path: str | Path) -> sqlite3.Connection:
    """Open a connection, run migrations, and return the ready connection."""
    conn = get_connection(db_path)
    run_migrations(conn)
    return conn
