"""FastAPI dependency injection and DB helpers for FlowLane."""

import json
import sqlite3
from collections.abc import Generator
from typing import Any

from fastapi import HTTPException

from db.client import get_connection
from engine.orchestrator import AutomationEngine
from flowlane.events import CARD_EVENT_TYPES


# Module-level DB path and engine, set by app startup
_db_path: str = ""
_engine: AutomationEngine | None = None


def set_db_path(path: str) -> None:
    """Set the database path used by the DB dependency."""
    global _db_path  # noqa: PLW0603
    _db_path = path


def set_engine(engine: AutomationEngine | None) -> None:
    """Set the automation engine used by dispatching routes."""
    global _engine  # noqa: PLW0603
    _engine = engine


def get_db() -> Generator[sqlite3.Connection, None, None]:
    """FastAPI dependency that yields a DB connection per request."""
    conn = get_connection(_db_path)
    try:
        yield conn
    finally:
        conn.close()


def get_engine() -> AutomationEngine:
    """FastAPI dependency returning the app's automation engine."""
    if _engine is None:
        raise HTTPException(status_code=503, detail="Automation engine is not running")
    return _engine


def get_unconsumed_events(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    """Fetch all unconsumed events from the events table."""
    rows = conn.execute(
        "SELECT id, type, payload, created_at FROM events WHERE consumed = 0 ORDER BY created_at"
    ).fetchall()
    return [
        {
            "id": row["id"],
            "type": row["type"],
            "payload": json.loads(row["payload"]),
            "created_at": row["created_at"],
        }
        for row in rows
    ]


def mark_event_consumed(conn: sqlite3.Connection, event_id: str) -> None:
    """Mark an event as consumed."""
    conn.execute("UPDATE events SET consumed = 1 WHERE id = ?", (event_id,))
    conn.commit()


def enrich_event_payload(
    conn: sqlite3.Connection, event: dict[str, Any]
) -> dict[str, Any]:
    """Build a websocket event with the full card row, not just IDs."""
    event_type = event["type"]
    payload = event["payload"]

    if event_type in CARD_EVENT_TYPES:
        card_id = payload.get("card_id")
        if card_id:
            card = conn.execute(
                """SELECT c.*,
                          s.name as stage_name,
                          s.position as stage_position
                   FROM cards c
                   JOIN stages s ON c.stage_id = s.id
                   WHERE c.id = ?""",
                (card_id,),
            ).fetchone()
            if card:
                return {"type": event_type, "payload": {**payload, "card": dict(card)}}

    elif event_type == "pipe_created":
        pipe_id = payload.get("pipe_id")
        if pipe_id:
            pipe = conn.execute("SELECT * FROM pipes WHERE id = ?", (pipe_id,)).fetchone()
            if pipe:
                return {"type": event_type, "payload": dict(pipe)}

    # Fallback: return raw payload
    return {"type": event_type, "payload": payload}
