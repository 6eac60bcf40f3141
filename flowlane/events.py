"""Board event emission.

Board writes insert an event row in the same transaction as the data
change; the API broadcaster later turns them into websocket messages.
"""

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any

CARD_EVENT_TYPES = frozenset(
    {
        "card_created",
        "card_moved",
        "card_field_updated",
        "form_submitted",
        "email_sent",
        "sms_sent",
    }
)
PIPE_EVENT_TYPES = frozenset({"pipe_created", "pipe_deleted"})
EVENT_TYPES = CARD_EVENT_TYPES | PIPE_EVENT_TYPES


def emit_event(
    conn: sqlite3.Connection,
    event_type: str,
    payload: dict[str, Any],
) -> str:
    """Queue a board event and return its ID.

    Does not commit; the caller commits the data write and the event
    together.

    Raises:
        ValueError: If event_type is not one of EVENT_TYPES.
    """
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown board event type: {event_type}")
    event_id = str(uuid.uuid4())
    conn.execute(
        "INSERT INTO events (id, type, payload, created_at) VALUES (?, ?, ?, ?)",
        (
            event_id,
            event_type,
            json.dumps(payload, default=str),
            datetime.now(timezone.utc).isoformat(),
        ),
    )
    return event_id
