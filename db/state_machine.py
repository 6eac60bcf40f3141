"""Card stage transition rules for FlowLane.

Movement rules:
    - Target stage must exist
    - Target stage must belong to the card's pipe
    - Moving to the current stage is a no-op (reported, not rejected)

Unlike a linear workflow, cards may jump to any stage of their pipe;
automations and users route cards freely.

Import validate_stage_move() from here. Do not duplicate this logic.
"""

import sqlite3
from typing import Any


class InvalidTransitionError(Exception):
    """Raised when a stage transition is not allowed."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


def validate_stage_move(
    conn: sqlite3.Connection, card_id: str, target_stage_id: str
) -> dict[str, Any]:
    """Validate a card stage transition.

    Returns dict with current/target stage info on success. ``is_noop`` is
    True when the card already sits in the target stage.
    Raises InvalidTransitionError if the move is invalid.
    """
    card = conn.execute(
        "SELECT id, stage_id, pipe_id FROM cards WHERE id = ?",
        (card_id,),
    ).fetchone()
    if card is None:
        raise InvalidTransitionError(f"Card '{card_id}' not found")

    current_stage = conn.execute(
        "SELECT id, name, position, pipe_id FROM stages WHERE id = ?",
        (card["stage_id"],),
    ).fetchone()

    target_stage = conn.execute(
        "SELECT id, name, position, pipe_id FROM stages WHERE id = ?",
        (target_stage_id,),
    ).fetchone()
    if target_stage is None:
        raise InvalidTransitionError(f"Target stage '{target_stage_id}' not found")

    if target_stage["pipe_id"] != card["pipe_id"]:
        raise InvalidTransitionError(
            f"Target stage '{target_stage['name']}' belongs to a different pipe"
        )

    return {
        "card_id": card_id,
        "pipe_id": card["pipe_id"],
        "current_stage_id": current_stage["id"] if current_stage else None,
        "current_stage_name": current_stage["name"] if current_stage else None,
        "target_stage_id": target_stage["id"],
        "target_stage_name": target_stage["name"],
        "target_position": target_stage["position"],
        "is_noop": current_stage is not None
        and current_stage["id"] == target_stage["id"],
    }


def get_valid_stages(conn: sqlite3.Connection, card_id: str) -> list[dict[str, Any]]:
    """Return the stages a card can be moved to (every other stage of its pipe)."""
    card = conn.execute(
        "SELECT id, stage_id, pipe_id FROM cards WHERE id = ?", (card_id,)
    ).fetchone()
    if card is None:
        raise ValueError(f"Card '{card_id}' not found")

    rows = conn.execute(
        "SELECT * FROM stages "
        "WHERE pipe_id = ? AND id != ? ORDER BY position",
        (card["pipe_id"], card["stage_id"]),
    ).fetchall()
    return [dict(row) for row in rows]
