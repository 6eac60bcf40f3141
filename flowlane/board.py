"""Board operations for FlowLane.

Each function takes a sqlite3.Connection and explicit params, returns a
dict (or list). Failures come back as ``{"error": code, "message": ...}``
dicts; the API layer maps the codes onto HTTP statuses and the
automation engine maps them onto its own exceptions.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from db.state_machine import InvalidTransitionError, validate_stage_move
from engine.models import (
    Automation,
    FormTriggerConfig,
    MoveCardConfig,
    OwnerRef,
    SendEmailConfig,
    SendFormLinkConfig,
    SendSmsConfig,
    StageTriggerConfig,
)
from flowlane.events import emit_event

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _uuid() -> str:
    return str(uuid.uuid4())


def _row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    return dict(row)


def _loads(text: str | None, default: Any = None) -> Any:
    if text is None:
        return default
    return json.loads(text)


def _loads_stored(text: str | None, default: Any = None) -> Any:
    """Parse a stored JSON column, keeping the raw text if it is corrupt.

    Raw text fails model validation downstream, so one bad row is reported
    instead of breaking every read of the pipe's automations.
    """
    try:
        return _loads(text, default)
    except json.JSONDecodeError:
        logger.warning("Stored JSON column is corrupt: %.40r", text)
        return text


def _not_found(kind: str, ident: str) -> dict[str, Any]:
    return {"error": "not_found", "message": f"{kind} '{ident}' not found"}


# ── Pipe tools ────────────────────────────────────────────


def create_pipe(
    conn: sqlite3.Connection,
    name: str,
    stages: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Create a pipe, optionally with an initial ordered list of stages."""
    if not name:
        return {"error": "invalid_input", "message": "Pipe name is required"}

    pipe_id = _uuid()
    now = _now()
    conn.execute(
        "INSERT INTO pipes (id, name, created_at) VALUES (?, ?, ?)",
        (pipe_id, name, now),
    )

    created_stages = []
    for position, stage in enumerate(stages or []):
        stage_name = stage.get("name")
        if not stage_name:
            conn.rollback()
            return {
                "error": "invalid_input",
                "message": f"Stage at position {position} missing 'name'",
            }
        stage_id = _uuid()
        conn.execute(
            """INSERT INTO stages (id, pipe_id, name, position, background_color, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (stage_id, pipe_id, stage_name, position, stage.get("background_color"), now),
        )
        created_stages.append(
            {
                "id": stage_id,
                "pipe_id": pipe_id,
                "name": stage_name,
                "position": position,
                "background_color": stage.get("background_color"),
                "created_at": now,
            }
        )

    emit_event(conn, "pipe_created", {"pipe_id": pipe_id})
    conn.commit()

    return {"id": pipe_id, "name": name, "created_at": now, "stages": created_stages}


def list_pipes(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    rows = conn.execute("SELECT * FROM pipes ORDER BY created_at").fetchall()
    return [_row_to_dict(r) for r in rows]


def get_pipe(conn: sqlite3.Connection, pipe_id: str) -> dict[str, Any]:
    """Return a pipe with its ordered stages (each with its forms)."""
    pipe = conn.execute("SELECT * FROM pipes WHERE id = ?", (pipe_id,)).fetchone()
    if pipe is None:
        return _not_found("Pipe", pipe_id)

    result = _row_to_dict(pipe)
    result["stages"] = get_stages(conn, pipe_id)
    forms_by_stage: dict[str, list[dict[str, Any]]] = {
        s["id"]: [] for s in result["stages"]
    }
    for form in _forms_for_pipe(conn, pipe_id):
        forms_by_stage[form["stage_id"]].append(form)
    for stage in result["stages"]:
        stage["forms"] = forms_by_stage[stage["id"]]
    return result


def delete_pipe(conn: sqlite3.Connection, pipe_id: str) -> dict[str, Any]:
    """Delete a pipe. Stages, cards, automations and templates cascade."""
    pipe = conn.execute("SELECT id FROM pipes WHERE id = ?", (pipe_id,)).fetchone()
    if pipe is None:
        return _not_found("Pipe", pipe_id)

    conn.execute("DELETE FROM pipes WHERE id = ?", (pipe_id,))
    emit_event(conn, "pipe_deleted", {"pipe_id": pipe_id})
    conn.commit()
    return {"id": pipe_id, "deleted": True}


def duplicate_pipe(conn: sqlite3.Connection, pipe_id: str) -> dict[str, Any]:
    """Copy a pipe's stages, forms, templates and automations (not its cards).

    Automation configs are rewritten structurally so they reference the
    new stages, forms and templates.
    """
    source = get_pipe(conn, pipe_id)
    if "error" in source:
        return source

    now = _now()
    new_pipe_id = _uuid()
    new_name = f"{source['name']} (Copy)"
    conn.execute(
        "INSERT INTO pipes (id, name, created_at) VALUES (?, ?, ?)",
        (new_pipe_id, new_name, now),
    )

    stage_ids: dict[str, str] = {}
    form_ids: dict[str, str] = {}
    template_ids: dict[str, str] = {}

    for stage in source["stages"]:
        stage_ids[stage["id"]] = _uuid()
        conn.execute(
            """INSERT INTO stages (id, pipe_id, name, position, background_color, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                stage_ids[stage["id"]],
                new_pipe_id,
                stage["name"],
                stage["position"],
                stage["background_color"],
                now,
            ),
        )
        for form in stage["forms"]:
            form_ids[form["id"]] = _uuid()
            conn.execute(
                """INSERT INTO stage_forms (id, stage_id, name, form_type, fields, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    form_ids[form["id"]],
                    stage_ids[stage["id"]],
                    form["name"],
                    form["form_type"],
                    json.dumps(form["fields"]),
                    now,
                ),
            )

    for template in list_email_templates(conn, pipe_id):
        template_ids[template["id"]] = _uuid()
        conn.execute(
            """INSERT INTO email_templates
               (id, pipe_id, name, subject, body, from_email, from_name, to_email, cc, bcc,
                description, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                template_ids[template["id"]],
                new_pipe_id,
                template["name"],
                template["subject"],
                template["body"],
                template["from_email"],
                template["from_name"],
                template["to_email"],
                template["cc"],
                template["bcc"],
                template["description"],
                now,
            ),
        )

    for template in list_sms_templates(conn, pipe_id):
        template_ids[template["id"]] = _uuid()
        conn.execute(
            """INSERT INTO sms_templates (id, pipe_id, name, body, description, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                template_ids[template["id"]],
                new_pipe_id,
                template["name"],
                template["body"],
                template["description"],
                now,
            ),
        )

    copied_automations = 0
    for row in list_automations(conn, pipe_id):
        try:
            automation = Automation.model_validate(row)
        except ValidationError as e:
            logger.warning(
                "Skipping invalid automation %s while duplicating pipe %s: %s",
                row["id"],
                pipe_id,
                e,
            )
            continue
        copy = automation.remap_ids(stage_ids, form_ids, template_ids)
        owner = copy.owner or OwnerRef(type="pipe", id=new_pipe_id)
        if owner.type == "pipe":
            owner = OwnerRef(type="pipe", id=new_pipe_id)
        _insert_automation(
            conn,
            copy.model_copy(
                update={"id": _uuid(), "pipe_id": new_pipe_id, "owner": owner}
            ),
            now,
        )
        copied_automations += 1

    emit_event(
        conn, "pipe_created", {"pipe_id": new_pipe_id, "duplicated_from": pipe_id}
    )
    conn.commit()

    return {
        "id": new_pipe_id,
        "name": new_name,
        "duplicated_from": pipe_id,
        "stage_ids": stage_ids,
        "form_ids": form_ids,
        "template_ids": template_ids,
        "automations_copied": copied_automations,
    }


# ── Stage and form tools ──────────────────────────────────


def create_stage(
    conn: sqlite3.Connection,
    pipe_id: str,
    name: str,
    position: int | None = None,
    background_color: str | None = None,
) -> dict[str, Any]:
    """Add a stage to a pipe. Position defaults to the end of the pipe."""
    pipe = conn.execute("SELECT id FROM pipes WHERE id = ?", (pipe_id,)).fetchone()
    if pipe is None:
        return _not_found("Pipe", pipe_id)
    if not name:
        return {"error": "invalid_input", "message": "Stage name is required"}

    if position is None:
        row = conn.execute(
            "SELECT COALESCE(MAX(position), -1) + 1 AS next_pos FROM stages WHERE pipe_id = ?",
            (pipe_id,),
        ).fetchone()
        position = row["next_pos"]

    stage_id = _uuid()
    now = _now()
    try:
        conn.execute(
            """INSERT INTO stages (id, pipe_id, name, position, background_color, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (stage_id, pipe_id, name, position, background_color, now),
        )
    except sqlite3.IntegrityError:
        conn.rollback()
        return {
            "error": "invalid_input",
            "message": f"Position {position} is already taken in pipe '{pipe_id}'",
        }
    conn.commit()

    return {
        "id": stage_id,
        "pipe_id": pipe_id,
        "name": name,
        "position": position,
        "background_color": background_color,
        "created_at": now,
    }


def get_stages(conn: sqlite3.Connection, pipe_id: str) -> list[dict[str, Any]]:
    """Return the ordered stages of a pipe."""
    rows = conn.execute(
        "SELECT * FROM stages WHERE pipe_id = ? ORDER BY position",
        (pipe_id,),
    ).fetchall()
    return [_row_to_dict(r) for r in rows]


def get_stage(conn: sqlite3.Connection, stage_id: str) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM stages WHERE id = ?", (stage_id,)).fetchone()
    return _row_to_dict(row) if row else None


def create_form(
    conn: sqlite3.Connection,
    stage_id: str,
    name: str,
    form_type: str = "client",
    fields: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Attach a form definition to a stage."""
    stage = get_stage(conn, stage_id)
    if stage is None:
        return _not_found("Stage", stage_id)
    if form_type not in ("client", "admin"):
        return {
            "error": "invalid_input",
            "message": f"Invalid form type '{form_type}'. Must be 'client' or 'admin'",
        }

    form_id = _uuid()
    now = _now()
    conn.execute(
        """INSERT INTO stage_forms (id, stage_id, name, form_type, fields, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (form_id, stage_id, name, form_type, json.dumps(fields or []), now),
    )
    conn.commit()

    return {
        "id": form_id,
        "stage_id": stage_id,
        "pipe_id": stage["pipe_id"],
        "name": name,
        "form_type": form_type,
        "fields": fields or [],
        "created_at": now,
    }


def _form_row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    form = _row_to_dict(row)
    form["fields"] = _loads(form["fields"], [])
    return form


def _forms_for_pipe(conn: sqlite3.Connection, pipe_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        """SELECT f.*, s.pipe_id
           FROM stage_forms f
           JOIN stages s ON f.stage_id = s.id
           WHERE s.pipe_id = ?
           ORDER BY s.position, f.created_at""",
        (pipe_id,),
    ).fetchall()
    return [_form_row_to_dict(r) for r in rows]


def get_form(conn: sqlite3.Connection, form_id: str) -> dict[str, Any] | None:
    row = conn.execute(
        """SELECT f.*, s.pipe_id
           FROM stage_forms f
           JOIN stages s ON f.stage_id = s.id
           WHERE f.id = ?""",
        (form_id,),
    ).fetchone()
    return _form_row_to_dict(row) if row else None


def get_client_forms(conn: sqlite3.Connection, pipe_id: str) -> list[dict[str, Any]]:
    """Client-facing forms of a pipe, used for form-link placeholders."""
    return [f for f in _forms_for_pipe(conn, pipe_id) if f["form_type"] == "client"]


# ── Card tools ────────────────────────────────────────────


def create_card(
    conn: sqlite3.Connection,
    pipe_id: str,
    stage_id: str,
    title: str,
    description: str = "",
    fields: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Create a card at a stage, with optional initial custom fields."""
    pipe = conn.execute("SELECT id FROM pipes WHERE id = ?", (pipe_id,)).fetchone()
    if pipe is None:
        return _not_found("Pipe", pipe_id)

    stage = get_stage(conn, stage_id)
    if stage is None:
        return _not_found("Stage", stage_id)
    if stage["pipe_id"] != pipe_id:
        return {
            "error": "invalid_input",
            "message": f"Stage '{stage_id}' does not belong to pipe '{pipe_id}'",
        }
    if not title:
        return {"error": "invalid_input", "message": "Card title is required"}

    card_id = _uuid()
    now = _now()
    conn.execute(
        """INSERT INTO cards (id, pipe_id, stage_id, title, description, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (card_id, pipe_id, stage_id, title, description, now, now),
    )
    for position, (key, value) in enumerate((fields or {}).items()):
        conn.execute(
            """INSERT INTO card_fields (id, card_id, key, type, value, position)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (_uuid(), card_id, key, _field_type(value), json.dumps(value), position),
        )
    emit_event(
        conn,
        "card_created",
        {"card_id": card_id, "pipe_id": pipe_id, "stage_id": stage_id},
    )
    conn.commit()

    return get_card(conn, card_id)


def _field_type(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, dict) and "url" in value:
        return "file"
    return "text"


def get_card(conn: sqlite3.Connection, card_id: str) -> dict[str, Any]:
    """Return a card with fields, stage, pipe and form submissions expanded."""
    card = conn.execute(
        """SELECT c.*,
                  s.name AS stage_name, s.position AS stage_position,
                  p.name AS pipe_name
           FROM cards c
           JOIN stages s ON c.stage_id = s.id
           JOIN pipes p ON c.pipe_id = p.id
           WHERE c.id = ?""",
        (card_id,),
    ).fetchone()
    if card is None:
        return _not_found("Card", card_id)

    result = _row_to_dict(card)
    result["stage"] = {
        "id": result["stage_id"],
        "name": result.pop("stage_name"),
        "position": result.pop("stage_position"),
    }
    result["pipe"] = {"id": result["pipe_id"], "name": result.pop("pipe_name")}

    fields = conn.execute(
        "SELECT * FROM card_fields WHERE card_id = ? ORDER BY position, key",
        (card_id,),
    ).fetchall()
    result["fields"] = [
        {**_row_to_dict(f), "value": _loads(f["value"])} for f in fields
    ]

    submissions = conn.execute(
        """SELECT fs.*, f.name AS form_name
           FROM form_submissions fs
           JOIN stage_forms f ON fs.form_id = f.id
           WHERE fs.card_id = ?
           ORDER BY fs.submitted_at DESC""",
        (card_id,),
    ).fetchall()
    result["form_submissions"] = [
        {
            "id": s["id"],
            "form": {"id": s["form_id"], "name": s["form_name"]},
            "responses": _loads(s["responses"], {}),
            "submitted_at": s["submitted_at"],
            "submitter_email": s["submitter_email"],
        }
        for s in submissions
    ]
    return result


def move_card(conn: sqlite3.Connection, card_id: str, stage_id: str) -> dict[str, Any]:
    """Move a card to another stage of its pipe.

    Moving a card to the stage it is already in is a no-op and reports
    ``moved: False``.
    """
    try:
        transition = validate_stage_move(conn, card_id, stage_id)
    except InvalidTransitionError as e:
        code = "not_found" if "not found" in str(e) else "invalid_transition"
        return {"error": code, "message": str(e)}

    result = {
        "card_id": card_id,
        "moved": not transition["is_noop"],
        "from_stage_id": transition["current_stage_id"],
        "from_stage_name": transition["current_stage_name"],
        "to_stage_id": transition["target_stage_id"],
        "to_stage_name": transition["target_stage_name"],
    }
    if transition["is_noop"]:
        return result

    now = _now()
    conn.execute(
        "UPDATE cards SET stage_id = ?, updated_at = ? WHERE id = ?",
        (stage_id, now, card_id),
    )
    conn.execute(
        """INSERT INTO card_history
           (id, card_id, from_stage_id, to_stage_id, from_stage_name, to_stage_name, moved_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (
            _uuid(),
            card_id,
            transition["current_stage_id"],
            transition["target_stage_id"],
            transition["current_stage_name"],
            transition["target_stage_name"],
            now,
        ),
    )
    emit_event(
        conn,
        "card_moved",
        {
            "card_id": card_id,
            "pipe_id": transition["pipe_id"],
            "old_stage_id": transition["current_stage_id"],
            "new_stage_id": transition["target_stage_id"],
        },
    )
    conn.commit()
    return result


def get_card_history(conn: sqlite3.Connection, card_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM card_history WHERE card_id = ? ORDER BY moved_at",
        (card_id,),
    ).fetchall()
    return [_row_to_dict(r) for r in rows]


def upsert_card_field(
    conn: sqlite3.Connection,
    card_id: str,
    key: str,
    value: Any,
    field_type: str | None = None,
) -> dict[str, Any]:
    """Create or overwrite a card field by key."""
    card = conn.execute("SELECT id FROM cards WHERE id = ?", (card_id,)).fetchone()
    if card is None:
        return _not_found("Card", card_id)
    if not key:
        return {"error": "invalid_input", "message": "Field key is required"}

    field_type = field_type or _field_type(value)
    next_pos = conn.execute(
        "SELECT COALESCE(MAX(position), -1) + 1 AS next_pos FROM card_fields WHERE card_id = ?",
        (card_id,),
    ).fetchone()["next_pos"]
    conn.execute(
        """INSERT INTO card_fields (id, card_id, key, type, value, position)
           VALUES (?, ?, ?, ?, ?, ?)
           ON CONFLICT(card_id, key) DO UPDATE SET value = excluded.value, type = excluded.type""",
        (_uuid(), card_id, key, field_type, json.dumps(value), next_pos),
    )
    conn.execute(
        "UPDATE cards SET updated_at = ? WHERE id = ?", (_now(), card_id)
    )
    emit_event(conn, "card_field_updated", {"card_id": card_id, "key": key})
    conn.commit()

    return {"card_id": card_id, "key": key, "type": field_type, "value": value}


def submit_form(
    conn: sqlite3.Connection,
    card_id: str,
    form_id: str,
    responses: dict[str, Any],
    submitter_email: str | None = None,
) -> dict[str, Any]:
    """Record a form submission for a card.

    At most one submission exists per (card, form); the storage layer
    enforces it, so concurrent submissions cannot both succeed.
    """
    card = conn.execute(
        "SELECT id, pipe_id FROM cards WHERE id = ?", (card_id,)
    ).fetchone()
    if card is None:
        return _not_found("Card", card_id)

    form = get_form(conn, form_id)
    if form is None:
        return _not_found("Form", form_id)
    if form["pipe_id"] != card["pipe_id"]:
        return {
            "error": "invalid_input",
            "message": f"Form '{form_id}' does not belong to the card's pipe",
        }

    submission_id = _uuid()
    now = _now()
    try:
        conn.execute(
            """INSERT INTO form_submissions
               (id, card_id, form_id, responses, submitted_at, submitter_email)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (submission_id, card_id, form_id, json.dumps(responses), now, submitter_email),
        )
    except sqlite3.IntegrityError:
        conn.rollback()
        return {
            "error": "conflict",
            "message": f"Form '{form['name']}' was already submitted for card '{card_id}'",
        }
    emit_event(
        conn,
        "form_submitted",
        {"card_id": card_id, "form_id": form_id, "submission_id": submission_id},
    )
    conn.commit()

    return {
        "id": submission_id,
        "card_id": card_id,
        "form": {"id": form_id, "name": form["name"]},
        "responses": responses,
        "submitted_at": now,
        "submitter_email": submitter_email,
    }


def get_board(conn: sqlite3.Connection, pipe_id: str) -> dict[str, Any]:
    """Return full board state for a pipe, cards grouped by stage."""
    pipe = conn.execute("SELECT * FROM pipes WHERE id = ?", (pipe_id,)).fetchone()
    if pipe is None:
        return _not_found("Pipe", pipe_id)

    stages = get_stages(conn, pipe_id)
    cards = conn.execute(
        """SELECT c.id, c.title, c.description, c.stage_id, c.created_at, c.updated_at,
                  (SELECT COUNT(*) FROM card_fields f WHERE f.card_id = c.id) AS field_count
           FROM cards c
           WHERE c.pipe_id = ?
           ORDER BY c.created_at""",
        (pipe_id,),
    ).fetchall()

    cards_by_stage: dict[str, list[dict[str, Any]]] = {s["id"]: [] for s in stages}
    for card in cards:
        stage_list = cards_by_stage.get(card["stage_id"])
        if stage_list is not None:
            stage_list.append(_row_to_dict(card))

    return {
        "pipe": {"id": pipe["id"], "name": pipe["name"]},
        "stages": stages,
        "cards": cards_by_stage,
    }


# ── Automation tools ──────────────────────────────────────


def _automation_row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "pipe_id": row["pipe_id"],
        "owner": {"type": row["owner_type"], "id": row["owner_id"]},
        "name": row["name"],
        "enabled": bool(row["enabled"]),
        "trigger_type": row["trigger_type"],
        "trigger_config": _loads_stored(row["trigger_config"], {}),
        "conditions": _loads_stored(row["conditions"]),
        "actions": _loads_stored(row["actions"], []),
        "position": row["position"],
        "created_at": row["created_at"],
    }


def _insert_automation(
    conn: sqlite3.Connection, automation: Automation, now: str
) -> None:
    data = automation.model_dump(mode="json")
    owner = automation.owner or OwnerRef(type="pipe", id=automation.pipe_id)
    conn.execute(
        """INSERT INTO automations
           (id, pipe_id, owner_type, owner_id, name, enabled, trigger_type, trigger_config,
            conditions, actions, position, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            automation.id,
            automation.pipe_id,
            owner.type,
            owner.id,
            automation.name,
            int(automation.enabled),
            automation.trigger_type,
            json.dumps(data["trigger_config"]),
            json.dumps(data["conditions"]) if data["conditions"] is not None else None,
            json.dumps(data["actions"]),
            automation.position,
            now,
        ),
    )


def _check_references(
    conn: sqlite3.Connection, pipe_id: str, automation: Automation
) -> str | None:
    """Return an error message if the automation references IDs outside its pipe."""
    stage_ids = {s["id"] for s in get_stages(conn, pipe_id)}
    form_ids = {f["id"] for f in _forms_for_pipe(conn, pipe_id)}
    email_ids = {t["id"] for t in list_email_templates(conn, pipe_id)}
    sms_ids = {t["id"] for t in list_sms_templates(conn, pipe_id)}

    if automation.owner and automation.owner.type == "stage":
        if automation.owner.id not in stage_ids:
            return f"Stage '{automation.owner.id}' is not part of pipe '{pipe_id}'"

    trigger = automation.trigger_config
    if isinstance(trigger, StageTriggerConfig) and trigger.stage_id not in stage_ids:
        return f"Trigger stage '{trigger.stage_id}' is not part of pipe '{pipe_id}'"
    if (
        isinstance(trigger, FormTriggerConfig)
        and trigger.form_id
        and trigger.form_id not in form_ids
    ):
        return f"Trigger form '{trigger.form_id}' is not part of pipe '{pipe_id}'"

    for index, action in enumerate(automation.actions):
        config = action.config
        prefix = f"Action {index} ({action.type})"
        if isinstance(config, MoveCardConfig) and config.target_stage_id not in stage_ids:
            return f"{prefix}: stage '{config.target_stage_id}' is not part of the pipe"
        if isinstance(config, (SendEmailConfig, SendFormLinkConfig)):
            if config.template_id and config.template_id not in email_ids:
                return f"{prefix}: email template '{config.template_id}' not found"
            if config.form_id and config.form_id not in form_ids:
                return f"{prefix}: form '{config.form_id}' not found"
        if isinstance(config, SendSmsConfig) and config.template_id not in sms_ids:
            return f"{prefix}: SMS template '{config.template_id}' not found"
    return None


def create_automation(
    conn: sqlite3.Connection,
    pipe_id: str,
    data: dict[str, Any],
    stage_id: str | None = None,
) -> dict[str, Any]:
    """Validate and save an automation at pipe level, or at a stage if given."""
    pipe = conn.execute("SELECT id FROM pipes WHERE id = ?", (pipe_id,)).fetchone()
    if pipe is None:
        return _not_found("Pipe", pipe_id)

    owner = {"type": "stage", "id": stage_id} if stage_id else {"type": "pipe", "id": pipe_id}
    try:
        automation = Automation.model_validate(
            {**data, "id": _uuid(), "pipe_id": pipe_id, "owner": owner}
        )
    except ValidationError as e:
        return {"error": "invalid_input", "message": str(e)}

    problem = _check_references(conn, pipe_id, automation)
    if problem:
        return {"error": "invalid_input", "message": problem}

    now = _now()
    _insert_automation(conn, automation, now)
    conn.commit()

    return {**automation.model_dump(mode="json"), "created_at": now}


def list_automations(conn: sqlite3.Connection, pipe_id: str) -> list[dict[str, Any]]:
    """All automations of a pipe, pipe-level and stage-level alike."""
    rows = conn.execute(
        "SELECT * FROM automations WHERE pipe_id = ? ORDER BY position, name",
        (pipe_id,),
    ).fetchall()
    return [_automation_row_to_dict(r) for r in rows]


def get_automation(conn: sqlite3.Connection, automation_id: str) -> dict[str, Any]:
    row = conn.execute(
        "SELECT * FROM automations WHERE id = ?", (automation_id,)
    ).fetchone()
    if row is None:
        return _not_found("Automation", automation_id)
    return _automation_row_to_dict(row)


def set_automation_enabled(
    conn: sqlite3.Connection, automation_id: str, enabled: bool
) -> dict[str, Any]:
    cursor = conn.execute(
        "UPDATE automations SET enabled = ? WHERE id = ?",
        (int(enabled), automation_id),
    )
    if cursor.rowcount == 0:
        return _not_found("Automation", automation_id)
    conn.commit()
    return get_automation(conn, automation_id)


def delete_automation(conn: sqlite3.Connection, automation_id: str) -> dict[str, Any]:
    cursor = conn.execute("DELETE FROM automations WHERE id = ?", (automation_id,))
    if cursor.rowcount == 0:
        return _not_found("Automation", automation_id)
    conn.commit()
    return {"id": automation_id, "deleted": True}


def record_automation_log(
    conn: sqlite3.Connection,
    automation_id: str,
    card_id: str,
    status: str,
    trigger_type: str,
    conditions_met: bool | None,
    actions_executed: list[dict[str, Any]],
    error_message: str | None = None,
) -> str:
    """Write one execution record for an automation run against a card."""
    log_id = _uuid()
    conn.execute(
        """INSERT INTO automation_logs
           (id, automation_id, card_id, executed_at, status, trigger_type,
            conditions_met, actions_executed, error_message)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            log_id,
            automation_id,
            card_id,
            _now(),
            status,
            trigger_type,
            None if conditions_met is None else int(conditions_met),
            json.dumps(actions_executed, default=str),
            error_message,
        ),
    )
    conn.commit()
    return log_id


def get_automation_logs(conn: sqlite3.Connection, card_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        """SELECT l.*, a.name AS automation_name
           FROM automation_logs l
           JOIN automations a ON l.automation_id = a.id
           WHERE l.card_id = ?
           ORDER BY l.executed_at""",
        (card_id,),
    ).fetchall()
    logs = []
    for row in rows:
        log = _row_to_dict(row)
        log["actions_executed"] = _loads(log["actions_executed"], [])
        if log["conditions_met"] is not None:
            log["conditions_met"] = bool(log["conditions_met"])
        logs.append(log)
    return logs


# ── Template tools ────────────────────────────────────────


def create_email_template(
    conn: sqlite3.Connection,
    pipe_id: str,
    name: str,
    subject: str,
    body: str,
    from_email: str | None = None,
    from_name: str | None = None,
    to_email: str | None = None,
    cc: str | None = None,
    bcc: str | None = None,
    description: str | None = None,
) -> dict[str, Any]:
    pipe = conn.execute("SELECT id FROM pipes WHERE id = ?", (pipe_id,)).fetchone()
    if pipe is None:
        return _not_found("Pipe", pipe_id)

    template_id = _uuid()
    now = _now()
    conn.execute(
        """INSERT INTO email_templates
           (id, pipe_id, name, subject, body, from_email, from_name, to_email, cc, bcc,
            description, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            template_id,
            pipe_id,
            name,
            subject,
            body,
            from_email,
            from_name,
            to_email,
            cc,
            bcc,
            description,
            now,
        ),
    )
    conn.commit()
    return get_email_template(conn, template_id)  # type: ignore[return-value]


def get_email_template(
    conn: sqlite3.Connection, template_id: str
) -> dict[str, Any] | None:
    row = conn.execute(
        "SELECT * FROM email_templates WHERE id = ?", (template_id,)
    ).fetchone()
    return _row_to_dict(row) if row else None


def list_email_templates(conn: sqlite3.Connection, pipe_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM email_templates WHERE pipe_id = ? ORDER BY created_at",
        (pipe_id,),
    ).fetchall()
    return [_row_to_dict(r) for r in rows]


def create_sms_template(
    conn: sqlite3.Connection,
    pipe_id: str,
    name: str,
    body: str,
    description: str | None = None,
) -> dict[str, Any]:
    pipe = conn.execute("SELECT id FROM pipes WHERE id = ?", (pipe_id,)).fetchone()
    if pipe is None:
        return _not_found("Pipe", pipe_id)

    template_id = _uuid()
    now = _now()
    conn.execute(
        """INSERT INTO sms_templates (id, pipe_id, name, body, description, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (template_id, pipe_id, name, body, description, now),
    )
    conn.commit()
    return get_sms_template(conn, template_id)  # type: ignore[return-value]


def get_sms_template(conn: sqlite3.Connection, template_id: str) -> dict[str, Any] | None:
    row = conn.execute(
        "SELECT * FROM sms_templates WHERE id = ?", (template_id,)
    ).fetchone()
    return _row_to_dict(row) if row else None


def list_sms_templates(conn: sqlite3.Connection, pipe_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM sms_templates WHERE pipe_id = ? ORDER BY created_at",
        (pipe_id,),
    ).fetchall()
    return [_row_to_dict(r) for r in rows]


# ── Global variables ──────────────────────────────────────


def set_global_variable(conn: sqlite3.Connection, name: str, value: str) -> dict[str, Any]:
    if not name or "{" in name or "}" in name:
        return {"error": "invalid_input", "message": f"Invalid variable name '{name}'"}
    conn.execute(
        """INSERT INTO global_variables (name, value, updated_at) VALUES (?, ?, ?)
           ON CONFLICT(name) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
        (name, value, _now()),
    )
    conn.commit()
    return {"name": name, "value": value}


def get_global_variables(conn: sqlite3.Connection) -> list[dict[str, str]]:
    rows = conn.execute(
        "SELECT name, value FROM global_variables ORDER BY name"
    ).fetchall()
    return [{"name": r["name"], "value": r["value"]} for r in rows]


# ── Message logs ──────────────────────────────────────────


def log_email(
    conn: sqlite3.Connection,
    card_id: str,
    from_addr: str,
    to_addr: str,
    subject: str,
    body: str,
    cc: str | None = None,
    email_id: str | None = None,
    sent_via: str | None = None,
) -> str:
    """Record a sent email against a card."""
    row_id = _uuid()
    conn.execute(
        """INSERT INTO card_emails
           (id, card_id, direction, from_addr, to_addr, cc, subject, body, sent_at,
            email_id, sent_via)
           VALUES (?, ?, 'sent', ?, ?, ?, ?, ?, ?, ?, ?)""",
        (row_id, card_id, from_addr, to_addr, cc, subject, body, _now(), email_id, sent_via),
    )
    emit_event(conn, "email_sent", {"card_id": card_id, "email_id": row_id})
    conn.commit()
    return row_id


def get_card_emails(conn: sqlite3.Connection, card_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM card_emails WHERE card_id = ? ORDER BY sent_at",
        (card_id,),
    ).fetchall()
    return [_row_to_dict(r) for r in rows]


def log_sms(
    conn: sqlite3.Connection,
    card_id: str,
    from_number: str,
    to_number: str,
    body: str,
    sms_id: str | None = None,
    status: str | None = None,
    sent_via: str | None = None,
) -> str:
    """Record a sent SMS against a card."""
    row_id = _uuid()
    conn.execute(
        """INSERT INTO card_sms
           (id, card_id, direction, from_number, to_number, body, sent_at, sms_id,
            status, sent_via)
           VALUES (?, ?, 'sent', ?, ?, ?, ?, ?, ?, ?)""",
        (row_id, card_id, from_number, to_number, body, _now(), sms_id, status, sent_via),
    )
    emit_event(conn, "sms_sent", {"card_id": card_id, "sms_id": row_id})
    conn.commit()
    return row_id


def get_card_sms(conn: sqlite3.Connection, card_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM card_sms WHERE card_id = ? ORDER BY sent_at",
        (card_id,),
    ).fetchall()
    return [_row_to_dict(r) for r in rows]
