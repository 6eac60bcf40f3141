"""Tests for board operations.

Tests call board functions directly with a test DB connection.
"""

import sqlite3
from pathlib import Path

import pytest

from db.migrations import init_db
from flowlane.board import (
    create_automation,
    create_card,
    create_email_template,
    create_form,
    create_pipe,
    create_sms_template,
    create_stage,
    delete_automation,
    delete_pipe,
    duplicate_pipe,
    get_automation_logs,
    get_board,
    get_card,
    get_card_history,
    get_client_forms,
    get_global_variables,
    get_pipe,
    list_automations,
    list_pipes,
    move_card,
    record_automation_log,
    set_automation_enabled,
    set_global_variable,
    submit_form,
    upsert_card_field,
)


@pytest.fixture()
def conn(tmp_path: Path) -> sqlite3.Connection:
    connection = init_db(tmp_path / "test.db")
    yield connection
    connection.close()


def _seed_pipe(conn: sqlite3.Connection, name: str = "Sales") -> dict:
    """Create a pipe with three stages and return it."""
    return create_pipe(conn, name, [{"name": "Lead"}, {"name": "Qualified"}, {"name": "Won"}])


def _event_types(conn: sqlite3.Connection) -> list[str]:
    rows = conn.execute("SELECT type FROM events ORDER BY created_at").fetchall()
    return [r["type"] for r in rows]


# ── Pipes and stages ───────────────────────────────────────


class TestPipes:
    def test_create_pipe_with_stages(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        assert [s["position"] for s in pipe["stages"]] == [0, 1, 2]
        assert list_pipes(conn)[0]["name"] == "Sales"
        assert "pipe_created" in _event_types(conn)

    def test_create_pipe_requires_name(self, conn: sqlite3.Connection) -> None:
        assert create_pipe(conn, "")["error"] == "invalid_input"

    def test_get_pipe_not_found(self, conn: sqlite3.Connection) -> None:
        assert get_pipe(conn, "nope")["error"] == "not_found"

    def test_create_stage_appends(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        stage = create_stage(conn, pipe["id"], "Lost")
        assert stage["position"] == 3

    def test_create_stage_position_conflict(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        result = create_stage(conn, pipe["id"], "Dup", position=1)
        assert result["error"] == "invalid_input"

    def test_delete_pipe_cascades(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        card = create_card(conn, pipe["id"], pipe["stages"][0]["id"], "Acme", fields={"a": 1})
        result = delete_pipe(conn, pipe["id"])
        assert result["deleted"] is True
        assert get_card(conn, card["id"])["error"] == "not_found"
        assert conn.execute("SELECT COUNT(*) AS n FROM card_fields").fetchone()["n"] == 0
        assert conn.execute("SELECT COUNT(*) AS n FROM stages").fetchone()["n"] == 0


# ── Forms ──────────────────────────────────────────────────


class TestForms:
    def test_create_form_and_client_forms(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        create_form(conn, pipe["stages"][0]["id"], "Intake")
        create_form(conn, pipe["stages"][1]["id"], "Internal", form_type="admin")
        names = [f["name"] for f in get_client_forms(conn, pipe["id"])]
        assert names == ["Intake"]

    def test_invalid_form_type(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        result = create_form(conn, pipe["stages"][0]["id"], "X", form_type="public")
        assert result["error"] == "invalid_input"

    def test_pipe_lists_forms_per_stage(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        create_form(conn, pipe["stages"][1]["id"], "Intake", fields=[{"key": "size"}])
        stages = get_pipe(conn, pipe["id"])["stages"]
        assert stages[0]["forms"] == []
        assert stages[1]["forms"][0]["fields"] == [{"key": "size"}]


# ── Cards ──────────────────────────────────────────────────


class TestCards:
    def test_create_and_get_card(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        card = create_card(
            conn,
            pipe["id"],
            pipe["stages"][0]["id"],
            "Acme",
            fields={"email": "ops@acme.test", "seats": 12, "vip": True},
        )
        assert card["stage"]["name"] == "Lead"
        assert card["pipe"]["name"] == "Sales"
        values = {f["key"]: f["value"] for f in card["fields"]}
        assert values == {"email": "ops@acme.test", "seats": 12, "vip": True}
        types = {f["key"]: f["type"] for f in card["fields"]}
        assert types == {"email": "text", "seats": "number", "vip": "boolean"}
        assert "card_created" in _event_types(conn)

    def test_create_card_stage_from_other_pipe(self, conn: sqlite3.Connection) -> None:
        a = _seed_pipe(conn, "A")
        b = _seed_pipe(conn, "B")
        result = create_card(conn, a["id"], b["stages"][0]["id"], "X")
        assert result["error"] == "invalid_input"

    def test_move_card_records_history(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        card = create_card(conn, pipe["id"], pipe["stages"][0]["id"], "Acme")
        result = move_card(conn, card["id"], pipe["stages"][2]["id"])
        assert result["moved"] is True
        assert result["to_stage_name"] == "Won"
        history = get_card_history(conn, card["id"])
        assert history[0]["from_stage_name"] == "Lead"
        assert history[0]["to_stage_name"] == "Won"
        assert "card_moved" in _event_types(conn)

    def test_move_to_current_stage_is_noop(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        card = create_card(conn, pipe["id"], pipe["stages"][0]["id"], "Acme")
        result = move_card(conn, card["id"], pipe["stages"][0]["id"])
        assert result["moved"] is False
        assert get_card_history(conn, card["id"]) == []

    def test_move_to_other_pipe_rejected(self, conn: sqlite3.Connection) -> None:
        a = _seed_pipe(conn, "A")
        b = _seed_pipe(conn, "B")
        card = create_card(conn, a["id"], a["stages"][0]["id"], "X")
        assert move_card(conn, card["id"], b["stages"][0]["id"])["error"] == "invalid_transition"

    def test_move_missing_card(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        assert move_card(conn, "nope", pipe["stages"][0]["id"])["error"] == "not_found"

    def test_upsert_card_field(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        card = create_card(conn, pipe["id"], pipe["stages"][0]["id"], "Acme", fields={"a": "1"})
        upsert_card_field(conn, card["id"], "a", "2")
        upsert_card_field(conn, card["id"], "b", "3")
        fields = get_card(conn, card["id"])["fields"]
        assert [(f["key"], f["value"]) for f in fields] == [("a", "2"), ("b", "3")]


# ── Form submissions ───────────────────────────────────────


class TestSubmissions:
    def test_submit_once(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        form = create_form(conn, pipe["stages"][0]["id"], "Intake")
        card = create_card(conn, pipe["id"], pipe["stages"][0]["id"], "Acme")

        first = submit_form(conn, card["id"], form["id"], {"size": "50"})
        assert first["form"]["name"] == "Intake"

        second = submit_form(conn, card["id"], form["id"], {"size": "60"})
        assert second["error"] == "conflict"

        submissions = get_card(conn, card["id"])["form_submissions"]
        assert len(submissions) == 1
        assert submissions[0]["responses"] == {"size": "50"}

    def test_form_from_other_pipe_rejected(self, conn: sqlite3.Connection) -> None:
        a = _seed_pipe(conn, "A")
        b = _seed_pipe(conn, "B")
        form = create_form(conn, b["stages"][0]["id"], "Other")
        card = create_card(conn, a["id"], a["stages"][0]["id"], "X")
        assert submit_form(conn, card["id"], form["id"], {})["error"] == "invalid_input"


# ── Automations ────────────────────────────────────────────


class TestAutomations:
    def test_create_pipe_level(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        result = create_automation(
            conn,
            pipe["id"],
            {
                "name": "Advance",
                "trigger_type": "card_enters_stage",
                "trigger_config": {"stage_id": pipe["stages"][0]["id"]},
                "actions": [
                    {"type": "move_card", "config": {"target_stage_id": pipe["stages"][1]["id"]}}
                ],
            },
        )
        assert result["owner"] == {"type": "pipe", "id": pipe["id"]}
        stored = list_automations(conn, pipe["id"])
        assert stored[0]["actions"][0]["config"]["target_stage_id"] == pipe["stages"][1]["id"]
        assert stored[0]["enabled"] is True

    def test_create_stage_level(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        stage_id = pipe["stages"][1]["id"]
        result = create_automation(
            conn,
            pipe["id"],
            {"name": "Run", "trigger_type": "manual"},
            stage_id=stage_id,
        )
        assert result["owner"] == {"type": "stage", "id": stage_id}

    def test_rejects_unknown_action_type(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        result = create_automation(
            conn,
            pipe["id"],
            {
                "name": "Bad",
                "trigger_type": "manual",
                "actions": [{"type": "launch_rocket", "config": {}}],
            },
        )
        assert result["error"] == "invalid_input"

    def test_rejects_form_trigger_without_form(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        result = create_automation(
            conn,
            pipe["id"],
            {"name": "Bad", "trigger_type": "form_submission", "trigger_config": {}},
        )
        assert result["error"] == "invalid_input"

    def test_rejects_stage_from_other_pipe(self, conn: sqlite3.Connection) -> None:
        a = _seed_pipe(conn, "A")
        b = _seed_pipe(conn, "B")
        result = create_automation(
            conn,
            a["id"],
            {
                "name": "Cross",
                "trigger_type": "card_enters_stage",
                "trigger_config": {"stage_id": b["stages"][0]["id"]},
            },
        )
        assert result["error"] == "invalid_input"

    def test_rejects_missing_template(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        result = create_automation(
            conn,
            pipe["id"],
            {
                "name": "Mail",
                "trigger_type": "manual",
                "actions": [{"type": "send_email", "config": {"template_id": "ghost"}}],
            },
        )
        assert result["error"] == "invalid_input"
        assert "ghost" in result["message"]

    def test_enable_disable_delete(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        created = create_automation(conn, pipe["id"], {"name": "M", "trigger_type": "manual"})
        assert set_automation_enabled(conn, created["id"], False)["enabled"] is False
        assert delete_automation(conn, created["id"])["deleted"] is True
        assert delete_automation(conn, created["id"])["error"] == "not_found"

    def test_automation_logs(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        card = create_card(conn, pipe["id"], pipe["stages"][0]["id"], "Acme")
        created = create_automation(conn, pipe["id"], {"name": "M", "trigger_type": "manual"})
        record_automation_log(
            conn, created["id"], card["id"], "success", "manual", True, [{"action_type": "x"}]
        )
        logs = get_automation_logs(conn, card["id"])
        assert logs[0]["automation_name"] == "M"
        assert logs[0]["conditions_met"] is True
        assert logs[0]["actions_executed"] == [{"action_type": "x"}]


# ── Duplication ────────────────────────────────────────────


class TestDuplicatePipe:
    def test_remaps_ids_structurally(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        lead, qualified = pipe["stages"][0]["id"], pipe["stages"][1]["id"]
        form = create_form(conn, lead, "Intake")
        template = create_email_template(conn, pipe["id"], "Welcome", "Hi", "Body")
        create_card(conn, pipe["id"], lead, "Not copied")
        create_automation(
            conn,
            pipe["id"],
            {
                "name": f"Mentions {lead}",
                "trigger_type": "form_submission",
                "trigger_config": {"form_id": form["id"]},
                "conditions": {
                    "rules": [{"field_key": "form:Intake.size", "operator": "equals", "value": lead}]
                },
                "actions": [
                    {"type": "move_card", "config": {"target_stage_id": qualified}},
                    {
                        "type": "send_email",
                        "config": {"template_id": template["id"], "form_id": form["id"]},
                    },
                ],
            },
            stage_id=lead,
        )

        copy = duplicate_pipe(conn, pipe["id"])
        assert copy["name"] == "Sales (Copy)"
        assert copy["automations_copied"] == 1

        new_lead = copy["stage_ids"][lead]
        new_qualified = copy["stage_ids"][qualified]
        new_form = copy["form_ids"][form["id"]]
        new_template = copy["template_ids"][template["id"]]

        automation = list_automations(conn, copy["id"])[0]
        assert automation["owner"] == {"type": "stage", "id": new_lead}
        assert automation["trigger_config"]["form_id"] == new_form
        assert automation["actions"][0]["config"]["target_stage_id"] == new_qualified
        assert automation["actions"][1]["config"]["template_id"] == new_template
        assert automation["actions"][1]["config"]["form_id"] == new_form
        # Free text is never rewritten
        assert automation["name"] == f"Mentions {lead}"
        assert automation["conditions"]["rules"][0]["value"] == lead
        assert automation["conditions"]["rules"][0]["field_key"] == "form:Intake.size"

        assert get_board(conn, copy["id"])["cards"][new_lead] == []

    def test_duplicate_missing_pipe(self, conn: sqlite3.Connection) -> None:
        assert duplicate_pipe(conn, "nope")["error"] == "not_found"


# ── Templates and globals ──────────────────────────────────


class TestTemplatesAndGlobals:
    def test_sms_template(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        template = create_sms_template(conn, pipe["id"], "Ping", "Hi {{card_title}}")
        assert template["body"] == "Hi {{card_title}}"

    def test_global_variables(self, conn: sqlite3.Connection) -> None:
        set_global_variable(conn, "year", "2025")
        set_global_variable(conn, "year", "2026")
        assert get_global_variables(conn) == [{"name": "year", "value": "2026"}]
        assert set_global_variable(conn, "{{bad}}", "x")["error"] == "invalid_input"


class TestBoard:
    def test_cards_grouped_by_stage(self, conn: sqlite3.Connection) -> None:
        pipe = _seed_pipe(conn)
        create_card(conn, pipe["id"], pipe["stages"][0]["id"], "A")
        create_card(conn, pipe["id"], pipe["stages"][2]["id"], "B", fields={"x": 1})
        result = get_board(conn, pipe["id"])
        assert [c["title"] for c in result["cards"][pipe["stages"][0]["id"]]] == ["A"]
        won = result["cards"][pipe["stages"][2]["id"]]
        assert won[0]["field_count"] == 1
