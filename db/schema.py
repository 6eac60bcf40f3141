"""Database table definitions for FlowLane.

Uses raw SQL strings for the board, automation, and message-log tables.
JSON-valued columns (field values, form responses, automation configs)
are stored as TEXT and decoded by the board layer.
"""

TABLES = {
    "pipes": """
        CREATE TABLE IF NOT EXISTS pipes (
            id          TEXT PRIMARY KEY,
            name        TEXT NOT NULL,
            created_at  TEXT NOT NULL
        )
    """,
    "stages": """
        CREATE TABLE IF NOT EXISTS stages (
            id               TEXT PRIMARY KEY,
            pipe_id          TEXT NOT NULL REFERENCES pipes(id) ON DELETE CASCADE,
            name             TEXT NOT NULL,
            position         INTEGER NOT NULL,
            background_color TEXT,
            created_at       TEXT NOT NULL,
            UNIQUE(pipe_id, position)
        )
    """,
    "stage_forms": """
        CREATE TABLE IF NOT EXISTS stage_forms (
            id          TEXT PRIMARY KEY,
            stage_id    TEXT NOT NULL REFERENCES stages(id) ON DELETE CASCADE,
            name        TEXT NOT NULL,
            form_type   TEXT NOT NULL DEFAULT 'client',
            fields      TEXT NOT NULL DEFAULT '[]',
            created_at  TEXT NOT NULL
        )
    """,
    "cards": """
        CREATE TABLE IF NOT EXISTS cards (
            id          TEXT PRIMARY KEY,
            pipe_id     TEXT NOT NULL REFERENCES pipes(id) ON DELETE CASCADE,
            stage_id    TEXT NOT NULL REFERENCES stages(id) ON DELETE CASCADE,
            title       TEXT NOT NULL,
            description TEXT,
            created_at  TEXT NOT NULL,
            updated_at  TEXT NOT NULL
        )
    """,
    "card_fields": """
        CREATE TABLE IF NOT EXISTS card_fields (
            id          TEXT PRIMARY KEY,
            card_id     TEXT NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
            key         TEXT NOT NULL,
            type        TEXT NOT NULL DEFAULT 'text',
            value       TEXT,
            position    INTEGER NOT NULL DEFAULT 0,
            UNIQUE(card_id, key)
        )
    """,
    "form_submissions": """
        CREATE TABLE IF NOT EXISTS form_submissions (
            id              TEXT PRIMARY KEY,
            card_id         TEXT NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
            form_id         TEXT NOT NULL REFERENCES stage_forms(id) ON DELETE CASCADE,
            responses       TEXT NOT NULL,
            submitted_at    TEXT NOT NULL,
            submitter_email TEXT,
            UNIQUE(card_id, form_id)
        )
    """,
    "automations": """
        CREATE TABLE IF NOT EXISTS automations (
            id              TEXT PRIMARY KEY,
            pipe_id         TEXT NOT NULL REFERENCES pipes(id) ON DELETE CASCADE,
            owner_type      TEXT NOT NULL,
            owner_id        TEXT NOT NULL,
            name            TEXT NOT NULL,
            enabled         INTEGER NOT NULL DEFAULT 1,
            trigger_type    TEXT NOT NULL,
            trigger_config  TEXT NOT NULL,
            conditions      TEXT,
            actions         TEXT NOT NULL,
            position        INTEGER NOT NULL DEFAULT 0,
            created_at      TEXT NOT NULL
        )
    """,
    "email_templates": """
        CREATE TABLE IF NOT EXISTS email_templates (
            id          TEXT PRIMARY KEY,
            pipe_id     TEXT NOT NULL REFERENCES pipes(id) ON DELETE CASCADE,
            name        TEXT NOT NULL,
            subject     TEXT NOT NULL,
            body        TEXT NOT NULL,
            from_email  TEXT,
            from_name   TEXT,
            to_email    TEXT,
            cc          TEXT,
            bcc         TEXT,
            description TEXT,
            created_at  TEXT NOT NULL
        )
    """,
    "sms_templates": """
        CREATE TABLE IF NOT EXISTS sms_templates (
            id          TEXT PRIMARY KEY,
            pipe_id     TEXT NOT NULL REFERENCES pipes(id) ON DELETE CASCADE,
            name        TEXT NOT NULL,
            body        TEXT NOT NULL,
            description TEXT,
            created_at  TEXT NOT NULL
        )
    """,
    "card_emails": """
        CREATE TABLE IF NOT EXISTS card_emails (
            id          TEXT PRIMARY KEY,
            card_id     TEXT NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
            direction   TEXT NOT NULL,
            from_addr   TEXT NOT NULL,
            to_addr     TEXT NOT NULL,
            cc          TEXT,
            subject     TEXT NOT NULL,
            body        TEXT NOT NULL,
            sent_at     TEXT NOT NULL,
            email_id    TEXT,
            sent_via    TEXT
        )
    """,
    "card_sms": """
        CREATE TABLE IF NOT EXISTS card_sms (
            id          TEXT PRIMARY KEY,
            card_id     TEXT NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
            direction   TEXT NOT NULL,
            from_number TEXT NOT NULL,
            to_number   TEXT NOT NULL,
            body        TEXT NOT NULL,
            sent_at     TEXT NOT NULL,
            sms_id      TEXT,
            status      TEXT,
            sent_via    TEXT
        )
    """,
    "card_history": """
        CREATE TABLE IF NOT EXISTS card_history (
            id              TEXT PRIMARY KEY,
            card_id         TEXT NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
            from_stage_id   TEXT,
            to_stage_id     TEXT NOT NULL,
            from_stage_name TEXT,
            to_stage_name   TEXT NOT NULL,
            moved_at        TEXT NOT NULL
        )
    """,
    "automation_logs": """
        CREATE TABLE IF NOT EXISTS automation_logs (
            id                TEXT PRIMARY KEY,
            automation_id     TEXT NOT NULL REFERENCES automations(id) ON DELETE CASCADE,
            card_id           TEXT NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
            executed_at       TEXT NOT NULL,
            status            TEXT NOT NULL,
            trigger_type      TEXT NOT NULL,
            conditions_met    INTEGER,
            actions_executed  TEXT NOT NULL,
            error_message     TEXT
        )
    """,
    "global_variables": """
        CREATE TABLE IF NOT EXISTS global_variables (
            name        TEXT PRIMARY KEY,
            value       TEXT NOT NULL,
            updated_at  TEXT NOT NULL
        )
    """,
    "events": """
        CREATE TABLE IF NOT EXISTS events (
            id          TEXT PRIMARY KEY,
            type        TEXT NOT NULL,
            payload     TEXT NOT NULL,
            created_at  TEXT NOT NULL,
            consumed    INTEGER NOT NULL DEFAULT 0
        )
    """,
}

SCHEMA_VERSION = 1

# Ordered list for creation, parents before children
TABLE_CREATION_ORDER = [
    "pipes",
    "stages",
    "stage_forms",
    "cards",
    "card_fields",
    "form_submissions",
    "automations",
    "email_templates",
    "sms_templates",
    "card_emails",
    "card_sms",
    "card_history",
    "automation_logs",
    "global_variables",
    "events",
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_cards_stage ON cards(stage_id)",
    "CREATE INDEX IF NOT EXISTS idx_automations_pipe ON automations(pipe_id)",
    "CREATE INDEX IF NOT EXISTS idx_automation_logs_card ON automation_logs(card_id)",
    "CREATE INDEX IF NOT EXISTS idx_events_consumed ON events(consumed, created_at)",
]
