"""CLI entry point for FlowLane.

Commands:
    flowlane init      write a starter flowlane.config.json in the current directory
    flowlane migrate   create or upgrade the database
    flowlane serve     start the API server
    flowlane dispatch  run one automation dispatch and print the report
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click

from flowlane.config import DEFAULTS, ConfigError, load_config

DEFAULT_CONFIG: dict[str, Any] = {
    "db_path": "~/.flowlane/flowlane.db",
    **DEFAULTS,
}


def _load_or_exit(config_path: str | None) -> dict[str, Any]:
    try:
        return load_config(config_path)
    except ConfigError as e:
        click.echo(f"Config error: {e}", err=True)
        sys.exit(1)


@click.group()
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level",
)
def main(log_level: str) -> None:
    """FlowLane: Kanban pipes with rule-based card automations."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
def init() -> None:
    """Create a starter flowlane.config.json."""
    config_path = Path.cwd() / "flowlane.config.json"

    if config_path.exists():
        click.echo(f"Config already exists: {config_path}")
        return

    config_path.write_text(json.dumps(DEFAULT_CONFIG, indent=2) + "\n")
    click.echo(f"Created {config_path}")
    click.echo("Done. Set email_webhook_url and the twilio_* keys to enable delivery.")


@main.command()
@click.option("--config", "config_path", default=None, help="Path to flowlane.config.json")
def migrate(config_path: str | None) -> None:
    """Create or upgrade the database tables."""
    from db.client import get_connection
    from db.migrations import run_migrations

    config = _load_or_exit(config_path)
    conn = get_connection(config["db_path"])
    try:
        version = run_migrations(conn)
    finally:
        conn.close()
    click.echo(f"Database ready: {config['db_path']} (schema v{version})")


@main.command()
@click.option("--config", "config_path", default=None, help="Path to flowlane.config.json")
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, type=int, help="Port to listen on")
def serve(config_path: str | None, host: str, port: int) -> None:
    """Start the FlowLane API server."""
    import uvicorn

    from api.app import create_app
    from db.migrations import init_db

    config = _load_or_exit(config_path)
    init_db(config["db_path"]).close()

    app = create_app(config["db_path"], config)
    uvicorn.run(app, host=host, port=port)


@main.command()
@click.option("--config", "config_path", default=None, help="Path to flowlane.config.json")
@click.option(
    "--trigger",
    "trigger_type",
    required=True,
    type=click.Choice(["form_submission", "card_enters_stage", "card_field_value", "manual"]),
)
@click.option("--card-id", required=True)
@click.option("--pipe-id", required=True)
@click.option("--stage-id", default=None)
@click.option("--form-id", default=None)
@click.option("--field-key", default=None)
@click.option("--automation-id", default=None)
def dispatch(
    config_path: str | None,
    trigger_type: str,
    card_id: str,
    pipe_id: str,
    stage_id: str | None,
    form_id: str | None,
    field_key: str | None,
    automation_id: str | None,
) -> None:
    """Dispatch one trigger event against a card and print the JSON report."""
    from engine.orchestrator import AutomationEngine

    config = _load_or_exit(config_path)
    context = {
        k: v
        for k, v in {
            "stage_id": stage_id,
            "form_id": form_id,
            "field_key": field_key,
            "automation_id": automation_id,
        }.items()
        if v is not None
    }
    engine = AutomationEngine.from_config(config)

    async def _run() -> dict[str, Any]:
        report = await engine.dispatch(
            {
                "trigger_type": trigger_type,
                "card_id": card_id,
                "pipe_id": pipe_id,
                "context": context,
            }
        )
        await engine.wait_for_notifications()
        return report.to_dict()

    report = asyncio.run(_run())
    click.echo(json.dumps(report, indent=2))
    if not report["success"]:
        sys.exit(1)
