"""Tests for WebSocket connection manager and event helpers.

Covers ConnectionManager unit tests, event helper functions, the
broadcaster loop, and verification that API operations emit consumable
events.
"""

import asyncio
import json
import sqlite3
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from api.app import create_app
from api.deps import (
    enrich_event_payload,
    get_unconsumed_events,
    mark_event_consumed,
)
from api.ws import ConnectionManager, broadcast_events, event_pipe_id, manager
from db.client import get_connection
from db.migrations import init_db
from engine.orchestrator import AutomationEngine
from flowlane import board
from flowlane.events import emit_event


# ── Fixtures ──────────────────────────────────────────────


@pytest.fixture()
def db_path(tmp_path: Path) -> str:
    path = str(tmp_path / "test.db")
    conn = init_db(path)
    conn.close()
    return path


@pytest.fixture()
def conn(db_path: str) -> sqlite3.Connection:
    """A raw DB connection for direct event/helper testing."""
    c = get_connection(db_path)
    yield c  # type: ignore[misc]
    c.close()


@pytest_asyncio.fixture()
async def client(db_path: str) -> AsyncGenerator[AsyncClient, None]:
    app = create_app(db_path=db_path, engine=AutomationEngine(db_path))
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _insert_event(
    conn: sqlite3.Connection,
    event_type: str,
    payload: dict[str, Any],
    consumed: int = 0,
) -> str:
    """Insert a raw event row for testing. Returns the event ID."""
    event_id = str(uuid.uuid4())
    conn.execute(
        "INSERT INTO events (id, type, payload, created_at, consumed) VALUES (?, ?, ?, ?, ?)",
        (event_id, event_type, json.dumps(payload), _now(), consumed),
    )
    conn.commit()
    return event_id


def _consume_all(conn: sqlite3.Connection) -> None:
    for e in get_unconsumed_events(conn):
        mark_event_consumed(conn, e["id"])


def _seed_card(conn: sqlite3.Connection, title: str = "Acme") -> dict[str, Any]:
    pipe = board.create_pipe(conn, "Sales", [{"name": "Lead"}, {"name": "Won"}])
    card = board.create_card(conn, pipe["id"], pipe["stages"][0]["id"], title)
    return {"pipe": pipe, "card": card}


# ── TestConnectionManager ─────────────────────────────────


class TestConnectionManager:
    """Unit tests for the ConnectionManager class."""

    def test_starts_with_no_connections(self) -> None:
        mgr = ConnectionManager()
        assert mgr.active_connections == []

    @pytest.mark.asyncio
    async def test_connect_adds_websocket(self) -> None:
        mgr = ConnectionManager()
        ws = AsyncMock()
        await mgr.connect(ws)
        assert ws in mgr.active_connections
        ws.accept.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disconnect_twice_is_safe(self) -> None:
        mgr = ConnectionManager()
        ws = AsyncMock()
        await mgr.connect(ws)
        mgr.disconnect(ws)
        mgr.disconnect(ws)
        assert mgr.active_connections == []

    @pytest.mark.asyncio
    async def test_broadcast_with_no_connections(self) -> None:
        mgr = ConnectionManager()
        await mgr.broadcast({"type": "test", "payload": {}})

    @pytest.mark.asyncio
    async def test_broadcast_sends_to_all(self) -> None:
        mgr = ConnectionManager()
        ws1 = AsyncMock()
        ws2 = AsyncMock()
        await mgr.connect(ws1)
        await mgr.connect(ws2)

        msg = {"type": "card_moved", "payload": {"card_id": "123"}}
        await mgr.broadcast(msg)

        ws1.send_json.assert_awaited_once_with(msg)
        ws2.send_json.assert_awaited_once_with(msg)

    @pytest.mark.asyncio
    async def test_broadcast_removes_dead_connections(self) -> None:
        mgr = ConnectionManager()
        alive_ws = AsyncMock()
        dead_ws = AsyncMock()
        dead_ws.send_json.side_effect = RuntimeError("connection closed")

        await mgr.connect(alive_ws)
        await mgr.connect(dead_ws)

        await mgr.broadcast({"type": "test", "payload": {}})

        assert dead_ws not in mgr.active_connections
        assert alive_ws in mgr.active_connections

    @pytest.mark.asyncio
    async def test_pipe_subscription_filters_events(self) -> None:
        mgr = ConnectionManager()
        everything = AsyncMock()
        watching_a = AsyncMock()
        watching_b = AsyncMock()
        await mgr.connect(everything)
        await mgr.connect(watching_a, "pipe-a")
        await mgr.connect(watching_b, "pipe-b")

        msg = {"type": "card_moved", "payload": {"card_id": "c1", "card": {"pipe_id": "pipe-a"}}}
        await mgr.broadcast(msg)

        everything.send_json.assert_awaited_once_with(msg)
        watching_a.send_json.assert_awaited_once_with(msg)
        watching_b.send_json.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unscoped_events_reach_pipe_subscribers(self) -> None:
        mgr = ConnectionManager()
        ws = AsyncMock()
        await mgr.connect(ws, "pipe-a")
        await mgr.broadcast({"type": "card_created", "payload": {"card_id": "gone"}})
        ws.send_json.assert_awaited_once()


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ({"type": "pipe_deleted", "payload": {"pipe_id": "p1"}}, "p1"),
        ({"type": "pipe_created", "payload": {"id": "p2", "name": "X"}}, "p2"),
        ({"type": "card_moved", "payload": {"card": {"pipe_id": "p3"}}}, "p3"),
        ({"type": "email_sent", "payload": {"card_id": "c"}}, None),
    ],
)
def test_event_pipe_id(message: dict[str, Any], expected: str | None) -> None:
    assert event_pipe_id(message) == expected


# ── TestEventHelpers ──────────────────────────────────────


class TestEventHelpers:
    """Tests for get_unconsumed_events, mark_event_consumed, enrich_event_payload."""

    def test_get_unconsumed_events_empty(self, conn: sqlite3.Connection) -> None:
        assert get_unconsumed_events(conn) == []

    def test_get_unconsumed_events_skips_consumed(
        self, conn: sqlite3.Connection
    ) -> None:
        _insert_event(conn, "consumed_event", {"a": 1}, consumed=1)
        eid = _insert_event(conn, "unconsumed_event", {"b": 2}, consumed=0)
        events = get_unconsumed_events(conn)
        assert [e["id"] for e in events] == [eid]
        assert events[0]["payload"] == {"b": 2}

    def test_mark_event_consumed(self, conn: sqlite3.Connection) -> None:
        eid = _insert_event(conn, "to_consume", {"x": 1})
        mark_event_consumed(conn, eid)

        assert get_unconsumed_events(conn) == []
        row = conn.execute(
            "SELECT consumed FROM events WHERE id = ?", (eid,)
        ).fetchone()
        assert row["consumed"] == 1

    def test_get_unconsumed_events_ordered_by_created_at(
        self, conn: sqlite3.Connection
    ) -> None:
        eid1 = _insert_event(conn, "first", {"order": 1})
        eid2 = _insert_event(conn, "second", {"order": 2})
        events = get_unconsumed_events(conn)
        assert [e["id"] for e in events] == [eid1, eid2]

    def test_enrich_card_moved_event(self, conn: sqlite3.Connection) -> None:
        seeded = _seed_card(conn, title="Enriched Card")
        card_id = seeded["card"]["id"]

        event = {"type": "card_moved", "payload": {"card_id": card_id}}
        enriched = enrich_event_payload(conn, event)

        assert enriched["type"] == "card_moved"
        assert enriched["payload"]["card_id"] == card_id
        assert enriched["payload"]["card"]["title"] == "Enriched Card"
        assert enriched["payload"]["card"]["stage_name"] == "Lead"

    def test_enrich_email_sent_event(self, conn: sqlite3.Connection) -> None:
        seeded = _seed_card(conn)
        card_id = seeded["card"]["id"]
        event = {"type": "email_sent", "payload": {"card_id": card_id, "email_id": "e-1"}}
        enriched = enrich_event_payload(conn, event)
        assert enriched["payload"]["email_id"] == "e-1"
        assert enriched["payload"]["card"]["id"] == card_id

    def test_enrich_pipe_created_event(self, conn: sqlite3.Connection) -> None:
        pipe = board.create_pipe(conn, "My Pipe")

        event = {"type": "pipe_created", "payload": {"pipe_id": pipe["id"]}}
        enriched = enrich_event_payload(conn, event)

        assert enriched["payload"]["id"] == pipe["id"]
        assert enriched["payload"]["name"] == "My Pipe"

    def test_emit_event_rejects_unknown_type(self, conn: sqlite3.Connection) -> None:
        with pytest.raises(ValueError, match="Unknown board event type"):
            emit_event(conn, "card_teleported", {"card_id": "c"})

    def test_enrich_unknown_event_type_returns_raw(
        self, conn: sqlite3.Connection
    ) -> None:
        event = {"type": "unknown_type", "payload": {"foo": "bar"}}
        assert enrich_event_payload(conn, event) == event

    def test_enrich_missing_card_returns_raw(self, conn: sqlite3.Connection) -> None:
        event = {"type": "card_created", "payload": {"card_id": "nonexistent"}}
        assert enrich_event_payload(conn, event) == {
            "type": "card_created",
            "payload": {"card_id": "nonexistent"},
        }


# ── TestBroadcaster ───────────────────────────────────────


class TestBroadcaster:
    @pytest.mark.asyncio
    async def test_broadcasts_and_consumes(
        self, db_path: str, conn: sqlite3.Connection
    ) -> None:
        seeded = _seed_card(conn)
        _consume_all(conn)
        board.move_card(conn, seeded["card"]["id"], seeded["pipe"]["stages"][1]["id"])

        ws = AsyncMock()
        manager.subscriptions[ws] = None
        task = asyncio.create_task(broadcast_events(db_path, interval=0.01))
        try:
            await asyncio.sleep(0.1)
        finally:
            task.cancel()
            manager.disconnect(ws)
            with pytest.raises(asyncio.CancelledError):
                await task

        sent = [call.args[0] for call in ws.send_json.await_args_list]
        assert [m["type"] for m in sent] == ["card_moved"]
        assert sent[0]["payload"]["card"]["stage_name"] == "Won"
        assert get_unconsumed_events(conn) == []


# ── TestEventEmission ─────────────────────────────────────


class TestEventEmission:
    """Verify that API operations create consumable events in the DB."""

    @pytest.mark.asyncio
    async def test_create_pipe_emits_event(
        self, client: AsyncClient, conn: sqlite3.Connection
    ) -> None:
        resp = await client.post("/pipes", json={"name": "Event Test"})
        assert resp.status_code == 201
        assert "pipe_created" in [e["type"] for e in get_unconsumed_events(conn)]

    @pytest.mark.asyncio
    async def test_card_operations_emit_events(
        self, client: AsyncClient, conn: sqlite3.Connection
    ) -> None:
        pipe = (
            await client.post(
                "/pipes", json={"name": "Cards", "stages": [{"name": "A"}, {"name": "B"}]}
            )
        ).json()
        _consume_all(conn)

        card = (
            await client.post(
                "/cards",
                json={"pipe_id": pipe["id"], "stage_id": pipe["stages"][0]["id"], "title": "C"},
            )
        ).json()["card"]
        await client.post(
            f"/cards/{card['id']}/move", json={"stage_id": pipe["stages"][1]["id"]}
        )
        await client.put(f"/cards/{card['id']}/fields/tier", json={"value": "gold"})

        event_types = [e["type"] for e in get_unconsumed_events(conn)]
        assert event_types == ["card_created", "card_moved", "card_field_updated"]

    @pytest.mark.asyncio
    async def test_delete_pipe_emits_event(
        self, client: AsyncClient, conn: sqlite3.Connection
    ) -> None:
        pipe = (await client.post("/pipes", json={"name": "Doomed"})).json()
        _consume_all(conn)

        await client.delete(f"/pipes/{pipe['id']}")

        assert [e["type"] for e in get_unconsumed_events(conn)] == ["pipe_deleted"]
