"""Live board updates over WebSocket.

A client may subscribe to a single pipe with ``/ws?pipe_id=...``; clients
without a pipe receive every event.
"""

import asyncio
import logging
from typing import Any

from fastapi import WebSocket

from api.deps import (
    enrich_event_payload,
    get_unconsumed_events,
    mark_event_consumed,
)
from db.client import get_connection

logger = logging.getLogger(__name__)


def event_pipe_id(message: dict[str, Any]) -> str | None:
    """Return the pipe an enriched event belongs to, if it names one."""
    payload = message.get("payload", {})
    if "pipe_id" in payload:
        return payload["pipe_id"]
    card = payload.get("card")
    if isinstance(card, dict):
        return card.get("pipe_id")
    if message.get("type") == "pipe_created":
        return payload.get("id")
    return None


class ConnectionManager:
    """Tracks open board sockets and the pipe each one watches."""

    def __init__(self) -> None:
        self.subscriptions: dict[WebSocket, str | None] = {}

    @property
    def active_connections(self) -> list[WebSocket]:
        return list(self.subscriptions)

    async def connect(self, websocket: WebSocket, pipe_id: str | None = None) -> None:
        await websocket.accept()
        self.subscriptions[websocket] = pipe_id

    def disconnect(self, websocket: WebSocket) -> None:
        self.subscriptions.pop(websocket, None)

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Send a message to every interested client, dropping dead sockets."""
        pipe_id = event_pipe_id(message)
        dead: list[WebSocket] = []
        for ws, watched in list(self.subscriptions.items()):
            if watched is not None and pipe_id is not None and watched != pipe_id:
                continue
            try:
                await ws.send_json(message)
            except Exception:
                logger.debug("Dropping websocket after failed send", exc_info=True)
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws)


manager = ConnectionManager()


async def broadcast_events(db_path: str, interval: float = 0.5) -> None:
    """Poll the events table forever, broadcasting and consuming each event."""
    while True:
        try:
            conn = get_connection(db_path)
            try:
                for event in get_unconsumed_events(conn):
                    await manager.broadcast(enrich_event_payload(conn, event))
                    mark_event_consumed(conn, event["id"])
            finally:
                conn.close()
        except Exception:
            logger.exception("Error in event broadcaster")
        await asyncio.sleep(interval)
