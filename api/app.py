"""FastAPI application for FlowLane."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.deps import set_db_path, set_engine
from api.routes import router
from api.ws import broadcast_events
from engine.orchestrator import AutomationEngine
from flowlane.config import default_config


def create_app(
    db_path: str,
    config: dict[str, Any] | None = None,
    engine: AutomationEngine | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        db_path: Path to the SQLite database.
        config: Full FlowLane config dict. Defaults are used when omitted.
        engine: Automation engine to dispatch with. Built from config
                (webhook email, Twilio SMS, event notifier) when omitted.
    """
    if config is None:
        config = default_config(db_path)
    if engine is None:
        engine = AutomationEngine.from_config({**config, "db_path": db_path})

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        tasks: list[asyncio.Task[None]] = []
        tasks.append(asyncio.create_task(broadcast_events(db_path)))

        yield

        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await engine.wait_for_notifications()

    set_db_path(db_path)
    set_engine(engine)

    app = FastAPI(title="FlowLane", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    return app
