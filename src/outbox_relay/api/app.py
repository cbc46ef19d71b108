"""
Operations API

FastAPI app exposing health probes and outbox visibility. The worker
serves it next to the scheduler; it can also run standalone:

    uvicorn outbox_relay.api.app:create_app --factory
"""

from contextlib import asynccontextmanager
from typing import Optional
import os

from fastapi import FastAPI

from ..core.database.adapter import DatabaseAdapter, close_database, get_database
from ..core.scheduler.scheduler import Scheduler
from .routers.health import router as health_router
from .routers.outbox import router as outbox_router


def create_app(
    db: Optional[DatabaseAdapter] = None,
    scheduler: Optional[Scheduler] = None,
) -> FastAPI:
    """
    Build the app.

    Args:
        db: adapter to use; when omitted the global adapter is opened on
            startup and closed on shutdown
        scheduler: reported by the readiness probe when given
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_db = app.state.db is None
        if owns_db:
            app.state.db = await get_database()

        yield

        if owns_db:
            await close_database()
            app.state.db = None

    app = FastAPI(
        title="Outbox Relay",
        description="Health and outbox visibility for the outbox relay worker",
        version=os.getenv("APP_VERSION", "0.1.0"),
        lifespan=lifespan,
    )
    app.state.db = db
    app.state.scheduler = scheduler

    app.include_router(health_router)
    app.include_router(outbox_router)

    return app
