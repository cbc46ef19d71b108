"""
Request dependencies shared by the routers.

The app factory stores its database adapter and (when running inside the
worker) the scheduler on `app.state`.
"""

from typing import Optional

from fastapi import Request

from ..core.database.adapter import DatabaseAdapter, get_database
from ..core.scheduler.scheduler import Scheduler


async def get_db(request: Request) -> DatabaseAdapter:
    db = getattr(request.app.state, "db", None)
    if db is None:
        db = await get_database()
    return db


def get_scheduler(request: Request) -> Optional[Scheduler]:
    return getattr(request.app.state, "scheduler", None)
