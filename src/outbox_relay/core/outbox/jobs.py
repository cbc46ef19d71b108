"""
Scheduled Outbox Jobs

Adapters that run the dispatcher and the cleaner under the Scheduler.
"""

import asyncio
import logging
from typing import Optional

import asyncpg

from ..scheduler.job import Job, JobContext
from ..scheduler.scheduler import JobError
from .cleaner import Cleaner
from .dispatcher import Dispatcher
from .errors import OutboxError

logger = logging.getLogger(__name__)

DISPATCHER_JOB_NAME = "outbox_dispatcher"
CLEANUP_JOB_NAME = "outbox_cleanup"

# Operational failures reported as JobError; anything else is a bug and
# reaches the scheduler as a crash with its traceback.
EXPECTED_ERRORS = (
    OutboxError,
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)


class DispatcherJob(Job):
    """Runs one dispatch pass per trigger."""

    def __init__(self, dispatcher: Dispatcher, schedule: Optional[str] = None):
        self._dispatcher = dispatcher
        self._schedule = schedule or dispatcher.config.schedule

    @property
    def name(self) -> str:
        return DISPATCHER_JOB_NAME

    @property
    def schedule(self) -> str:
        return self._schedule

    async def run(self, ctx: JobContext) -> None:
        try:
            published = await self._dispatcher.dispatch(ctx)
        except EXPECTED_ERRORS as e:
            raise JobError(f"dispatch failed: {e}") from e

        if published:
            logger.debug("dispatcher job published events", extra={"published": published})


class CleanupJob(Job):
    """Runs one retention sweep per trigger."""

    def __init__(self, cleaner: Cleaner, schedule: Optional[str] = None):
        self._cleaner = cleaner
        self._schedule = schedule or cleaner.config.schedule

    @property
    def name(self) -> str:
        return CLEANUP_JOB_NAME

    @property
    def schedule(self) -> str:
        return self._schedule

    async def run(self, ctx: JobContext) -> None:
        try:
            await self._cleaner.cleanup(ctx)
        except EXPECTED_ERRORS as e:
            raise JobError(f"cleanup failed: {e}") from e
