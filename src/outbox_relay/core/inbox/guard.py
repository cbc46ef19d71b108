"""
Inbox Guard

Consumer-side deduplication via the processed_events ledger.

The broker delivers at least once, so a consumer may see the same event
more than once. Each (event_id, consumer_name) pair is recorded in the
ledger in the same transaction as the consumer's business effects: either
both commit, or neither does and the redelivery is processed again.
"""

import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

import asyncpg

from ..database.adapter import DatabaseAdapter, get_database, rows_affected

logger = logging.getLogger(__name__)


class ProcessedEventsRepository:
    """Idempotency ledger bound to one connection."""

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    async def is_processed(self, event_id: UUID, consumer_name: str) -> bool:
        row = await self._conn.fetchrow(
            """
            SELECT 1 FROM processed_events
            WHERE event_id = $1 AND consumer_name = $2
            """,
            event_id,
            consumer_name,
        )
        return row is not None

    async def mark_as_processed(self, event_id: UUID, consumer_name: str) -> bool:
        """
        Record the pair. A duplicate is a silent no-op, never an error.

        Returns:
            True if a new entry was written, False if it already existed
        """
        result = await self._conn.execute(
            """
            INSERT INTO processed_events (event_id, consumer_name, processed_at)
            VALUES ($1, $2, $3)
            ON CONFLICT (event_id, consumer_name) DO NOTHING
            """,
            event_id,
            consumer_name,
            datetime.now(timezone.utc),
        )
        return rows_affected(result) == 1

    async def try_claim(self, event_id: UUID, consumer_name: str) -> bool:
        """
        Atomically check and record in one statement.

        While the claiming transaction is open, a concurrent claim of the same
        pair waits on the unique index and then sees the conflict.
        """
        claimed = await self._conn.fetchval(
            """
            INSERT INTO processed_events (event_id, consumer_name, processed_at)
            VALUES ($1, $2, $3)
            ON CONFLICT (event_id, consumer_name) DO NOTHING
            RETURNING true
            """,
            event_id,
            consumer_name,
            datetime.now(timezone.utc),
        )
        return bool(claimed)

    async def delete_old_processed(self, older_than: timedelta) -> int:
        """Delete ledger entries processed before now - older_than."""
        cutoff = datetime.now(timezone.utc) - older_than
        result = await self._conn.execute(
            "DELETE FROM processed_events WHERE processed_at < $1",
            cutoff,
        )
        return rows_affected(result)

    async def count_old_processed(self, older_than: timedelta) -> int:
        cutoff = datetime.now(timezone.utc) - older_than
        count = await self._conn.fetchval(
            "SELECT COUNT(*) FROM processed_events WHERE processed_at < $1",
            cutoff,
        )
        return int(count or 0)


class InboxGuard:
    """
    Guards against duplicate event processing.

    Opens a transaction, claims the event for this consumer and exposes the
    connection so business effects share the claim's transaction.

    Usage:
        async with InboxGuard(db, event_id, "budget_event_consumer") as guard:
            if guard.should_process:
                await guard.conn.execute("UPDATE budgets ...")
            else:
                logger.info("event already processed, skipping")

    If the block raises, the claim and the effects roll back together and
    the exception propagates so the message can be redelivered.
    """

    def __init__(
        self,
        db: Optional[DatabaseAdapter],
        event_id: UUID,
        consumer_name: str,
    ):
        self._db = db
        self.event_id = event_id
        self.consumer_name = consumer_name
        self.should_process = False
        self.conn: Optional[asyncpg.Connection] = None
        self._tx_cm = None

    async def __aenter__(self) -> "InboxGuard":
        if self._db is None:
            self._db = await get_database()

        self._tx_cm = self._db.transaction()
        self.conn = await self._tx_cm.__aenter__()

        try:
            self.should_process = await ProcessedEventsRepository(self.conn).try_claim(
                self.event_id, self.consumer_name
            )
        except BaseException:
            await self._tx_cm.__aexit__(*sys.exc_info())
            self.conn = None
            raise

        if self.should_process:
            logger.debug(
                "event claimed for processing",
                extra={"event_id": str(self.event_id), "consumer": self.consumer_name},
            )
        else:
            logger.debug(
                "event already processed",
                extra={"event_id": str(self.event_id), "consumer": self.consumer_name},
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            await self._tx_cm.__aexit__(exc_type, exc_val, exc_tb)
        finally:
            self.conn = None
            self._tx_cm = None

        if exc_type is not None and self.should_process:
            logger.warning(
                "event processing failed, claim rolled back",
                extra={
                    "event_id": str(self.event_id),
                    "consumer": self.consumer_name,
                    "error": str(exc_val),
                },
            )
        return False