"""
Outbox Repository

Persistence for outbox events. A repository is bound to one connection,
normally the caller's open transaction, and never commits on its own:

    async with db.transaction() as conn:
        await conn.execute("INSERT INTO budgets ...")
        await OutboxRepository(conn).save(event)
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, List, Mapping
from uuid import UUID

import asyncpg

from ..database.adapter import rows_affected
from .errors import EventNotFoundError
from .models import OutboxEvent, OutboxStatus

logger = logging.getLogger(__name__)

_COLUMNS = """
    id, aggregate_id, aggregate_type, event_type, payload, status,
    retry_count, next_retry_at, published_at, failed_at, created_at
"""


def _row_to_event(row: Mapping[str, Any]) -> OutboxEvent:
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)

    return OutboxEvent(
        id=row["id"],
        aggregate_id=row["aggregate_id"],
        aggregate_type=row["aggregate_type"],
        event_type=row["event_type"],
        payload=payload,
        status=OutboxStatus.parse(row["status"]),
        retry_count=row["retry_count"],
        next_retry_at=row["next_retry_at"],
        published_at=row["published_at"],
        failed_at=row["failed_at"],
        created_at=row["created_at"],
    )


class OutboxRepository:
    """SQL-backed outbox store on top of an asyncpg connection."""

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    async def save(self, event: OutboxEvent) -> None:
        """
        Insert a new event.

        Must run inside the transaction of the business write it describes;
        that shared commit is what makes the outbox atomic.

        Raises:
            InvalidStatusError, InvalidPayloadError: before any SQL is issued
        """
        event.validate_for_persistence()

        await self._conn.execute(
            f"""
            INSERT INTO outbox_events ({_COLUMNS})
            VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8, $9, $10, $11)
            """,
            event.id,
            event.aggregate_id,
            event.aggregate_type,
            event.event_type,
            json.dumps(event.payload, default=str),
            event.status.value,
            event.retry_count,
            event.next_retry_at,
            event.published_at,
            event.failed_at,
            event.created_at,
        )

    async def find_pending_batch(self, limit: int) -> List[OutboxEvent]:
        """
        Lock and return up to `limit` pending events, oldest first.

        FOR UPDATE SKIP LOCKED leaves rows locked by another open transaction
        out of the result, so concurrent dispatchers get disjoint batches
        without waiting on each other. Locks are held until the caller's
        transaction ends.
        """
        rows = await self._conn.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM outbox_events
            WHERE status = $1
            ORDER BY created_at ASC
            LIMIT $2
            FOR UPDATE SKIP LOCKED
            """,
            OutboxStatus.PENDING.value,
            limit,
        )
        return [_row_to_event(row) for row in rows]

    async def update_status(self, event: OutboxEvent) -> None:
        """
        Persist status, retry bookkeeping and terminal timestamps.

        Raises:
            EventNotFoundError: no row with this id
        """
        result = await self._conn.execute(
            """
            UPDATE outbox_events
            SET status = $1,
                retry_count = $2,
                next_retry_at = $3,
                published_at = $4,
                failed_at = $5
            WHERE id = $6
            """,
            OutboxStatus.parse(event.status).value,
            event.retry_count,
            event.next_retry_at,
            event.published_at,
            event.failed_at,
            event.id,
        )

        if rows_affected(result) == 0:
            raise EventNotFoundError(event.id)

    async def delete_old_published(self, older_than: timedelta) -> int:
        """Delete published events whose published_at is before now - older_than."""
        return await self._delete_terminal(OutboxStatus.PUBLISHED, "published_at", older_than)

    async def delete_old_failed(self, older_than: timedelta) -> int:
        """Delete failed events whose failed_at is before now - older_than."""
        return await self._delete_terminal(OutboxStatus.FAILED, "failed_at", older_than)

    async def count_old_published(self, older_than: timedelta) -> int:
        return await self._count_terminal(OutboxStatus.PUBLISHED, "published_at", older_than)

    async def count_old_failed(self, older_than: timedelta) -> int:
        return await self._count_terminal(OutboxStatus.FAILED, "failed_at", older_than)

    async def find_by_id(self, event_id: UUID) -> OutboxEvent:
        row = await self._conn.fetchrow(
            f"SELECT {_COLUMNS} FROM outbox_events WHERE id = $1",
            event_id,
        )
        if row is None:
            raise EventNotFoundError(event_id)
        return _row_to_event(row)

    async def count_by_status(self, status: OutboxStatus) -> int:
        count = await self._conn.fetchval(
            "SELECT COUNT(*) FROM outbox_events WHERE status = $1",
            OutboxStatus.parse(status).value,
        )
        return int(count or 0)

    async def find_failed(self, limit: int = 100) -> List[OutboxEvent]:
        """Most recent permanently failed events, for operators."""
        rows = await self._conn.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM outbox_events
            WHERE status = $1
            ORDER BY failed_at DESC
            LIMIT $2
            """,
            OutboxStatus.FAILED.value,
            limit,
        )
        return [_row_to_event(row) for row in rows]

    async def _delete_terminal(self, status: OutboxStatus, column: str, older_than: timedelta) -> int:
        cutoff = datetime.now(timezone.utc) - older_than
        result = await self._conn.execute(
            f"""
            DELETE FROM outbox_events
            WHERE status = $1
              AND {column} IS NOT NULL
              AND {column} < $2
            """,
            status.value,
            cutoff,
        )
        return rows_affected(result)

    async def _count_terminal(self, status: OutboxStatus, column: str, older_than: timedelta) -> int:
        cutoff = datetime.now(timezone.utc) - older_than
        count = await self._conn.fetchval(
            f"""
            SELECT COUNT(*) FROM outbox_events
            WHERE status = $1
              AND {column} IS NOT NULL
              AND {column} < $2
            """,
            status.value,
            cutoff,
        )
        return int(count or 0)
