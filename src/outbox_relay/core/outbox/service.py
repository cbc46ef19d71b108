"""
Outbox Service

Appends domain events to the outbox from inside business transactions.

Usage:
    async with db.transaction() as conn:
        await conn.execute("INSERT INTO budgets ...", ...)
        await OutboxService().save_domain_event(
            conn,
            aggregate_id=invoice_id,
            aggregate_type="invoice",
            event_type="purchase.created",
            payload={"user_id": str(user_id)},
        )
    # the budget row and the outbox row commit together
"""

import logging
from typing import Any, Callable, Dict, Optional
from uuid import UUID

import asyncpg

from ..observability.metrics import record_counter
from ..observability.tracing import traced
from .errors import InvalidPayloadError, InvalidStatusError
from .models import OutboxEvent
from .repository import OutboxRepository

logger = logging.getLogger(__name__)


class OutboxService:
    """Validates and saves outbox events on the caller's connection."""

    def __init__(
        self,
        repository_factory: Callable[[asyncpg.Connection], OutboxRepository] = OutboxRepository,
    ):
        self._repository_factory = repository_factory

    @traced("outbox.service.save_event")
    async def save_event(self, conn: asyncpg.Connection, event: OutboxEvent) -> OutboxEvent:
        """
        Save an event in the caller's transaction.

        No commit or rollback happens here; the caller's transaction decides.

        Raises:
            InvalidStatusError: status outside pending/published/failed
            InvalidPayloadError: empty or unserializable payload
        """
        try:
            event.validate_for_persistence()
        except (InvalidStatusError, InvalidPayloadError) as e:
            logger.error(
                f"rejected outbox event: {e}",
                extra={"aggregate_type": event.aggregate_type, "event_type": event.event_type},
            )
            raise

        await self._repository_factory(conn).save(event)

        record_counter("outbox_events_saved_total", attributes={"event_type": event.event_type})
        logger.debug(
            "outbox event saved",
            extra={
                "event_id": str(event.id),
                "aggregate_id": str(event.aggregate_id),
                "aggregate_type": event.aggregate_type,
                "event_type": event.event_type,
            },
        )
        return event

    async def save_domain_event(
        self,
        conn: asyncpg.Connection,
        aggregate_id: UUID,
        aggregate_type: str,
        event_type: str,
        payload: Dict[str, Any],
    ) -> OutboxEvent:
        """Build a pending event and save it in the caller's transaction."""
        event = OutboxEvent.new(aggregate_id, aggregate_type, event_type, payload)
        return await self.save_event(conn, event)


# Global service instance
_service: Optional[OutboxService] = None


def get_outbox_service() -> OutboxService:
    global _service
    if _service is None:
        _service = OutboxService()
    return _service
