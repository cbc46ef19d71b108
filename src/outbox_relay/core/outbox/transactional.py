"""
Transactional Event Publisher

Combines business operations with outbox writes in a single transaction
so either both are committed or neither is.
"""

from typing import Any, Dict, List, Optional
from uuid import UUID
from contextlib import asynccontextmanager

import asyncpg

from ..database.adapter import DatabaseAdapter, get_database
from .models import OutboxEvent
from .service import OutboxService, get_outbox_service


class TransactionalPublisher:
    """
    Emits outbox events inside the same transaction as business writes.

    Usage:
        async with TransactionalPublisher(db) as txn:
            await txn.conn.execute("INSERT INTO budgets ...")

            await txn.emit(
                aggregate_id=invoice_id,
                aggregate_type="invoice",
                event_type="purchase.created",
                payload={"user_id": "u1"},
            )
        # Both commit together or both roll back
    """

    def __init__(
        self,
        db: Optional[DatabaseAdapter] = None,
        service: Optional[OutboxService] = None,
    ):
        self._db = db
        self._service = service or get_outbox_service()
        self._tx_cm = None
        self.conn: Optional[asyncpg.Connection] = None
        self._events: List[OutboxEvent] = []

    async def __aenter__(self) -> "TransactionalPublisher":
        if self._db is None:
            self._db = await get_database()
        self._tx_cm = self._db.transaction()
        self.conn = await self._tx_cm.__aenter__()
        self._events = []
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            return await self._tx_cm.__aexit__(exc_type, exc_val, exc_tb)
        finally:
            if exc_type is not None:
                # rolled back together with the business writes
                self._events = []
            self.conn = None
            self._tx_cm = None

    async def emit(
        self,
        aggregate_id: UUID,
        aggregate_type: str,
        event_type: str,
        payload: Dict[str, Any],
    ) -> OutboxEvent:
        """
        Append an event to the outbox in the current transaction.

        Returns:
            The pending OutboxEvent
        """
        if self.conn is None:
            raise RuntimeError("emit() called outside of 'async with TransactionalPublisher()'")

        event = await self._service.save_domain_event(
            self.conn,
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            event_type=event_type,
            payload=payload,
        )
        self._events.append(event)
        return event

    @property
    def emitted_events(self) -> List[OutboxEvent]:
        """Events emitted in this transaction."""
        return self._events.copy()


@asynccontextmanager
async def transactional_publish(db: Optional[DatabaseAdapter] = None):
    """
    Context manager for transactional event publishing.

    Usage:
        async with transactional_publish() as txn:
            await txn.conn.execute("INSERT INTO budgets ...")
            await txn.emit(invoice_id, "invoice", "purchase.created", {...})
    """
    async with TransactionalPublisher(db) as publisher:
        yield publisher
