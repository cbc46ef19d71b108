"""
Outbox Pattern Implementation

Provides transactional event publishing with guaranteed delivery.

Usage:
    from outbox_relay.core.outbox import transactional_publish

    async with transactional_publish() as txn:
        await txn.conn.execute("UPDATE budgets ...")
        # This is atomic with the business write above
        await txn.emit(invoice_id, "invoice", "purchase.created", {"user_id": "u1"})
"""

from .errors import (
    OutboxError,
    EventNotFoundError,
    InvalidStatusError,
    InvalidPayloadError,
    MaxRetriesReachedError,
    PublishError,
)
from .models import OutboxEvent, OutboxStatus
from .repository import OutboxRepository
from .service import OutboxService, get_outbox_service
from .transactional import TransactionalPublisher, transactional_publish
from .dispatcher import Dispatcher
from .cleaner import Cleaner
from .jobs import CleanupJob, DispatcherJob, CLEANUP_JOB_NAME, DISPATCHER_JOB_NAME

__all__ = [
    "OutboxError",
    "EventNotFoundError",
    "InvalidStatusError",
    "InvalidPayloadError",
    "MaxRetriesReachedError",
    "PublishError",
    "OutboxEvent",
    "OutboxStatus",
    "OutboxRepository",
    "OutboxService",
    "get_outbox_service",
    "TransactionalPublisher",
    "transactional_publish",
    "Dispatcher",
    "Cleaner",
    "DispatcherJob",
    "CleanupJob",
    "DISPATCHER_JOB_NAME",
    "CLEANUP_JOB_NAME",
]
