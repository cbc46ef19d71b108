"""
Inbox Pattern Implementation

Consumer-side deduplication so at-least-once delivery has exactly-once
effects.

Usage:
    from outbox_relay.core.inbox import InboxGuard

    async with InboxGuard(db, event_id, consumer_name="budget_event_consumer") as guard:
        if guard.should_process:
            await apply_effects(guard.conn, event)
"""

from .guard import InboxGuard, ProcessedEventsRepository
from .consumer import ConsumeResult, IdempotentConsumer, InvalidMessageError, event_id_from_message

__all__ = [
    "InboxGuard",
    "ProcessedEventsRepository",
    "ConsumeResult",
    "IdempotentConsumer",
    "InvalidMessageError",
    "event_id_from_message",
]
