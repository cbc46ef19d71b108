"""
Idempotent Consumer

Runs a Handler behind an InboxGuard so that redelivered messages are
acknowledged without applying their effects a second time.

The event id is the message id the outbox dispatcher stamped on the
message. It is never regenerated here: a fresh id per delivery would make
every redelivery look new and defeat the ledger.
"""

import logging
from enum import Enum
from uuid import UUID

from ..database.adapter import DatabaseAdapter
from ..messaging.message import Handler, Message
from ..observability.metrics import record_counter
from ..observability.tracing import consume_span
from .guard import InboxGuard

logger = logging.getLogger(__name__)


class InvalidMessageError(ValueError):
    """The message carries no usable event id; redelivery cannot fix it."""


class ConsumeResult(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"


def event_id_from_message(message: Message) -> UUID:
    """
    Parse the event id out of the message id.

    Raises:
        InvalidMessageError: missing or not a UUID
    """
    if not message.message_id:
        raise InvalidMessageError(f"message on {message.routing_key} has no message id")
    try:
        return UUID(message.message_id)
    except ValueError as e:
        raise InvalidMessageError(f"invalid event id {message.message_id!r}: {e}") from e


class IdempotentConsumer:
    """Applies each event at most once per consumer name."""

    def __init__(self, db: DatabaseAdapter, handler: Handler):
        self._db = db
        self.handler = handler

    @property
    def name(self) -> str:
        return self.handler.name

    async def consume(self, message: Message) -> ConsumeResult:
        """
        Process a message unless this consumer already did.

        Raises:
            InvalidMessageError: the message has no valid event id
            Exception: whatever the handler raised; nothing was recorded
        """
        event_id = event_id_from_message(message)
        with consume_span(self.name, message.routing_key, str(event_id), message.headers):
            async with InboxGuard(self._db, event_id, self.name) as guard:
                if not guard.should_process:
                    record_counter("inbox_duplicates_total", attributes={"consumer": self.name})
                    logger.info(
                        "event already processed, skipping",
                        extra={"event_id": str(event_id), "consumer": self.name},
                    )
                    return ConsumeResult.DUPLICATE

                await self.handler.handle(message, guard.conn)

        logger.info(
            "event processed",
            extra={
                "event_id": str(event_id),
                "consumer": self.name,
                "routing_key": message.routing_key,
            },
        )
        return ConsumeResult.PROCESSED
