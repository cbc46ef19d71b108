"""
Outbox Dispatcher

Drains pending outbox events to the message broker.

One dispatch pass:
1. opens a transaction and locks up to `batch_size` pending rows with
   FOR UPDATE SKIP LOCKED (concurrent dispatchers get disjoint batches)
2. publishes each event, persistent, with the event id as message id
3. records the outcome of each event in its own savepoint
4. commits, releasing the row locks

A failure on one event never aborts the batch. A failure to open the
transaction or to fetch the batch propagates to the caller.
"""

import logging
import time
from typing import Callable, Optional

import asyncpg

from ..config import DispatcherConfig
from ..database.adapter import DatabaseAdapter
from ..messaging.message import MessagePublisher
from ..observability.metrics import record_counter, record_histogram
from ..observability.tracing import create_span, inject_trace_context, publish_span
from ..scheduler.job import JobContext
from .models import OutboxEvent
from .repository import OutboxRepository

logger = logging.getLogger(__name__)

RepositoryFactory = Callable[[asyncpg.Connection], OutboxRepository]


class Dispatcher:
    """
    Publishes pending outbox events with retry bookkeeping.

    Features:
    - Lock-and-skip batch selection, safe with many dispatcher instances
    - Fixed retry backoff table, events fail permanently after MAX_RETRY_COUNT
    - Published-but-unrecorded events are left pending (at-least-once)
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        publisher: MessagePublisher,
        config: Optional[DispatcherConfig] = None,
        repository_factory: RepositoryFactory = OutboxRepository,
    ):
        self._db = db
        self._publisher = publisher
        self.config = config or DispatcherConfig()
        self._repository_factory = repository_factory

    async def dispatch(self, ctx: Optional[JobContext] = None) -> int:
        """
        Run one dispatch pass.

        Args:
            ctx: run context; publishing stops early once it is cancelled and
                each publish is bounded by its remaining time

        Returns:
            Number of events published in this pass
        """
        started = time.monotonic()

        with create_span("outbox.dispatcher.dispatch", {"batch_size": self.config.batch_size}) as span:
            async with self._db.transaction() as conn:
                repository = self._repository_factory(conn)
                events = await repository.find_pending_batch(self.config.batch_size)

                if not events:
                    logger.debug("no pending events to dispatch")
                    return 0

                published = 0
                for event in events:
                    if ctx is not None and ctx.cancelled:
                        logger.warning(
                            "dispatch interrupted, remaining events stay pending",
                            extra={"published": published, "total": len(events)},
                        )
                        break

                    try:
                        async with conn.transaction():
                            if await self._process_event(repository, event, ctx):
                                published += 1
                    except Exception:
                        logger.exception(
                            "failed to dispatch event",
                            extra={"event_id": str(event.id)},
                        )

            span.set_attribute("outbox.published", published)
            span.set_attribute("outbox.batch", len(events))

        record_histogram("outbox_dispatch_duration_seconds", time.monotonic() - started)

        logger.info(
            "dispatch completed",
            extra={"published": published, "total": len(events)},
        )
        return published

    async def _process_event(
        self,
        repository: OutboxRepository,
        event: OutboxEvent,
        ctx: Optional[JobContext],
    ) -> bool:
        """Publish one event and persist the outcome. True if it was published."""
        with create_span(
            "outbox.dispatcher.process_event",
            {"event_id": str(event.id), "routing_key": event.routing_key},
        ):
            routing_key = event.routing_key
            publish_started = time.monotonic()

            try:
                body = event.serialize_payload()
                with publish_span(self.config.exchange, routing_key, str(event.id)):
                    headers = inject_trace_context(event.message_headers())
                    await self._publisher.publish(
                        self.config.exchange,
                        routing_key,
                        body,
                        message_id=str(event.id),
                        headers=headers,
                        content_type="application/json",
                        persistent=True,
                        timeout=ctx.remaining() if ctx is not None else None,
                    )
            except Exception as e:
                await self._handle_publish_failure(repository, event, e)
                return False

            publish_duration = time.monotonic() - publish_started
            record_histogram("outbox_publish_duration_seconds", publish_duration)

            event.mark_as_published()
            try:
                await repository.update_status(event)
            except Exception as e:
                # The broker has the message but the row still says pending;
                # the next pass publishes it again rather than losing it.
                event.mark_as_pending()
                logger.error(
                    "event published but status update failed, left pending",
                    extra={"event_id": str(event.id), "error": str(e)},
                )
                raise

            record_counter("outbox_events_published_total", attributes={"routing_key": routing_key})
            logger.info(
                "event published successfully",
                extra={
                    "event_id": str(event.id),
                    "aggregate_type": event.aggregate_type,
                    "event_type": event.event_type,
                    "routing_key": routing_key,
                    "publish_duration_ms": int(publish_duration * 1000),
                },
            )
            return True

    async def _handle_publish_failure(
        self,
        repository: OutboxRepository,
        event: OutboxEvent,
        error: Exception,
    ) -> None:
        """Count the attempt; stay pending while retries remain, else fail permanently."""
        if event.can_retry():
            event.increment_retry(self.config.retry_backoff)

        if event.can_retry():
            event.mark_as_pending()
            record_counter("outbox_events_retried_total", attributes={"event_type": event.event_type})
            logger.warning(
                "event publish failed, will retry",
                extra={
                    "event_id": str(event.id),
                    "retry_count": event.retry_count,
                    "next_retry_at": event.next_retry_at.isoformat() if event.next_retry_at else None,
                    "error": str(error),
                },
            )
        else:
            event.mark_as_failed()
            record_counter("outbox_events_failed_total", attributes={"event_type": event.event_type})
            logger.error(
                "event publish failed permanently",
                extra={
                    "event_id": str(event.id),
                    "retry_count": event.retry_count,
                    "error": str(error),
                },
            )

        await repository.update_status(event)

