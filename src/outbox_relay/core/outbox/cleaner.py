"""
Outbox Cleaner

Deletes terminal outbox events once they are past their retention window:

- published events older than `retention_days` (by published_at)
- failed events older than `failed_retention_days` (by failed_at)
- optionally, processed-events ledger rows older than
  `processed_events_retention_days` (by processed_at)

Pending events are never touched. All deletes of one sweep share a
transaction. In dry-run mode the same predicates are counted instead.
"""

import logging
from datetime import timedelta
from typing import Optional

from ..config import CleanupConfig
from ..database.adapter import DatabaseAdapter
from ..inbox.guard import ProcessedEventsRepository
from ..observability.metrics import record_counter
from ..observability.tracing import create_span
from ..scheduler.job import JobContext
from .repository import OutboxRepository

logger = logging.getLogger(__name__)


class Cleaner:
    """Retention sweep over the outbox and the processed-events ledger."""

    def __init__(self, db: DatabaseAdapter, config: Optional[CleanupConfig] = None):
        self._db = db
        self.config = config or CleanupConfig()

    async def cleanup(self, ctx: Optional[JobContext] = None) -> int:
        """
        Run one sweep.

        Returns:
            Rows deleted, or rows that would be deleted in dry-run mode
        """
        if ctx is not None and ctx.cancelled:
            logger.info("cleanup skipped, run already cancelled")
            return 0

        published_age = timedelta(days=self.config.retention_days)
        failed_age = timedelta(days=self.config.failed_retention_days)
        processed_days = self.config.processed_events_retention_days

        with create_span("outbox.cleaner.cleanup", {"dry_run": self.config.dry_run}):
            async with self._db.transaction() as conn:
                outbox = OutboxRepository(conn)
                ledger = ProcessedEventsRepository(conn)

                if self.config.dry_run:
                    published = await outbox.count_old_published(published_age)
                    failed = await outbox.count_old_failed(failed_age)
                    processed = 0
                    if processed_days is not None:
                        processed = await ledger.count_old_processed(timedelta(days=processed_days))

                    logger.info(
                        "dry run: would delete old outbox events",
                        extra={
                            "published_events": published,
                            "failed_events": failed,
                            "processed_events": processed,
                            "retention_days": self.config.retention_days,
                            "failed_retention_days": self.config.failed_retention_days,
                        },
                    )
                    return published + failed + processed

                published = await outbox.delete_old_published(published_age)
                failed = await outbox.delete_old_failed(failed_age)
                processed = 0
                if processed_days is not None:
                    processed = await ledger.delete_old_processed(timedelta(days=processed_days))

        total = published + failed + processed
        if published:
            record_counter("outbox_events_deleted_total", published, {"status": "published"})
        if failed:
            record_counter("outbox_events_deleted_total", failed, {"status": "failed"})
        if processed:
            record_counter("outbox_events_deleted_total", processed, {"status": "processed"})

        logger.info(
            "outbox cleanup completed",
            extra={
                "published_deleted": published,
                "failed_deleted": failed,
                "processed_deleted": processed,
                "total_deleted": total,
            },
        )
        return total
