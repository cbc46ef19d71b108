"""
Tests for the outbox dispatcher using an in-memory store and broker.
"""

import json
from datetime import timedelta

import pytest

from outbox_relay.core.config import DispatcherConfig, MAX_RETRY_COUNT
from outbox_relay.core.outbox.dispatcher import Dispatcher
from outbox_relay.core.outbox.errors import MaxRetriesReachedError
from outbox_relay.core.outbox.models import OutboxStatus
from outbox_relay.core.scheduler.job import JobContext


@pytest.fixture
def dispatcher(fake_db, publisher, outbox_store):
    return Dispatcher(
        fake_db,
        publisher,
        DispatcherConfig(batch_size=100, exchange="financial.events"),
        repository_factory=outbox_store.repository,
    )


class TestDispatchSuccess:
    """Test publishing pending events."""

    async def test_empty_batch(self, dispatcher, publisher):
        assert await dispatcher.dispatch() == 0
        assert publisher.attempts == 0

    async def test_publishes_and_marks_published(self, dispatcher, publisher, outbox_store, make_event):
        """Saved pending event ends up published with the expected routing key."""
        event = make_event({"user_id": "u1"})
        outbox_store.add(event)

        published = await dispatcher.dispatch()

        assert published == 1
        stored = outbox_store.get(event.id)
        assert stored.status == OutboxStatus.PUBLISHED
        assert stored.published_at is not None
        assert stored.failed_at is None

        [message] = publisher.published
        assert message.exchange == "financial.events"
        assert message.routing_key == "invoice.purchase.created"
        assert json.loads(message.body) == {"user_id": "u1"}

    async def test_message_identity_and_headers(self, dispatcher, publisher, outbox_store, make_event):
        """Message id is the event id; delivery is persistent JSON."""
        event = make_event()
        outbox_store.add(event)

        await dispatcher.dispatch()

        [message] = publisher.published
        assert message.message_id == str(event.id)
        assert message.persistent is True
        assert message.content_type == "application/json"
        assert message.headers["aggregate_id"] == str(event.aggregate_id)
        assert message.headers["aggregate_type"] == "invoice"
        assert message.headers["event_type"] == "purchase.created"

    async def test_oldest_first_and_batch_limit(self, fake_db, publisher, outbox_store, make_event):
        newest = make_event(age=timedelta(seconds=1))
        oldest = make_event(age=timedelta(seconds=30))
        middle = make_event(age=timedelta(seconds=10))
        outbox_store.add(newest, oldest, middle)
        dispatcher = Dispatcher(
            fake_db,
            publisher,
            DispatcherConfig(batch_size=2),
            repository_factory=outbox_store.repository,
        )

        assert await dispatcher.dispatch() == 2

        assert [m.message_id for m in publisher.published] == [str(oldest.id), str(middle.id)]
        assert outbox_store.get(newest.id).status == OutboxStatus.PENDING

    async def test_batch_commits_once(self, dispatcher, fake_db, outbox_store, make_event):
        outbox_store.add(make_event(), make_event())

        await dispatcher.dispatch()

        assert fake_db.commits == 1
        assert fake_db.rollbacks == 0

    async def test_published_events_not_selected_again(self, dispatcher, publisher, outbox_store, make_event):
        outbox_store.add(make_event())

        await dispatcher.dispatch()
        assert await dispatcher.dispatch() == 0

        assert len(publisher.published) == 1


class TestDispatchFailures:
    """Test retry bookkeeping and failure isolation."""

    async def test_failure_schedules_retry(self, dispatcher, publisher, outbox_store, make_event):
        event = make_event()
        outbox_store.add(event)
        publisher.fail_next(str(event.id))

        assert await dispatcher.dispatch() == 0

        stored = outbox_store.get(event.id)
        assert stored.status == OutboxStatus.PENDING
        assert stored.retry_count == 1
        assert stored.next_retry_at is not None

    async def test_three_failures_mark_failed(self, dispatcher, publisher, outbox_store, make_event):
        """After MAX_RETRY_COUNT consecutive failures the event is failed for good."""
        event = make_event()
        outbox_store.add(event)
        publisher.fail_next(str(event.id), times=MAX_RETRY_COUNT)

        for _ in range(MAX_RETRY_COUNT):
            await dispatcher.dispatch()

        stored = outbox_store.get(event.id)
        assert stored.status == OutboxStatus.FAILED
        assert stored.retry_count == MAX_RETRY_COUNT
        assert stored.failed_at is not None
        assert stored.published_at is None

        with pytest.raises(MaxRetriesReachedError):
            stored.increment_retry()

        # terminal: never selected again
        assert await dispatcher.dispatch() == 0
        assert publisher.attempts == MAX_RETRY_COUNT

    async def test_failure_does_not_abort_batch(self, dispatcher, publisher, outbox_store, make_event):
        failing = make_event(age=timedelta(seconds=20))
        healthy = make_event(age=timedelta(seconds=10))
        outbox_store.add(failing, healthy)
        publisher.fail_next(str(failing.id))

        assert await dispatcher.dispatch() == 1

        assert outbox_store.get(failing.id).status == OutboxStatus.PENDING
        assert outbox_store.get(healthy.id).status == OutboxStatus.PUBLISHED

    async def test_retry_then_success(self, dispatcher, publisher, outbox_store, make_event):
        event = make_event()
        outbox_store.add(event)
        publisher.fail_next(str(event.id), times=2)

        await dispatcher.dispatch()
        await dispatcher.dispatch()
        assert await dispatcher.dispatch() == 1

        stored = outbox_store.get(event.id)
        assert stored.status == OutboxStatus.PUBLISHED
        assert stored.retry_count == 2

    async def test_status_update_failure_leaves_event_pending(
        self, dispatcher, publisher, outbox_store, make_event, caplog
    ):
        """A published event whose status write fails is republished later, not lost."""
        event = make_event()
        outbox_store.add(event)
        outbox_store.fail_update_for.add(event.id)

        assert await dispatcher.dispatch() == 0

        assert len(publisher.published) == 1
        assert outbox_store.get(event.id).status == OutboxStatus.PENDING
        assert any("status update failed" in r.getMessage() for r in caplog.records)

        outbox_store.fail_update_for.clear()
        assert await dispatcher.dispatch() == 1
        assert len(publisher.published) == 2

    async def test_fetch_failure_propagates(self, dispatcher, outbox_store):
        outbox_store.fail_fetch = ConnectionError("database is down")

        with pytest.raises(ConnectionError):
            await dispatcher.dispatch()

    async def test_transaction_failure_propagates(self, dispatcher, fake_db):
        fake_db.fail_with = ConnectionError("pool exhausted")

        with pytest.raises(ConnectionError):
            await dispatcher.dispatch()


class TestDispatchCancellation:
    """Test deadline and shutdown handling."""

    async def test_publish_bounded_by_remaining_time(self, dispatcher, publisher, outbox_store, make_event):
        outbox_store.add(make_event())
        ctx = JobContext.with_timeout("outbox_dispatcher", 30.0)

        await dispatcher.dispatch(ctx)

        [message] = publisher.published
        assert message.timeout is not None
        assert 0 < message.timeout <= 30.0

    async def test_cancelled_context_leaves_events_pending(
        self, dispatcher, publisher, outbox_store, make_event
    ):
        event = make_event()
        outbox_store.add(event)
        ctx = JobContext.with_timeout("outbox_dispatcher", None)
        ctx.shutdown.set()

        assert await dispatcher.dispatch(ctx) == 0

        assert publisher.attempts == 0
        assert outbox_store.get(event.id).status == OutboxStatus.PENDING
