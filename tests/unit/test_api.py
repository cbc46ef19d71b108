"""
Tests for the operations API.
"""

import json

import pytest
from httpx import ASGITransport, AsyncClient

from outbox_relay.api.app import create_app
from outbox_relay.core.scheduler import Scheduler


@pytest.fixture
def counts(fake_conn):
    values = {"pending": 4, "published": 120, "failed": 2}
    fake_conn.on("SELECT COUNT(*) FROM outbox_events WHERE status", lambda status: values[status])
    return values


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


class TestHealthEndpoints:
    """Test health, liveness and readiness probes."""

    async def test_health(self, fake_db):
        async with _client(create_app(db=fake_db)) as client:
            response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_liveness(self, fake_db):
        async with _client(create_app(db=fake_db)) as client:
            response = await client.get("/health/live")

        assert response.json() == {"status": "alive"}

    async def test_ready_with_database(self, fake_db, fake_conn):
        fake_conn.on("SELECT 1", 1)

        async with _client(create_app(db=fake_db)) as client:
            response = await client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["checks"] == {"database": "healthy"}

    async def test_not_ready_without_database(self, fake_db):
        fake_db.fail_with = ConnectionError("connection refused")

        async with _client(create_app(db=fake_db)) as client:
            response = await client.get("/health/ready")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "not_ready"
        assert body["checks"]["database"].startswith("unhealthy")

    async def test_not_ready_when_scheduler_stopped(self, fake_db, fake_conn):
        fake_conn.on("SELECT 1", 1)
        scheduler = Scheduler()

        async with _client(create_app(db=fake_db, scheduler=scheduler)) as client:
            response = await client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["scheduler"] == "not running"

    async def test_ready_when_scheduler_running(self, fake_db, fake_conn):
        fake_conn.on("SELECT 1", 1)
        scheduler = Scheduler()
        scheduler.start()

        async with _client(create_app(db=fake_db, scheduler=scheduler)) as client:
            response = await client.get("/health/ready")

        await scheduler.shutdown(timeout=1.0)
        assert response.status_code == 200
        assert response.json()["checks"]["scheduler"] == "running"


class TestOutboxEndpoints:
    """Test outbox visibility endpoints."""

    async def test_stats(self, fake_db, counts):
        async with _client(create_app(db=fake_db)) as client:
            response = await client.get("/outbox/stats")

        assert response.status_code == 200
        assert response.json() == {"pending": 4, "published": 120, "failed": 2, "total": 126}

    async def test_failed_events(self, fake_db, fake_conn, make_event):
        event = make_event({"user_id": "u1"})
        event.retry_count = 3
        event.mark_as_failed()
        fake_conn.on("ORDER BY failed_at DESC", [{
            "id": event.id,
            "aggregate_id": event.aggregate_id,
            "aggregate_type": event.aggregate_type,
            "event_type": event.event_type,
            "payload": json.dumps(event.payload),
            "status": "failed",
            "retry_count": 3,
            "next_retry_at": None,
            "published_at": None,
            "failed_at": event.failed_at,
            "created_at": event.created_at,
        }])

        async with _client(create_app(db=fake_db)) as client:
            response = await client.get("/outbox/failed", params={"limit": 10})

        assert response.status_code == 200
        [item] = response.json()
        assert item["id"] == str(event.id)
        assert item["routing_key"] == "invoice.purchase.created"
        assert item["retry_count"] == 3
        assert fake_conn.statements("ORDER BY failed_at DESC")[0][2] == ("failed", 10)

    async def test_failed_limit_validated(self, fake_db):
        async with _client(create_app(db=fake_db)) as client:
            response = await client.get("/outbox/failed", params={"limit": 0})

        assert response.status_code == 422
