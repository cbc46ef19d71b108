"""
Unit Test Fixtures

In-memory stand-ins for the database, the outbox store and the broker.
"""

import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set, Tuple
from uuid import UUID, uuid4

import pytest

from outbox_relay.core.outbox.errors import EventNotFoundError, PublishError
from outbox_relay.core.outbox.models import OutboxEvent, OutboxStatus


def _normalize(query: str) -> str:
    return " ".join(query.split())


class FakeConnection:
    """
    Records statements and answers them from handlers registered with on().

    transaction() snapshots `state` and restores it when the block raises,
    which is enough to model savepoint and rollback behaviour.
    """

    def __init__(self):
        self.calls: List[Tuple[str, str, tuple]] = []
        self.state: Dict[str, Any] = {}
        self.transactions = 0
        self.rollbacks = 0
        self._handlers: List[Tuple[str, Any]] = []

    def on(self, fragment: str, result: Any) -> None:
        """Answer statements containing `fragment`; later registrations win."""
        self._handlers.insert(0, (fragment, result))

    def statements(self, fragment: str) -> List[Tuple[str, str, tuple]]:
        return [call for call in self.calls if fragment in call[1]]

    async def _answer(self, method: str, query: str, args: tuple, default: Any) -> Any:
        sql = _normalize(query)
        self.calls.append((method, sql, args))
        for fragment, result in self._handlers:
            if fragment in sql:
                if isinstance(result, Exception):
                    raise result
                return result(*args) if callable(result) else result
        return default

    async def execute(self, query: str, *args) -> Any:
        return await self._answer("execute", query, args, "OK")

    async def fetch(self, query: str, *args) -> Any:
        return await self._answer("fetch", query, args, [])

    async def fetchrow(self, query: str, *args) -> Any:
        return await self._answer("fetchrow", query, args, None)

    async def fetchval(self, query: str, *args) -> Any:
        return await self._answer("fetchval", query, args, None)

    @asynccontextmanager
    async def transaction(self):
        snapshot = copy.deepcopy(self.state)
        self.transactions += 1
        try:
            yield
        except BaseException:
            self.state.clear()
            self.state.update(snapshot)
            self.rollbacks += 1
            raise


class FakeDatabase:
    """DatabaseAdapter stand-in handing out one FakeConnection."""

    def __init__(self, conn: Optional[FakeConnection] = None):
        self.conn = conn or FakeConnection()
        self.commits = 0
        self.rollbacks = 0
        self.fail_with: Optional[Exception] = None

    @asynccontextmanager
    async def transaction(self):
        if self.fail_with is not None:
            raise self.fail_with
        try:
            async with self.conn.transaction():
                yield self.conn
        except BaseException:
            self.rollbacks += 1
            raise
        self.commits += 1

    async def fetchval(self, query: str, *args) -> Any:
        if self.fail_with is not None:
            raise self.fail_with
        return await self.conn.fetchval(query, *args)


def install_ledger(conn: FakeConnection) -> None:
    """Make `conn` behave like the processed_events table."""

    def ledger() -> Dict[Tuple[UUID, str], datetime]:
        return conn.state.setdefault("processed", {})

    def claim(event_id, consumer_name, processed_at):
        key = (event_id, consumer_name)
        if key in ledger():
            return None
        ledger()[key] = processed_at
        return True

    def insert(event_id, consumer_name, processed_at):
        return "INSERT 0 1" if claim(event_id, consumer_name, processed_at) else "INSERT 0 0"

    def exists(event_id, consumer_name):
        return {"?column?": 1} if (event_id, consumer_name) in ledger() else None

    conn.on("INSERT INTO processed_events", insert)
    conn.on("RETURNING true", claim)
    conn.on("SELECT 1 FROM processed_events", exists)


class InMemoryOutboxStore:
    """Outbox table kept in a dict; hands out repositories for the dispatcher."""

    def __init__(self):
        self.events: Dict[UUID, OutboxEvent] = {}
        self.fail_fetch: Optional[Exception] = None
        self.fail_update_for: Set[UUID] = set()

    def add(self, *events: OutboxEvent) -> None:
        for event in events:
            self.events[event.id] = event.model_copy(deep=True)

    def get(self, event_id: UUID) -> OutboxEvent:
        return self.events[event_id]

    def repository(self, conn: Any) -> "InMemoryOutboxRepository":
        return InMemoryOutboxRepository(self)


class InMemoryOutboxRepository:
    def __init__(self, store: InMemoryOutboxStore):
        self._store = store

    async def save(self, event: OutboxEvent) -> None:
        event.validate_for_persistence()
        self._store.add(event)

    async def find_pending_batch(self, limit: int) -> List[OutboxEvent]:
        if self._store.fail_fetch is not None:
            raise self._store.fail_fetch
        pending = [e for e in self._store.events.values() if e.status == OutboxStatus.PENDING]
        pending.sort(key=lambda e: e.created_at)
        return [e.model_copy(deep=True) for e in pending[:limit]]

    async def update_status(self, event: OutboxEvent) -> None:
        if event.id in self._store.fail_update_for:
            raise ConnectionError("connection reset while updating status")
        if event.id not in self._store.events:
            raise EventNotFoundError(event.id)
        self._store.add(event)


@dataclass
class PublishedMessage:
    exchange: str
    routing_key: str
    body: bytes
    message_id: str
    headers: Dict[str, Any] = field(default_factory=dict)
    content_type: str = "application/json"
    persistent: bool = True
    timeout: Optional[float] = None


class FakePublisher:
    """MessagePublisher that records messages and can be told to fail."""

    def __init__(self):
        self.published: List[PublishedMessage] = []
        self.attempts = 0
        self.fail_all = False
        self.failures: Dict[str, int] = {}

    def fail_next(self, message_id: str, times: int = 1) -> None:
        self.failures[message_id] = times

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        body: bytes,
        *,
        message_id: str,
        headers: Optional[Dict[str, Any]] = None,
        content_type: str = "application/json",
        persistent: bool = True,
        timeout: Optional[float] = None,
    ) -> None:
        self.attempts += 1
        remaining = self.failures.get(message_id, 0)
        if self.fail_all or remaining:
            if remaining:
                self.failures[message_id] = remaining - 1
            raise PublishError("broker unavailable")

        self.published.append(PublishedMessage(
            exchange=exchange,
            routing_key=routing_key,
            body=body,
            message_id=message_id,
            headers=dict(headers or {}),
            content_type=content_type,
            persistent=persistent,
            timeout=timeout,
        ))


def _make_event(
    payload: Optional[Dict[str, Any]] = None,
    aggregate_type: str = "invoice",
    event_type: str = "purchase.created",
    age: timedelta = timedelta(0),
    **fields: Any,
) -> OutboxEvent:
    """Pending event created `age` ago."""
    return OutboxEvent(
        aggregate_id=fields.pop("aggregate_id", uuid4()),
        aggregate_type=aggregate_type,
        event_type=event_type,
        payload={"user_id": "u1"} if payload is None else payload,
        created_at=datetime.now(timezone.utc) - age,
        **fields,
    )


@pytest.fixture
def fake_conn() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def fake_db(fake_conn) -> FakeDatabase:
    return FakeDatabase(fake_conn)


@pytest.fixture
def outbox_store() -> InMemoryOutboxStore:
    return InMemoryOutboxStore()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def make_event():
    return _make_event


@pytest.fixture
def ledger_db() -> FakeDatabase:
    """Database whose connection behaves like the processed_events table."""
    conn = FakeConnection()
    install_ledger(conn)
    return FakeDatabase(conn)
