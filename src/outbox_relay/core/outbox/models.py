"""
Outbox Models

The outbox event record and its delivery state machine:

    pending --publish ok--------------------------> published
    pending --publish failed, retries left--------> pending (retry_count += 1)
    pending --publish failed, retries exhausted---> failed

published and failed are terminal.
"""

import json
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Sequence
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, model_validator

from ..config import DEFAULT_RETRY_BACKOFF, MAX_RETRY_COUNT
from .errors import InvalidPayloadError, InvalidStatusError, MaxRetriesReachedError


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class OutboxStatus(str, Enum):
    """Status of an outbox event. Mirrors the CHECK constraint on the table."""
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: Any) -> "OutboxStatus":
        """Coerce a raw value, raising InvalidStatusError for anything unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidStatusError(f"invalid outbox status: {value!r}") from None


class OutboxEvent(BaseModel):
    """A domain event stored for reliable publication."""

    model_config = {"validate_assignment": True}

    id: UUID = Field(default_factory=uuid4)
    aggregate_id: UUID
    aggregate_type: str
    event_type: str
    payload: Dict[str, Any]

    status: OutboxStatus = OutboxStatus.PENDING
    retry_count: int = Field(default=0, ge=0, le=MAX_RETRY_COUNT)

    next_retry_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=_utcnow, frozen=True)

    @model_validator(mode="after")
    def _terminal_timestamps_exclusive(self) -> "OutboxEvent":
        if self.published_at is not None and self.failed_at is not None:
            raise ValueError("published_at and failed_at cannot both be set")
        return self

    @classmethod
    def new(
        cls,
        aggregate_id: UUID,
        aggregate_type: str,
        event_type: str,
        payload: Dict[str, Any],
    ) -> "OutboxEvent":
        """Create a pending event, ready to be processed immediately."""
        return cls(
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            event_type=event_type,
            payload=payload,
        )

    @property
    def routing_key(self) -> str:
        """Routing key in the form {aggregate_type}.{event_type}."""
        return f"{self.aggregate_type}.{self.event_type}"

    def can_retry(self) -> bool:
        return self.retry_count < MAX_RETRY_COUNT

    def increment_retry(
        self,
        backoff: Sequence[timedelta] = DEFAULT_RETRY_BACKOFF,
    ) -> None:
        """
        Count a failed attempt and schedule the next one.

        next_retry_at uses backoff[retry_count - 1]; past the end of the table
        it is left untouched. The dispatcher does not filter on it.

        Raises:
            MaxRetriesReachedError: retry_count is already MAX_RETRY_COUNT
        """
        if not self.can_retry():
            raise MaxRetriesReachedError(f"max retry count reached: {MAX_RETRY_COUNT}")

        self.retry_count += 1

        idx = self.retry_count - 1
        if idx < len(backoff):
            self.next_retry_at = _utcnow() + backoff[idx]

    def mark_as_published(self) -> None:
        self.failed_at = None
        self.status = OutboxStatus.PUBLISHED
        self.published_at = _utcnow()

    def mark_as_failed(self) -> None:
        self.published_at = None
        self.status = OutboxStatus.FAILED
        self.failed_at = _utcnow()

    def mark_as_pending(self) -> None:
        """Back to pending; used while retries remain or when a status write is lost."""
        self.status = OutboxStatus.PENDING
        self.published_at = None
        self.failed_at = None

    def validate_for_persistence(self) -> None:
        """
        Check the event can be written.

        Raises:
            InvalidStatusError: status is outside the closed enumeration
            InvalidPayloadError: payload is empty or not JSON-serializable
        """
        OutboxStatus.parse(self.status)
        if not self.payload:
            raise InvalidPayloadError("outbox payload must not be empty")
        self.serialize_payload()

    def serialize_payload(self) -> bytes:
        """JSON body for the outbound message."""
        try:
            return json.dumps(self.payload, default=str).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise InvalidPayloadError(f"cannot serialize payload: {e}") from e

    def message_headers(self) -> Dict[str, str]:
        return {
            "aggregate_id": str(self.aggregate_id),
            "aggregate_type": self.aggregate_type,
            "event_type": self.event_type,
        }
