"""
Outbox operator endpoints: backlog by status and permanently failed events.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ...core.database.adapter import DatabaseAdapter
from ...core.outbox.models import OutboxEvent, OutboxStatus
from ...core.outbox.repository import OutboxRepository
from ..dependencies import get_db

router = APIRouter(prefix="/outbox", tags=["outbox"])


class OutboxStatsResponse(BaseModel):
    pending: int
    published: int
    failed: int
    total: int


class FailedEventResponse(BaseModel):
    id: UUID
    aggregate_id: UUID
    aggregate_type: str
    event_type: str
    routing_key: str
    payload: Dict[str, Any]
    retry_count: int
    failed_at: Optional[datetime]
    created_at: datetime

    @classmethod
    def from_event(cls, event: OutboxEvent) -> "FailedEventResponse":
        return cls(
            id=event.id,
            aggregate_id=event.aggregate_id,
            aggregate_type=event.aggregate_type,
            event_type=event.event_type,
            routing_key=event.routing_key,
            payload=event.payload,
            retry_count=event.retry_count,
            failed_at=event.failed_at,
            created_at=event.created_at,
        )


@router.get("/stats", response_model=OutboxStatsResponse)
async def outbox_stats(db: DatabaseAdapter = Depends(get_db)) -> OutboxStatsResponse:
    """Number of outbox events in each status."""
    async with db.transaction() as conn:
        repository = OutboxRepository(conn)
        counts = {status.value: await repository.count_by_status(status) for status in OutboxStatus}

    return OutboxStatsResponse(total=sum(counts.values()), **counts)


@router.get("/failed", response_model=List[FailedEventResponse])
async def failed_events(
    limit: int = Query(100, ge=1, le=1000),
    db: DatabaseAdapter = Depends(get_db),
) -> List[FailedEventResponse]:
    """Most recent events that exhausted their retries."""
    async with db.transaction() as conn:
        events = await OutboxRepository(conn).find_failed(limit)

    return [FailedEventResponse.from_event(event) for event in events]
