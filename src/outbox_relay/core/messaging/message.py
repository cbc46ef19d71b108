"""
Messaging Contracts

The message shape seen by consumers, the handler interface they implement,
and the publisher interface the outbox dispatcher depends on.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import asyncpg


@dataclass
class Message:
    """An inbound broker message."""

    message_id: Optional[str]
    routing_key: str
    body: bytes
    headers: Dict[str, Any] = field(default_factory=dict)
    content_type: Optional[str] = None

    def json(self) -> Dict[str, Any]:
        """Decode the body as a JSON object."""
        return json.loads(self.body.decode("utf-8"))


class Handler(ABC):
    """
    Business reaction to a set of routing keys.

    handle() receives the connection of the transaction that also records
    the idempotency ledger entry; effects written through it commit or roll
    back together with that entry.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Consumer name used as the ledger key."""

    @abstractmethod
    def topics(self) -> List[str]:
        """Routing keys (topic patterns allowed) this handler consumes."""

    @abstractmethod
    async def handle(self, message: Message, conn: asyncpg.Connection) -> None:
        """Apply the message's effects. Raise to have it redelivered."""


class MessagePublisher(Protocol):
    """What the dispatcher needs from a broker client."""

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
        ...
