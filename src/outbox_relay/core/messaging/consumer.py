"""
Queue Consumer

Binds a durable queue to the events exchange for each of a handler's
topics and feeds deliveries through an IdempotentConsumer.

Acknowledgement policy:
- processed or duplicate: ack
- no usable event id: reject without requeue (redelivery cannot help)
- handler failure: nack with requeue, nothing was recorded
"""

from __future__ import annotations

import logging
from typing import Optional

from aio_pika.abc import AbstractIncomingMessage, AbstractQueue

from ..inbox.consumer import IdempotentConsumer, InvalidMessageError
from .message import Message
from .rabbitmq import RabbitMQClient

logger = logging.getLogger(__name__)


def to_message(incoming: AbstractIncomingMessage) -> Message:
    return Message(
        message_id=incoming.message_id,
        routing_key=incoming.routing_key or "",
        body=incoming.body,
        headers=dict(incoming.headers or {}),
        content_type=incoming.content_type,
    )


class QueueConsumer:
    """
    Subscribes one IdempotentConsumer to the exchange.

    Usage:
        consumer = QueueConsumer(client, "financial.events", IdempotentConsumer(db, handler))
        await consumer.start()
    """

    def __init__(
        self,
        client: RabbitMQClient,
        exchange: str,
        consumer: IdempotentConsumer,
        queue_name: Optional[str] = None,
    ):
        self._client = client
        self.exchange = exchange
        self.consumer = consumer
        self.queue_name = queue_name or consumer.name
        self._queue: Optional[AbstractQueue] = None
        self._consumer_tag: Optional[str] = None

    async def start(self) -> None:
        """Declare the queue, bind every topic and start consuming."""
        self._queue = await self._client.declare_queue(self.queue_name)
        for topic in self.consumer.handler.topics():
            await self._client.bind(self._queue, self.exchange, topic)

        self._consumer_tag = await self._client.consume(self._queue, self.on_message)
        logger.info(
            f"consumer started: {self.consumer.name}",
            extra={"queue": self.queue_name, "topics": self.consumer.handler.topics()},
        )

    async def stop(self) -> None:
        if self._queue is not None and self._consumer_tag is not None:
            await self._queue.cancel(self._consumer_tag)
        self._consumer_tag = None
        logger.info(f"consumer stopped: {self.consumer.name}")

    async def on_message(self, incoming: AbstractIncomingMessage) -> None:
        message = to_message(incoming)

        try:
            await self.consumer.consume(message)
        except InvalidMessageError as e:
            logger.error(
                "rejecting message without a valid event id",
                extra={"routing_key": message.routing_key, "error": str(e)},
            )
            await incoming.reject(requeue=False)
            return
        except Exception as e:
            logger.error(
                "message handling failed, requeueing",
                exc_info=True,
                extra={
                    "message_id": message.message_id,
                    "routing_key": message.routing_key,
                    "error": str(e),
                },
            )
            await incoming.nack(requeue=True)
            return

        await incoming.ack()
