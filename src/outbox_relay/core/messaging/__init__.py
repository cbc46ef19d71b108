"""
Message broker integration.

Usage:
    from outbox_relay.core.messaging import RabbitMQClient

    client = RabbitMQClient(url)
    await client.connect()
    await client.declare_exchange("financial.events")

    # queue consumption: outbox_relay.core.messaging.consumer.QueueConsumer
"""

from .message import Handler, Message, MessagePublisher
from .rabbitmq import MessagingError, RabbitMQClient

__all__ = [
    "Handler",
    "Message",
    "MessagePublisher",
    "MessagingError",
    "RabbitMQClient",
]
