"""
Outbox Relay

Transactional outbox with reliable at-least-once delivery to RabbitMQ,
consumer-side idempotency and a recurring job scheduler.
"""

__version__ = "0.1.0"
