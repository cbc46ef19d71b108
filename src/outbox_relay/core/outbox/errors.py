"""Outbox exceptions."""


class OutboxError(Exception):
    """Base class for outbox failures."""


class EventNotFoundError(OutboxError):
    """The outbox row does not exist (wrong id or already cleaned up)."""

    def __init__(self, event_id=None):
        self.event_id = event_id
        message = "outbox event not found"
        if event_id is not None:
            message = f"outbox event {event_id} not found"
        super().__init__(message)


class InvalidStatusError(OutboxError):
    """Status is not one of pending, published, failed."""


class InvalidPayloadError(OutboxError):
    """Payload is empty or cannot be serialized."""


class MaxRetriesReachedError(OutboxError):
    """increment_retry() was called on an event that has no retries left."""


class PublishError(OutboxError):
    """The broker rejected or did not confirm a publish."""
