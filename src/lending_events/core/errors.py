"""Custom exception hierarchy for the event bus."""


class EventBusError(Exception):
    """Base exception for all event bus errors."""


# --- Configuration ---
class ConfigError(EventBusError):
    """Invalid or missing configuration."""


# --- Storage ---
class StorageError(EventBusError):
    """Backing store read/write failure."""


class EventNotFoundError(StorageError):
    """No persisted event with the requested id."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event {event_id} not found")


class SequenceConflictError(StorageError):
    """The sequence number is already taken for this aggregate."""

    def __init__(self, aggregate_type: str, aggregate_id: str, sequence_number: int):
        self.aggregate_type = aggregate_type
        self.aggregate_id = aggregate_id
        self.sequence_number = sequence_number
        super().__init__(
            f"Sequence {sequence_number} already used for "
            f"{aggregate_type}:{aggregate_id}"
        )


# --- Payloads ---
class PayloadError(EventBusError):
    """Event payload could not be interpreted."""


class UnknownEventTypeError(PayloadError):
    """No payload model is registered for the event type."""


class PayloadDecodeError(PayloadError):
    """Payload failed validation against its registered model."""
