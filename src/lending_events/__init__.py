"""Persisted domain event bus for the lending platform."""

from lending_events.core.enums import ExecutionStatus, ProcessingStatus
from lending_events.core.errors import (
    EventBusError,
    EventNotFoundError,
    PayloadDecodeError,
    SequenceConflictError,
    StorageError,
)
from lending_events.domain.events import DomainEvent, EventDraft, EventMetadata, EventTypes
from lending_events.domain.payloads import decode_payload, typed_handler
from lending_events.infrastructure.event_bus import (
    EventBus,
    ExecutionResult,
    HandlerRegistration,
)
from lending_events.infrastructure.factory import create_event_bus

__all__ = [
    "DomainEvent",
    "EventBus",
    "EventBusError",
    "EventDraft",
    "EventMetadata",
    "EventNotFoundError",
    "EventTypes",
    "ExecutionResult",
    "ExecutionStatus",
    "HandlerRegistration",
    "PayloadDecodeError",
    "ProcessingStatus",
    "SequenceConflictError",
    "StorageError",
    "create_event_bus",
    "decode_payload",
    "typed_handler",
]
