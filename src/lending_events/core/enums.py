"""Enumerations shared across the event bus."""

from __future__ import annotations

from enum import Enum


class ProcessingStatus(str, Enum):
    """Lifecycle of a persisted domain event."""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class ExecutionStatus(str, Enum):
    """Outcome of one handler execution against one event."""

    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class StorageBackend(str, Enum):
    MEMORY = "memory"
    POSTGRES = "postgres"


class SequenceAllocatorKind(str, Enum):
    MEMORY = "memory"
    STORE = "store"
