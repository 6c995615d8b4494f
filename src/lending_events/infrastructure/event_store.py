"""Append-only store of published domain events.

Design invariants
-----------------
1.  ``append()`` assigns the event id and ``occurred_at``; the caller
    supplies the sequence number.  A second append with the same
    ``(aggregate_type, aggregate_id, sequence_number)`` raises
    ``SequenceConflictError`` and stores nothing.
2.  ``history()`` returns events in ascending ``sequence_number`` order.
3.  The store is **append-only**: events are never deleted.  The only
    mutation is the ``processing_status`` transition
    (``pending → processed`` or ``pending → failed``).  ``clear()`` exists
    only for testing.
4.  Readers get copies.  A handler that mutates ``event.payload`` changes
    its own copy, never the stored record.

This module provides:

*  ``IEventStore``: the protocol.
*  ``InMemoryEventStore``: dict-backed implementation for tests and local
   development.

The SQLAlchemy implementation lives in
:mod:`lending_events.storage.postgres.repos`.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
from datetime import datetime
from typing import Protocol

from lending_events.core.clock import IClock, WallClock
from lending_events.core.enums import ProcessingStatus
from lending_events.core.errors import EventNotFoundError, SequenceConflictError
from lending_events.core.ids import new_id, partition_key
from lending_events.domain.events import DomainEvent, EventDraft

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class IEventStore(Protocol):
    """Durable event log (the ``domain_events`` table)."""

    async def append(self, draft: EventDraft, sequence_number: int) -> DomainEvent:
        """Persist *draft* as a ``pending`` event and return the stored row."""
        ...

    async def get(self, event_id: str) -> DomainEvent | None:
        """Return the stored event, or ``None``."""
        ...

    async def mark_processed(self, event_id: str, processed_at: datetime) -> None:
        ...

    async def mark_failed(self, event_id: str, error: str) -> None:
        ...

    async def history(
        self,
        aggregate_id: str,
        aggregate_type: str | None = None,
    ) -> list[DomainEvent]:
        """All events of an aggregate, ascending by sequence number.

        Without *aggregate_type* the match is on ``aggregate_id`` alone and
        can mix aggregates of different types that share an id.
        """
        ...

    async def max_sequence_numbers(self) -> dict[str, int]:
        """``{partition_key: highest sequence_number}`` over all events."""
        ...

    async def max_sequence_number(self, aggregate_type: str, aggregate_id: str) -> int:
        """Highest stored sequence number for one aggregate (0 if none)."""
        ...

    async def list_by_status(
        self,
        status: ProcessingStatus,
        limit: int = 100,
    ) -> list[DomainEvent]:
        """Events in *status*, oldest first."""
        ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

def _detached(event: DomainEvent) -> DomainEvent:
    """Copy of *event* whose payload and metadata a reader may mutate freely."""
    return dataclasses.replace(
        event,
        payload=copy.deepcopy(event.payload),
        metadata=copy.deepcopy(event.metadata),
    )



class InMemoryEventStore:
    """Dict-backed event store.  No persistence across restarts.

    Good for: unit tests, local development, single-process demos.
    """

    def __init__(self, clock: IClock | None = None) -> None:
        self._clock = clock or WallClock()
        self._events: dict[str, DomainEvent] = {}
        self._taken: set[tuple[str, str, int]] = set()

    async def append(self, draft: EventDraft, sequence_number: int) -> DomainEvent:
        slot = (draft.aggregate_type, draft.aggregate_id, sequence_number)
        if slot in self._taken:
            raise SequenceConflictError(*slot)
        event = DomainEvent(
            event_id=new_id(),
            event_type=draft.event_type,
            event_version=draft.event_version,
            aggregate_id=draft.aggregate_id,
            aggregate_type=draft.aggregate_type,
            payload=draft.payload_dict(),
            metadata=draft.metadata_dict(),
            sequence_number=sequence_number,
            causation_id=draft.causation_id,
            correlation_id=draft.correlation_id,
            occurred_at=self._clock.now(),
            processing_status=ProcessingStatus.PENDING,
        )
        self._taken.add(slot)
        self._events[event.event_id] = event
        return _detached(event)

    async def get(self, event_id: str) -> DomainEvent | None:
        event = self._events.get(event_id)
        return _detached(event) if event is not None else None

    async def mark_processed(self, event_id: str, processed_at: datetime) -> None:
        self._update(
            event_id,
            processing_status=ProcessingStatus.PROCESSED,
            processed_at=processed_at,
        )

    async def mark_failed(self, event_id: str, error: str) -> None:
        self._update(
            event_id,
            processing_status=ProcessingStatus.FAILED,
            processing_error=error,
        )

    async def history(
        self,
        aggregate_id: str,
        aggregate_type: str | None = None,
    ) -> list[DomainEvent]:
        matches = [
            e for e in self._events.values()
            if e.aggregate_id == aggregate_id
            and (aggregate_type is None or e.aggregate_type == aggregate_type)
        ]
        return [_detached(e) for e in sorted(matches, key=lambda e: e.sequence_number)]

    async def max_sequence_numbers(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for e in self._events.values():
            key = e.partition_key
            if e.sequence_number > out.get(key, 0):
                out[key] = e.sequence_number
        return out

    async def max_sequence_number(self, aggregate_type: str, aggregate_id: str) -> int:
        key = partition_key(aggregate_type, aggregate_id)
        return max(
            (e.sequence_number for e in self._events.values() if e.partition_key == key),
            default=0,
        )

    async def list_by_status(
        self,
        status: ProcessingStatus,
        limit: int = 100,
    ) -> list[DomainEvent]:
        matches = [e for e in self._events.values() if e.processing_status == status]
        matches.sort(key=lambda e: e.occurred_at)
        return [_detached(e) for e in matches[:limit]]

    def _update(self, event_id: str, **changes: object) -> None:
        current = self._events.get(event_id)
        if current is None:
            raise EventNotFoundError(event_id)
        self._events[event_id] = dataclasses.replace(current, **changes)  # type: ignore[arg-type]

    # -- Testing helpers ---------------------------------------------------

    def clear(self) -> None:
        """Remove all events.  Testing only."""
        self._events.clear()
        self._taken.clear()

    def __len__(self) -> int:
        return len(self._events)
