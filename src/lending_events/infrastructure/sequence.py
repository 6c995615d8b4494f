"""Per-aggregate sequence number allocation.

An allocator answers "what is the next sequence number for this
aggregate?" and is told afterwards which number was actually stored.
Splitting the two means a failed insert never burns a number, so a
partition stays gap-free.

The bus calls ``next()`` and ``confirm()`` while holding the aggregate's
lock, so implementations need no locking of their own.

*  ``InMemorySequenceAllocator``: process-local counters seeded from the
   store at startup.  Fast; correct only while a single process publishes
   for a given aggregate.
*  ``StoreSequenceAllocator``: reads the current maximum from the store
   for every allocation.  Together with the store's unique constraint on
   ``(aggregate_type, aggregate_id, sequence_number)`` and the bus's retry
   on conflict, this is correct across processes.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Protocol, runtime_checkable

from lending_events.core.ids import partition_key
from lending_events.infrastructure.event_store import IEventStore

logger = logging.getLogger(__name__)


@runtime_checkable
class SequenceAllocator(Protocol):
    async def next(self, aggregate_type: str, aggregate_id: str) -> int:
        """Candidate sequence number for the next event of the aggregate."""
        ...

    def confirm(self, aggregate_type: str, aggregate_id: str, sequence_number: int) -> None:
        """Record that *sequence_number* is now taken."""
        ...

    def seed(self, counters: Mapping[str, int]) -> None:
        """Replace all counters with ``{partition_key: last_sequence}``."""
        ...


class InMemorySequenceAllocator:
    def __init__(self) -> None:
        self._counters: dict[str, int] = {}

    async def next(self, aggregate_type: str, aggregate_id: str) -> int:
        return self._counters.get(partition_key(aggregate_type, aggregate_id), 0) + 1

    def confirm(self, aggregate_type: str, aggregate_id: str, sequence_number: int) -> None:
        key = partition_key(aggregate_type, aggregate_id)
        if sequence_number > self._counters.get(key, 0):
            self._counters[key] = sequence_number

    def seed(self, counters: Mapping[str, int]) -> None:
        self._counters = dict(counters)

    def current(self, aggregate_type: str, aggregate_id: str) -> int:
        """Last confirmed number (0 if unseen)."""
        return self._counters.get(partition_key(aggregate_type, aggregate_id), 0)

    def __len__(self) -> int:
        return len(self._counters)


class StoreSequenceAllocator:
    """Allocates from the store's current maximum; keeps no state."""

    def __init__(self, event_store: IEventStore) -> None:
        self._event_store = event_store

    async def next(self, aggregate_type: str, aggregate_id: str) -> int:
        return await self._event_store.max_sequence_number(aggregate_type, aggregate_id) + 1

    def confirm(self, aggregate_type: str, aggregate_id: str, sequence_number: int) -> None:
        pass

    def seed(self, counters: Mapping[str, int]) -> None:
        logger.debug(
            "StoreSequenceAllocator ignores seeding (%d partitions)", len(counters),
        )
