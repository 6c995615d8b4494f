"""Durable mirror of the handler registry, plus the execution log.

Handler callables live only in process memory.  What is persisted here is
the registration metadata (name, event type, priority, enabled flag) and
the rolling statistics, so that operators can see which handlers exist and
how they behave across restarts.  Bootstrap code re-subscribes callables on
every start.

This module provides:

*  ``HandlerRecord`` / ``ExecutionLogEntry``: row shapes.
*  ``IHandlerStore`` / ``IProcessingLog``: protocols for the
   ``event_handlers`` and ``event_processing_log`` tables.
*  ``InMemoryHandlerStore`` / ``InMemoryProcessingLog``: list/dict
   backed implementations for tests.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from lending_events.core.clock import IClock, WallClock
from lending_events.core.enums import ExecutionStatus
from lending_events.core.ids import new_id


@dataclass(frozen=True)
class HandlerRecord:
    """Persisted registration metadata and statistics for one handler name."""

    handler_id: str
    handler_name: str
    event_type: str
    priority: int = 100
    is_enabled: bool = True
    success_count: int = 0
    failure_count: int = 0
    last_executed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ExecutionLogEntry:
    """One handler execution attempt against one event.  Never mutated."""

    log_id: str
    event_id: str
    handler_id: str
    status: ExecutionStatus
    execution_time_ms: int | None = None
    error: str | None = None
    executed_at: datetime | None = None


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

class IHandlerStore(Protocol):
    """The ``event_handlers`` table, keyed by ``handler_name``."""

    async def upsert(
        self,
        handler_name: str,
        event_type: str,
        priority: int,
        is_enabled: bool,
    ) -> HandlerRecord:
        """Insert, or update type/priority/enabled of the existing row."""
        ...

    async def disable(self, handler_name: str) -> bool:
        """Soft-delete.  Returns ``False`` if no such row."""
        ...

    async def set_enabled(self, handler_name: str, enabled: bool) -> bool:
        ...

    async def get(self, handler_name: str) -> HandlerRecord | None:
        ...

    async def record_execution(
        self,
        handler_name: str,
        success: bool,
        executed_at: datetime,
    ) -> HandlerRecord | None:
        """Increment one counter and stamp ``last_executed_at``.

        Returns ``None`` (and changes nothing) if the row is missing.
        """
        ...

    async def list_all(self) -> list[HandlerRecord]:
        ...


class IProcessingLog(Protocol):
    """The ``event_processing_log`` table.  Append-only."""

    async def append(
        self,
        event_id: str,
        handler_id: str,
        status: ExecutionStatus,
        execution_time_ms: int | None = None,
        error: str | None = None,
    ) -> ExecutionLogEntry:
        ...

    async def for_event(self, event_id: str) -> list[ExecutionLogEntry]:
        """Entries for *event_id* in execution order."""
        ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

class InMemoryHandlerStore:
    """Dict-backed handler registry table."""

    def __init__(self, clock: IClock | None = None) -> None:
        self._clock = clock or WallClock()
        self._rows: dict[str, HandlerRecord] = {}

    async def upsert(
        self,
        handler_name: str,
        event_type: str,
        priority: int,
        is_enabled: bool,
    ) -> HandlerRecord:
        now = self._clock.now()
        existing = self._rows.get(handler_name)
        if existing is None:
            record = HandlerRecord(
                handler_id=new_id(),
                handler_name=handler_name,
                event_type=event_type,
                priority=priority,
                is_enabled=is_enabled,
                created_at=now,
                updated_at=now,
            )
        else:
            record = dataclasses.replace(
                existing,
                event_type=event_type,
                priority=priority,
                is_enabled=is_enabled,
                updated_at=now,
            )
        self._rows[handler_name] = record
        return record

    async def disable(self, handler_name: str) -> bool:
        return await self.set_enabled(handler_name, False)

    async def set_enabled(self, handler_name: str, enabled: bool) -> bool:
        existing = self._rows.get(handler_name)
        if existing is None:
            return False
        self._rows[handler_name] = dataclasses.replace(
            existing, is_enabled=enabled, updated_at=self._clock.now(),
        )
        return True

    async def get(self, handler_name: str) -> HandlerRecord | None:
        return self._rows.get(handler_name)

    async def record_execution(
        self,
        handler_name: str,
        success: bool,
        executed_at: datetime,
    ) -> HandlerRecord | None:
        existing = self._rows.get(handler_name)
        if existing is None:
            return None
        record = dataclasses.replace(
            existing,
            success_count=existing.success_count + (1 if success else 0),
            failure_count=existing.failure_count + (0 if success else 1),
            last_executed_at=executed_at,
            updated_at=executed_at,
        )
        self._rows[handler_name] = record
        return record

    async def list_all(self) -> list[HandlerRecord]:
        return sorted(self._rows.values(), key=lambda r: r.handler_name)


class InMemoryProcessingLog:
    """List-backed execution log."""

    def __init__(self, clock: IClock | None = None) -> None:
        self._clock = clock or WallClock()
        self._entries: list[ExecutionLogEntry] = []

    async def append(
        self,
        event_id: str,
        handler_id: str,
        status: ExecutionStatus,
        execution_time_ms: int | None = None,
        error: str | None = None,
    ) -> ExecutionLogEntry:
        entry = ExecutionLogEntry(
            log_id=new_id(),
            event_id=event_id,
            handler_id=handler_id,
            status=status,
            execution_time_ms=execution_time_ms,
            error=error,
            executed_at=self._clock.now(),
        )
        self._entries.append(entry)
        return entry

    async def for_event(self, event_id: str) -> list[ExecutionLogEntry]:
        return [e for e in self._entries if e.event_id == event_id]

    def __len__(self) -> int:
        return len(self._entries)
