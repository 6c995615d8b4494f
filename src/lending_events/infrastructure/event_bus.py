"""Persisted publish/subscribe bus for lending domain events.

Design goals
------------
1.  **Durable first**: ``publish()`` stores the event (status
    ``pending``) before any handler runs, then marks it ``processed``.
    A store error propagates to the publisher; there is no event without
    a successful insert.
2.  **Per-aggregate ordering**: each event gets the next sequence
    number of its ``aggregate_type:aggregate_id`` partition.  Allocation
    and insert run under a per-partition ``asyncio.Lock``; the lock is
    released before dispatch so handlers may publish to the same
    aggregate.
3.  **Priority dispatch**: handlers for an event type run one at a time,
    ascending ``priority``, ties in registration order.
4.  **Handler isolation**: a handler exception is caught, logged to the
    execution log and counted against the handler.  It never reaches the
    publisher and never stops sibling handlers.
5.  **Replay**: ``replay()`` re-dispatches an aggregate's stored history
    through the same path without re-persisting anything.  Handlers must
    be idempotent if replay is used on them.

Handler callables are in-process only.  Their registration metadata is
mirrored to the handler store for statistics and administration and does
not bring callables back after a restart; bootstrap code subscribes them
again on every start.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

from lending_events.core.clock import IClock, WallClock
from lending_events.core.enums import ExecutionStatus, ProcessingStatus
from lending_events.core.errors import EventNotFoundError, SequenceConflictError
from lending_events.domain.events import DomainEvent, EventDraft
from lending_events.infrastructure.event_store import IEventStore
from lending_events.infrastructure.handler_store import (
    ExecutionLogEntry,
    HandlerRecord,
    IHandlerStore,
    IProcessingLog,
)
from lending_events.infrastructure.sequence import (
    InMemorySequenceAllocator,
    SequenceAllocator,
)
from lending_events.observability import metrics
from lending_events.observability.logger import trace_context

logger = logging.getLogger(__name__)

# Type alias for async event handlers.
EventHandler = Callable[[DomainEvent], Awaitable[None]]

DEFAULT_PRIORITY = 100


@dataclass
class HandlerRegistration:
    """A named subscription of one handler to one event type.

    A handler that reacts to several event types registers once per type
    under the same ``handler_name``.
    """

    handler_name: str
    event_type: str
    handler: EventHandler
    priority: int = DEFAULT_PRIORITY
    is_enabled: bool = True


@dataclass(frozen=True)
class ExecutionResult:
    event_id: str
    handler_name: str
    status: ExecutionStatus
    execution_time_ms: int | None = None
    error: str | None = None


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class EventBus:
    """Domain event bus backed by an event store and a handler registry.

    Parameters
    ----------
    event_store
        Durable event log.
    handler_store
        Durable mirror of registrations and their statistics.
    processing_log
        Per (event, handler) execution records.
    sequence_allocator
        Defaults to an ``InMemorySequenceAllocator``; call
        ``initialize_sequence_counters()`` (or ``start()``) before the
        first publish in a fresh process.
    sequence_conflict_retries
        How many times an insert rejected for a taken sequence number is
        retried after re-reading the store maximum.
    log_skipped_handlers
        When ``True``, a disabled registration gets a ``skipped`` row in
        the execution log instead of being filtered silently.
    """

    def __init__(
        self,
        *,
        event_store: IEventStore,
        handler_store: IHandlerStore,
        processing_log: IProcessingLog,
        sequence_allocator: SequenceAllocator | None = None,
        clock: IClock | None = None,
        sequence_conflict_retries: int = 3,
        log_skipped_handlers: bool = False,
    ) -> None:
        self._event_store = event_store
        self._handler_store = handler_store
        self._processing_log = processing_log
        self._allocator = sequence_allocator or InMemorySequenceAllocator()
        self._clock = clock or WallClock()
        self._sequence_conflict_retries = sequence_conflict_retries
        self._log_skipped_handlers = log_skipped_handlers

        # event_type → handler_name → registration (dict order = registration order)
        self._handlers: dict[str, dict[str, HandlerRegistration]] = {}
        self._partition_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}  # holders + waiters per lock
        self._running = False

    # -- Lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Seed sequence counters from the store.  Idempotent."""
        if self._running:
            return
        await self.initialize_sequence_counters()
        self._running = True

    async def stop(self) -> None:
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # -- Publish -----------------------------------------------------------

    async def publish(self, draft: EventDraft) -> DomainEvent:
        """Persist *draft*, dispatch it to its handlers, mark it processed.

        Returns the stored event in its final state.

        Raises
        ------
        StorageError
            (or the driver's own exception) when the store cannot insert
            or update.  If the insert succeeded, the event is marked
            ``failed`` before the error is re-raised.
        SequenceConflictError
            When every retry found its sequence number already taken.

        Log lines written while the event is handled carry its
        ``correlation_id`` as trace id.
        """
        with trace_context(draft.correlation_id):
            return await self._publish(draft)

    async def _publish(self, draft: EventDraft) -> DomainEvent:
        async with self._partition_lock(draft.partition_key):
            event = await self._append_next(draft)
        metrics.record_event_published(event.event_type)
        logger.debug(
            "Persisted %s for %s seq=%d id=%s",
            event.event_type,
            event.partition_key,
            event.sequence_number,
            event.event_id,
        )

        try:
            await self.execute_handlers(event.event_id, event.event_type)
            processed_at = self._clock.now()
            await self._event_store.mark_processed(event.event_id, processed_at)
        except Exception as exc:
            metrics.record_event_failed(event.event_type)
            logger.exception(
                "Dispatch aborted for %s id=%s", event.event_type, event.event_id,
            )
            try:
                await self._event_store.mark_failed(event.event_id, str(exc))
            except Exception:
                logger.warning(
                    "Could not mark event %s failed", event.event_id, exc_info=True,
                )
            raise

        return dataclasses.replace(
            event,
            processing_status=ProcessingStatus.PROCESSED,
            processed_at=processed_at,
        )

    async def _append_next(self, draft: EventDraft) -> DomainEvent:
        """Allocate the next sequence number and insert; retry on conflict."""
        attempts = self._sequence_conflict_retries + 1
        attempt = 0
        while True:
            attempt += 1
            seq = await self._allocator.next(draft.aggregate_type, draft.aggregate_id)
            try:
                event = await self._event_store.append(draft, seq)
            except SequenceConflictError:
                metrics.record_sequence_conflict(draft.aggregate_type)
                stored_max = await self._event_store.max_sequence_number(
                    draft.aggregate_type, draft.aggregate_id,
                )
                logger.warning(
                    "Sequence %d taken for %s (store max=%d), attempt %d/%d",
                    seq, draft.partition_key, stored_max, attempt, attempts,
                )
                self._allocator.confirm(draft.aggregate_type, draft.aggregate_id, stored_max)
                if attempt >= attempts:
                    raise
                continue
            self._allocator.confirm(draft.aggregate_type, draft.aggregate_id, seq)
            return event

    @contextlib.asynccontextmanager
    async def _partition_lock(self, key: str) -> AsyncIterator[None]:
        """Hold the lock of one aggregate; drop it once nobody else wants it."""
        lock = self._partition_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._partition_locks[key] = lock
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[key] - 1
            if remaining:
                self._lock_users[key] = remaining
            else:
                del self._lock_users[key]
                del self._partition_locks[key]

    # -- Subscriptions -----------------------------------------------------

    async def subscribe(self, registration: HandlerRegistration) -> None:
        """Register *registration*, replacing any same-named one for its type.

        The registry row is upserted by ``handler_name``; a previously
        unsubscribed handler is re-enabled.  A failure to persist is logged
        and does not undo the in-memory registration.
        """
        by_name = self._handlers.setdefault(registration.event_type, {})
        by_name[registration.handler_name] = registration
        metrics.update_handlers_registered(self._registration_count())

        try:
            await self._handler_store.upsert(
                registration.handler_name,
                registration.event_type,
                registration.priority,
                registration.is_enabled,
            )
        except Exception:
            logger.exception(
                "Failed to persist handler registration %s",
                registration.handler_name,
            )

    async def unsubscribe(self, handler_name: str) -> None:
        """Remove *handler_name* from every event type; keep its row, disabled."""
        for event_type in list(self._handlers):
            by_name = self._handlers[event_type]
            by_name.pop(handler_name, None)
            if not by_name:
                del self._handlers[event_type]
        metrics.update_handlers_registered(self._registration_count())

        try:
            await self._handler_store.disable(handler_name)
        except Exception:
            logger.exception("Failed to unsubscribe handler %s", handler_name)

    async def set_handler_enabled(self, handler_name: str, enabled: bool) -> None:
        """Toggle every registration of *handler_name* without removing it."""
        for by_name in self._handlers.values():
            reg = by_name.get(handler_name)
            if reg is not None:
                by_name[handler_name] = dataclasses.replace(reg, is_enabled=enabled)

        if not await self._handler_store.set_enabled(handler_name, enabled):
            logger.warning("Handler %s not found in registry", handler_name)

    def get_registrations(self, event_type: str | None = None) -> list[HandlerRegistration]:
        """In-memory registrations, optionally for one event type."""
        if event_type is not None:
            return list(self._handlers.get(event_type, {}).values())
        return [reg for by_name in self._handlers.values() for reg in by_name.values()]

    def _registration_count(self) -> int:
        return sum(len(by_name) for by_name in self._handlers.values())

    # -- Dispatch ----------------------------------------------------------

    async def execute_handlers(self, event_id: str, event_type: str) -> list[ExecutionResult]:
        """Run every enabled handler for *event_type*, one after another."""
        by_name = self._handlers.get(event_type)
        if not by_name:
            return []

        # sorted() is stable, so equal priorities keep registration order.
        ordered = sorted(by_name.values(), key=lambda r: r.priority)

        results: list[ExecutionResult] = []
        for registration in ordered:
            if not registration.is_enabled:
                if self._log_skipped_handlers:
                    await self._log_execution(
                        event_id, registration.handler_name, ExecutionStatus.SKIPPED,
                    )
                    results.append(ExecutionResult(
                        event_id=event_id,
                        handler_name=registration.handler_name,
                        status=ExecutionStatus.SKIPPED,
                    ))
                continue
            results.append(await self.execute_handler(event_id, registration))
        return results

    async def execute_handler(
        self,
        event_id: str,
        registration: HandlerRegistration,
    ) -> ExecutionResult:
        """Run one handler against the stored copy of *event_id*.

        Handler exceptions are caught here and recorded; storage errors
        while writing the log or statistics propagate.
        """
        name = registration.handler_name
        start = time.perf_counter()
        try:
            event = await self._event_store.get(event_id)
            if event is None:
                raise EventNotFoundError(event_id)
            await registration.handler(event)
        except Exception as exc:
            elapsed = _elapsed_ms(start)
            error = str(exc) or type(exc).__name__
            logger.error(
                "Handler %s failed for event %s: %s", name, event_id, error,
                exc_info=True,
            )
            await self._log_execution(
                event_id, name, ExecutionStatus.FAILURE, elapsed, error,
            )
            await self._handler_store.record_execution(name, False, self._clock.now())
            metrics.record_handler_execution(name, ExecutionStatus.FAILURE.value, elapsed / 1000)
            return ExecutionResult(
                event_id=event_id,
                handler_name=name,
                status=ExecutionStatus.FAILURE,
                execution_time_ms=elapsed,
                error=error,
            )

        elapsed = _elapsed_ms(start)
        await self._log_execution(event_id, name, ExecutionStatus.SUCCESS, elapsed)
        await self._handler_store.record_execution(name, True, self._clock.now())
        metrics.record_handler_execution(name, ExecutionStatus.SUCCESS.value, elapsed / 1000)
        return ExecutionResult(
            event_id=event_id,
            handler_name=name,
            status=ExecutionStatus.SUCCESS,
            execution_time_ms=elapsed,
        )

    async def _log_execution(
        self,
        event_id: str,
        handler_name: str,
        status: ExecutionStatus,
        execution_time_ms: int | None = None,
        error: str | None = None,
    ) -> ExecutionLogEntry | None:
        record = await self._handler_store.get(handler_name)
        if record is None:
            logger.warning(
                "Handler %s not found in registry; execution log skipped",
                handler_name,
            )
            return None
        return await self._processing_log.append(
            event_id, record.handler_id, status, execution_time_ms, error,
        )

    # -- History & replay --------------------------------------------------

    async def get_event_history(
        self,
        aggregate_id: str,
        aggregate_type: str | None = None,
    ) -> list[DomainEvent]:
        """Stored events of an aggregate, ascending by sequence number.

        Pass *aggregate_type* whenever ids can repeat across aggregate
        types; without it the match is on ``aggregate_id`` alone.
        """
        return await self._event_store.history(aggregate_id, aggregate_type)

    async def replay(
        self,
        aggregate_id: str,
        aggregate_type: str | None = None,
    ) -> list[ExecutionResult]:
        """Re-dispatch an aggregate's history to the current handlers."""
        events = await self.get_event_history(aggregate_id, aggregate_type)
        logger.info(
            "Replaying %d events for %s:%s",
            len(events), aggregate_type or "*", aggregate_id,
        )
        results: list[ExecutionResult] = []
        for event in events:
            with trace_context(event.correlation_id):
                results.extend(await self.execute_handlers(event.event_id, event.event_type))
            metrics.record_event_replayed(event.aggregate_type)
        return results

    async def initialize_sequence_counters(self) -> int:
        """Seed the allocator with each aggregate's highest stored number.

        Must complete before the first publish in a fresh process.
        Returns the number of aggregates seen.
        """
        counters = await self._event_store.max_sequence_numbers()
        self._allocator.seed(counters)
        metrics.update_sequence_partitions(len(counters))
        logger.info("Sequence counters initialised for %d aggregates", len(counters))
        return len(counters)

    # -- Read APIs ---------------------------------------------------------

    async def get_handler_stats(self, handler_name: str | None = None) -> list[HandlerRecord]:
        if handler_name is not None:
            record = await self._handler_store.get(handler_name)
            return [record] if record is not None else []
        return await self._handler_store.list_all()

    async def get_processing_log(self, event_id: str) -> list[ExecutionLogEntry]:
        return await self._processing_log.for_event(event_id)

    async def list_events_by_status(
        self,
        status: ProcessingStatus,
        limit: int = 100,
    ) -> list[DomainEvent]:
        return await self._event_store.list_by_status(status, limit)

    # -- Accessors ---------------------------------------------------------

    @property
    def event_store(self) -> IEventStore:
        return self._event_store

    @property
    def handler_store(self) -> IHandlerStore:
        return self._handler_store

    @property
    def processing_log(self) -> IProcessingLog:
        return self._processing_log

    @property
    def sequence_allocator(self) -> SequenceAllocator:
        return self._allocator
