"""SQLAlchemy implementations of the event bus storage protocols.

Each store owns an ``async_sessionmaker`` and runs every operation in its
own short session (one statement or one statement pair per transaction).
No transaction spans a whole publish.

Conversion helpers translate between domain objects
(:mod:`lending_events.domain.events`,
:mod:`lending_events.infrastructure.handler_store`) and ORM records.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lending_events.core.enums import ExecutionStatus, ProcessingStatus
from lending_events.core.errors import EventNotFoundError, SequenceConflictError, StorageError
from lending_events.core.ids import ensure_utc, partition_key
from lending_events.domain.events import DomainEvent, EventDraft
from lending_events.infrastructure.handler_store import ExecutionLogEntry, HandlerRecord

from .connection import session_scope
from .models import (
    DomainEventRecord,
    EventHandlerRecord,
    ProcessingLogRecord,
    _utcnow,
)

logger = logging.getLogger(__name__)

SEQUENCE_CONSTRAINT = "uq_domain_events_aggregate_sequence"


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------

def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _optional_utc(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if value is not None else None


def _is_sequence_conflict(exc: IntegrityError) -> bool:
    """True if *exc* is the per-aggregate sequence number clash."""
    message = str(exc.orig)
    if SEQUENCE_CONSTRAINT in message:
        return True
    # SQLite reports the columns, not the constraint name.
    return "UNIQUE constraint failed" in message and "sequence_number" in message


def _draft_to_record(draft: EventDraft, sequence_number: int) -> DomainEventRecord:
    """Build an ORM :class:`DomainEventRecord` for a new ``pending`` event."""
    return DomainEventRecord(
        event_type=draft.event_type,
        event_version=draft.event_version,
        aggregate_id=draft.aggregate_id,
        aggregate_type=draft.aggregate_type,
        payload=draft.payload_dict(),
        metadata_json=draft.metadata_dict(),
        sequence_number=sequence_number,
        causation_id=draft.causation_id,
        correlation_id=draft.correlation_id,
        processing_status=ProcessingStatus.PENDING.value,
    )


def _record_to_event(record: DomainEventRecord) -> DomainEvent:
    """Convert an ORM :class:`DomainEventRecord` to a :class:`DomainEvent`."""
    return DomainEvent(
        event_id=str(record.id),
        event_type=record.event_type,
        event_version=record.event_version,
        aggregate_id=record.aggregate_id,
        aggregate_type=record.aggregate_type,
        payload=record.payload or {},
        metadata=record.metadata_json,
        sequence_number=record.sequence_number,
        causation_id=record.causation_id,
        correlation_id=record.correlation_id,
        occurred_at=ensure_utc(record.occurred_at),
        processing_status=ProcessingStatus(record.processing_status),
        processed_at=_optional_utc(record.processed_at),
        processing_error=record.processing_error,
    )


def _record_to_handler(record: EventHandlerRecord) -> HandlerRecord:
    return HandlerRecord(
        handler_id=str(record.id),
        handler_name=record.handler_name,
        event_type=record.event_type,
        priority=record.priority,
        is_enabled=bool(record.is_enabled),
        success_count=record.success_count,
        failure_count=record.failure_count,
        last_executed_at=_optional_utc(record.last_executed_at),
        created_at=_optional_utc(record.created_at),
        updated_at=_optional_utc(record.updated_at),
    )


def _record_to_log_entry(record: ProcessingLogRecord) -> ExecutionLogEntry:
    return ExecutionLogEntry(
        log_id=str(record.id),
        event_id=str(record.event_id),
        handler_id=str(record.handler_id),
        status=ExecutionStatus(record.status),
        execution_time_ms=record.execution_time_ms,
        error=record.error,
        executed_at=_optional_utc(record.executed_at),
    )


# ---------------------------------------------------------------------------
# SqlAlchemyEventStore
# ---------------------------------------------------------------------------

class SqlAlchemyEventStore:
    """``domain_events`` table access."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, draft: EventDraft, sequence_number: int) -> DomainEvent:
        """Insert a ``pending`` event.

        Raises:
            SequenceConflictError: If the aggregate already has an event
                with *sequence_number* (unique constraint violation).
        """
        record = _draft_to_record(draft, sequence_number)
        try:
            async with session_scope(self._session_factory) as session:
                session.add(record)
                await session.flush()
        except IntegrityError as exc:
            if not _is_sequence_conflict(exc):
                raise StorageError(f"Could not insert {draft.event_type}: {exc.orig}") from exc
            raise SequenceConflictError(
                draft.aggregate_type, draft.aggregate_id, sequence_number,
            ) from exc
        logger.debug(
            "Inserted event %s (%s seq=%d)", record.id, draft.event_type, sequence_number,
        )
        return _record_to_event(record)

    async def get(self, event_id: str) -> DomainEvent | None:
        """Retrieve an event by id.

        Returns:
            :class:`DomainEvent` if found, otherwise ``None`` (also for
            ids that are not valid UUIDs).
        """
        pk = _parse_uuid(event_id)
        if pk is None:
            return None
        async with session_scope(self._session_factory) as session:
            record = await session.get(DomainEventRecord, pk)
            return _record_to_event(record) if record is not None else None

    async def mark_processed(self, event_id: str, processed_at: datetime) -> None:
        await self._update_status(
            event_id,
            processing_status=ProcessingStatus.PROCESSED.value,
            processed_at=processed_at,
        )

    async def mark_failed(self, event_id: str, error: str) -> None:
        await self._update_status(
            event_id,
            processing_status=ProcessingStatus.FAILED.value,
            processing_error=error,
        )

    async def _update_status(self, event_id: str, **values: object) -> None:
        pk = _parse_uuid(event_id)
        if pk is None:
            raise EventNotFoundError(event_id)
        stmt = (
            update(DomainEventRecord)
            .where(DomainEventRecord.id == pk)
            .values(**values)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
        if result.rowcount == 0:
            raise EventNotFoundError(event_id)

    async def history(
        self,
        aggregate_id: str,
        aggregate_type: str | None = None,
    ) -> list[DomainEvent]:
        stmt = select(DomainEventRecord).where(
            DomainEventRecord.aggregate_id == aggregate_id,
        )
        if aggregate_type is not None:
            stmt = stmt.where(DomainEventRecord.aggregate_type == aggregate_type)
        stmt = stmt.order_by(
            DomainEventRecord.sequence_number.asc(),
            DomainEventRecord.occurred_at.asc(),
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return [_record_to_event(r) for r in result.scalars().all()]

    async def max_sequence_numbers(self) -> dict[str, int]:
        stmt = select(
            DomainEventRecord.aggregate_type,
            DomainEventRecord.aggregate_id,
            func.max(DomainEventRecord.sequence_number),
        ).group_by(
            DomainEventRecord.aggregate_type,
            DomainEventRecord.aggregate_id,
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return {
                partition_key(agg_type, agg_id): int(max_seq)
                for agg_type, agg_id, max_seq in result.all()
            }

    async def max_sequence_number(self, aggregate_type: str, aggregate_id: str) -> int:
        stmt = select(func.max(DomainEventRecord.sequence_number)).where(
            DomainEventRecord.aggregate_type == aggregate_type,
            DomainEventRecord.aggregate_id == aggregate_id,
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            value = result.scalar_one_or_none()
        return int(value) if value is not None else 0

    async def list_by_status(
        self,
        status: ProcessingStatus,
        limit: int = 100,
    ) -> list[DomainEvent]:
        stmt = (
            select(DomainEventRecord)
            .where(DomainEventRecord.processing_status == status.value)
            .order_by(DomainEventRecord.occurred_at.asc())
            .limit(limit)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return [_record_to_event(r) for r in result.scalars().all()]


# ---------------------------------------------------------------------------
# SqlAlchemyHandlerStore
# ---------------------------------------------------------------------------

def _upsert_insert(dialect_name: str):
    """Dialect ``insert`` construct supporting ON CONFLICT, or ``None``."""
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        return insert
    if dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        return insert
    return None


class SqlAlchemyHandlerStore:
    """``event_handlers`` table access."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def upsert(
        self,
        handler_name: str,
        event_type: str,
        priority: int,
        is_enabled: bool,
    ) -> HandlerRecord:
        """Insert or update by ``handler_name`` (ON CONFLICT DO UPDATE)."""
        now = _utcnow()
        async with session_scope(self._session_factory) as session:
            insert = _upsert_insert(session.bind.dialect.name)
            if insert is not None:
                stmt = (
                    insert(EventHandlerRecord)
                    .values(
                        handler_name=handler_name,
                        event_type=event_type,
                        priority=priority,
                        is_enabled=is_enabled,
                    )
                    .on_conflict_do_update(
                        index_elements=[EventHandlerRecord.handler_name],
                        set_={
                            "event_type": event_type,
                            "priority": priority,
                            "is_enabled": is_enabled,
                            "updated_at": now,
                        },
                    )
                )
                await session.execute(stmt)
            else:
                existing = await self._select(session, handler_name)
                if existing is None:
                    session.add(EventHandlerRecord(
                        handler_name=handler_name,
                        event_type=event_type,
                        priority=priority,
                        is_enabled=is_enabled,
                    ))
                else:
                    existing.event_type = event_type
                    existing.priority = priority
                    existing.is_enabled = is_enabled
                    existing.updated_at = now
                await session.flush()

            record = await self._select(session, handler_name, populate_existing=True)
            if record is None:
                raise StorageError(f"Handler {handler_name} vanished during upsert")
            logger.debug(
                "Upserted handler %s -> %s (priority=%d, enabled=%s)",
                handler_name, event_type, priority, is_enabled,
            )
            return _record_to_handler(record)

    async def disable(self, handler_name: str) -> bool:
        return await self.set_enabled(handler_name, False)

    async def set_enabled(self, handler_name: str, enabled: bool) -> bool:
        stmt = (
            update(EventHandlerRecord)
            .where(EventHandlerRecord.handler_name == handler_name)
            .values(is_enabled=enabled, updated_at=_utcnow())
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def get(self, handler_name: str) -> HandlerRecord | None:
        async with session_scope(self._session_factory) as session:
            record = await self._select(session, handler_name)
            return _record_to_handler(record) if record is not None else None

    async def record_execution(
        self,
        handler_name: str,
        success: bool,
        executed_at: datetime,
    ) -> HandlerRecord | None:
        """Increment a counter in SQL (``count = count + 1``), no read-modify-write."""
        counter = (
            {"success_count": EventHandlerRecord.success_count + 1}
            if success
            else {"failure_count": EventHandlerRecord.failure_count + 1}
        )
        stmt = (
            update(EventHandlerRecord)
            .where(EventHandlerRecord.handler_name == handler_name)
            .values(last_executed_at=executed_at, updated_at=executed_at, **counter)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            if result.rowcount == 0:
                return None
            record = await self._select(session, handler_name, populate_existing=True)
            return _record_to_handler(record) if record is not None else None

    async def list_all(self) -> list[HandlerRecord]:
        stmt = select(EventHandlerRecord).order_by(EventHandlerRecord.handler_name)
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return [_record_to_handler(r) for r in result.scalars().all()]

    @staticmethod
    async def _select(
        session: AsyncSession,
        handler_name: str,
        *,
        populate_existing: bool = False,
    ) -> EventHandlerRecord | None:
        stmt = select(EventHandlerRecord).where(
            EventHandlerRecord.handler_name == handler_name,
        )
        if populate_existing:
            stmt = stmt.execution_options(populate_existing=True)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# SqlAlchemyProcessingLog
# ---------------------------------------------------------------------------

class SqlAlchemyProcessingLog:
    """``event_processing_log`` table access.  Insert and read only."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(
        self,
        event_id: str,
        handler_id: str,
        status: ExecutionStatus,
        execution_time_ms: int | None = None,
        error: str | None = None,
    ) -> ExecutionLogEntry:
        record = ProcessingLogRecord(
            event_id=uuid.UUID(event_id),
            handler_id=uuid.UUID(handler_id),
            status=status.value,
            execution_time_ms=execution_time_ms,
            error=error,
        )
        async with session_scope(self._session_factory) as session:
            session.add(record)
            await session.flush()
        return _record_to_log_entry(record)

    async def for_event(self, event_id: str) -> list[ExecutionLogEntry]:
        pk = _parse_uuid(event_id)
        if pk is None:
            return []
        stmt = (
            select(ProcessingLogRecord)
            .where(ProcessingLogRecord.event_id == pk)
            .order_by(ProcessingLogRecord.executed_at.asc())
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return [_record_to_log_entry(r) for r in result.scalars().all()]
