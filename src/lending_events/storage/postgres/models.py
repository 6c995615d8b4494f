"""SQLAlchemy ORM models for the event bus tables.

All tables use UUID primary keys, UTC timestamps, and indexes for the
common query patterns (by aggregate, by event type, by time, by status).
JSON columns are JSONB on PostgreSQL and plain JSON elsewhere.

Relationships:
    DomainEventRecord 1--* ProcessingLogRecord  (event_id foreign key)
    EventHandlerRecord 1--* ProcessingLogRecord (handler_id foreign key)
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_uuid() -> uuid.UUID:
    return uuid.uuid4()


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# DomainEventRecord
# ---------------------------------------------------------------------------

class DomainEventRecord(Base):
    """Append-only event log row.

    Maps to :class:`lending_events.domain.events.DomainEvent`.  After
    insert only ``processing_status``, ``processed_at`` and
    ``processing_error`` change.
    """

    __tablename__ = "domain_events"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=_new_uuid,
    )
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    event_version: Mapped[str] = mapped_column(Text, nullable=False, default="1.0")
    aggregate_id: Mapped[str] = mapped_column(String(255), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    causation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now(),
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    processing_status: Mapped[str] = mapped_column(
        String(24), nullable=False, default="pending",
    )
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint(
            "aggregate_type", "aggregate_id", "sequence_number",
            name="uq_domain_events_aggregate_sequence",
        ),
        Index("domain_events_event_type_idx", "event_type"),
        Index("domain_events_aggregate_idx", "aggregate_id", "aggregate_type"),
        Index("domain_events_occurred_at_idx", "occurred_at"),
        Index("domain_events_processing_status_idx", "processing_status"),
    )

    def __repr__(self) -> str:
        return (
            f"<DomainEventRecord(event_type={self.event_type!r}, "
            f"aggregate={self.aggregate_type}:{self.aggregate_id}, "
            f"seq={self.sequence_number}, status={self.processing_status!r})>"
        )


# ---------------------------------------------------------------------------
# EventHandlerRecord
# ---------------------------------------------------------------------------

class EventHandlerRecord(Base):
    """Registry row for one handler name, with execution statistics."""

    __tablename__ = "event_handlers"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=_new_uuid,
    )
    handler_name: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    last_executed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("event_handlers_event_type_idx", "event_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<EventHandlerRecord(handler_name={self.handler_name!r}, "
            f"event_type={self.event_type!r}, enabled={self.is_enabled})>"
        )


# ---------------------------------------------------------------------------
# ProcessingLogRecord
# ---------------------------------------------------------------------------

class ProcessingLogRecord(Base):
    """One handler execution against one event."""

    __tablename__ = "event_processing_log"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=_new_uuid,
    )
    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("domain_events.id", ondelete="CASCADE"),
        nullable=False,
    )
    handler_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("event_handlers.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    executed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now(),
    )

    __table_args__ = (
        Index("event_processing_log_event_id_idx", "event_id"),
        Index("event_processing_log_executed_at_idx", "executed_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ProcessingLogRecord(event_id={self.event_id}, "
            f"handler_id={self.handler_id}, status={self.status!r})>"
        )
