"""Event bus factory.

Creates the event bus with the storage backing named in settings.
"""

from __future__ import annotations

from lending_events.core.clock import IClock
from lending_events.core.config import Settings
from lending_events.core.enums import SequenceAllocatorKind, StorageBackend

from .event_bus import EventBus
from .event_store import IEventStore, InMemoryEventStore
from .handler_store import (
    IHandlerStore,
    InMemoryHandlerStore,
    InMemoryProcessingLog,
    IProcessingLog,
)
from .sequence import (
    InMemorySequenceAllocator,
    SequenceAllocator,
    StoreSequenceAllocator,
)


async def create_event_bus(
    settings: Settings,
    *,
    clock: IClock | None = None,
    start: bool = True,
) -> EventBus:
    """Create an event bus for the configured backend.

    - memory: in-process dict/list stores (tests, local development)
    - postgres: SQLAlchemy stores on the module-level async engine,
      initialised here from ``settings.storage``

    Args:
        settings: Loaded settings.
        clock: Optional clock for timestamps (defaults to wall clock).
        start: If ``True``, seed sequence counters before returning.
    """
    settings.validate_storage()

    event_store: IEventStore
    handler_store: IHandlerStore
    processing_log: IProcessingLog

    if settings.storage.backend == StorageBackend.POSTGRES:
        from lending_events.storage.postgres.connection import (
            get_session_factory,
            init_engine,
        )
        from lending_events.storage.postgres.repos import (
            SqlAlchemyEventStore,
            SqlAlchemyHandlerStore,
            SqlAlchemyProcessingLog,
        )

        await init_engine(
            settings.storage.postgres_url,
            pool_size=settings.storage.pool_size,
            max_overflow=settings.storage.max_overflow,
            echo=settings.storage.echo,
            create_tables=settings.storage.create_tables,
        )
        factory = get_session_factory()
        event_store = SqlAlchemyEventStore(factory)
        handler_store = SqlAlchemyHandlerStore(factory)
        processing_log = SqlAlchemyProcessingLog(factory)
    else:
        event_store = InMemoryEventStore(clock)
        handler_store = InMemoryHandlerStore(clock)
        processing_log = InMemoryProcessingLog(clock)

    allocator: SequenceAllocator
    if settings.bus.sequence_allocator == SequenceAllocatorKind.STORE:
        allocator = StoreSequenceAllocator(event_store)
    else:
        allocator = InMemorySequenceAllocator()

    bus = EventBus(
        event_store=event_store,
        handler_store=handler_store,
        processing_log=processing_log,
        sequence_allocator=allocator,
        clock=clock,
        sequence_conflict_retries=settings.bus.sequence_conflict_retries,
        log_skipped_handlers=settings.bus.log_skipped_handlers,
    )
    if settings.observability.metrics_enabled:
        from lending_events.observability.metrics import start_metrics_server

        start_metrics_server(
            settings.observability.metrics_port, settings.storage.backend.value,
        )
    if start:
        await bus.start()
    return bus
