"""Shared fixtures for the lending event bus test suite."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from lending_events.core.clock import SimClock
from lending_events.domain.events import EventDraft, EventMetadata
from lending_events.infrastructure.event_bus import EventBus
from lending_events.infrastructure.event_store import InMemoryEventStore
from lending_events.infrastructure.handler_store import (
    InMemoryHandlerStore,
    InMemoryProcessingLog,
)
from lending_events.infrastructure.sequence import InMemorySequenceAllocator


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

@pytest.fixture
def sim_clock() -> SimClock:
    """Return a SimClock starting at 2024-06-01 00:00 UTC."""
    return SimClock(start=datetime(2024, 6, 1, tzinfo=timezone.utc))


# ---------------------------------------------------------------------------
# In-memory stores and bus
# ---------------------------------------------------------------------------

@pytest.fixture
def event_store(sim_clock: SimClock) -> InMemoryEventStore:
    return InMemoryEventStore(sim_clock)


@pytest.fixture
def handler_store(sim_clock: SimClock) -> InMemoryHandlerStore:
    return InMemoryHandlerStore(sim_clock)


@pytest.fixture
def processing_log(sim_clock: SimClock) -> InMemoryProcessingLog:
    return InMemoryProcessingLog(sim_clock)


@pytest.fixture
def allocator() -> InMemorySequenceAllocator:
    return InMemorySequenceAllocator()


@pytest.fixture
def bus(
    event_store: InMemoryEventStore,
    handler_store: InMemoryHandlerStore,
    processing_log: InMemoryProcessingLog,
    allocator: InMemorySequenceAllocator,
    sim_clock: SimClock,
) -> EventBus:
    """An unstarted bus over fresh in-memory stores (counters start empty)."""
    return EventBus(
        event_store=event_store,
        handler_store=handler_store,
        processing_log=processing_log,
        sequence_allocator=allocator,
        clock=sim_clock,
    )


# ---------------------------------------------------------------------------
# SQLite (aiosqlite) engine for the SQLAlchemy repositories
# ---------------------------------------------------------------------------

@pytest.fixture
async def sqlite_session_factory():
    """Session factory over a fresh in-memory SQLite database."""
    from lending_events.storage.postgres.connection import (
        create_all,
        create_engine,
        create_session_factory,
    )

    engine = create_engine("sqlite+aiosqlite:///:memory:")
    await create_all(engine)
    yield create_session_factory(engine)
    await engine.dispose()


# ---------------------------------------------------------------------------
# Draft helpers
# ---------------------------------------------------------------------------

def make_draft(**overrides) -> EventDraft:
    """Build an EventDraft with sensible loan defaults."""
    defaults = dict(
        event_type="Loan.Created",
        aggregate_type="Loan",
        aggregate_id="L1",
        payload={"principal": "250000", "rate": "0.085", "termMonths": 12},
        metadata=EventMetadata(user_id="u-1", organization_id="org-1"),
    )
    defaults.update(overrides)
    return EventDraft(**defaults)


@pytest.fixture
def draft_factory():
    return make_draft
