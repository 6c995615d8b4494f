"""Tests for the SQLAlchemy stores against in-memory SQLite (aiosqlite)."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from lending_events.core.enums import ExecutionStatus, ProcessingStatus
from lending_events.core.errors import EventNotFoundError, SequenceConflictError, StorageError
from lending_events.domain.events import DomainEvent, EventDraft, EventMetadata
from lending_events.infrastructure.event_bus import EventBus, HandlerRegistration
from lending_events.infrastructure.sequence import StoreSequenceAllocator
from lending_events.storage.postgres.repos import (
    SqlAlchemyEventStore,
    SqlAlchemyHandlerStore,
    SqlAlchemyProcessingLog,
)


@pytest.fixture
def sql_event_store(sqlite_session_factory) -> SqlAlchemyEventStore:
    return SqlAlchemyEventStore(sqlite_session_factory)


@pytest.fixture
def sql_handler_store(sqlite_session_factory) -> SqlAlchemyHandlerStore:
    return SqlAlchemyHandlerStore(sqlite_session_factory)


@pytest.fixture
def sql_processing_log(sqlite_session_factory) -> SqlAlchemyProcessingLog:
    return SqlAlchemyProcessingLog(sqlite_session_factory)


def _draft(**overrides) -> EventDraft:
    defaults = dict(
        event_type="Payment.Processed",
        aggregate_type="Payment",
        aggregate_id="p-1",
        payload={"amount": "1250.00", "loanId": "L1"},
        metadata=EventMetadata(user_id="u-1"),
    )
    defaults.update(overrides)
    return EventDraft(**defaults)


# ---------------------------------------------------------------------------
# SqlAlchemyEventStore
# ---------------------------------------------------------------------------

class TestSqlAlchemyEventStore:
    async def test_append_and_get(self, sql_event_store):
        event = await sql_event_store.append(_draft(correlation_id="req-1"), 1)
        assert uuid.UUID(event.event_id)
        assert event.processing_status == ProcessingStatus.PENDING
        assert event.occurred_at.tzinfo is not None

        loaded = await sql_event_store.get(event.event_id)
        assert loaded.payload == {"amount": "1250.00", "loanId": "L1"}
        assert loaded.metadata == {"user_id": "u-1"}
        assert loaded.correlation_id == "req-1"
        assert loaded.sequence_number == 1
        assert loaded.occurred_at.tzinfo == timezone.utc

    async def test_duplicate_sequence_conflicts(self, sql_event_store):
        await sql_event_store.append(_draft(), 1)
        with pytest.raises(SequenceConflictError):
            await sql_event_store.append(_draft(), 1)
        assert len(await sql_event_store.history("p-1")) == 1

    async def test_other_integrity_errors_are_not_sequence_conflicts(self, sql_event_store):
        with pytest.raises(StorageError) as info:
            await sql_event_store.append(_draft(event_type=None), 1)
        assert not isinstance(info.value, SequenceConflictError)
        assert await sql_event_store.history("p-1") == []

    async def test_get_invalid_or_unknown_id(self, sql_event_store):
        assert await sql_event_store.get("not-a-uuid") is None
        assert await sql_event_store.get(str(uuid.uuid4())) is None

    async def test_status_transitions(self, sql_event_store):
        a = await sql_event_store.append(_draft(), 1)
        b = await sql_event_store.append(_draft(), 2)
        when = datetime(2024, 6, 1, 12, tzinfo=timezone.utc)

        await sql_event_store.mark_processed(a.event_id, when)
        await sql_event_store.mark_failed(b.event_id, "smtp down")

        processed = await sql_event_store.get(a.event_id)
        assert processed.processing_status == ProcessingStatus.PROCESSED
        assert processed.processed_at == when

        [failed] = await sql_event_store.list_by_status(ProcessingStatus.FAILED)
        assert failed.event_id == b.event_id
        assert failed.processing_error == "smtp down"

    async def test_mark_unknown_raises(self, sql_event_store):
        with pytest.raises(EventNotFoundError):
            await sql_event_store.mark_failed(str(uuid.uuid4()), "x")
        with pytest.raises(EventNotFoundError):
            await sql_event_store.mark_processed("bogus", datetime.now(timezone.utc))

    async def test_history_and_maxima(self, sql_event_store):
        for seq in (2, 1, 3):
            await sql_event_store.append(_draft(), seq)
        await sql_event_store.append(_draft(aggregate_id="p-2"), 1)
        await sql_event_store.append(_draft(aggregate_type="Loan", aggregate_id="p-1"), 1)

        history = await sql_event_store.history("p-1", "Payment")
        assert [e.sequence_number for e in history] == [1, 2, 3]
        assert len(await sql_event_store.history("p-1")) == 4

        assert await sql_event_store.max_sequence_numbers() == {
            "Payment:p-1": 3, "Payment:p-2": 1, "Loan:p-1": 1,
        }
        assert await sql_event_store.max_sequence_number("Payment", "p-1") == 3
        assert await sql_event_store.max_sequence_number("Payment", "p-9") == 0


# ---------------------------------------------------------------------------
# SqlAlchemyHandlerStore
# ---------------------------------------------------------------------------

class TestSqlAlchemyHandlerStore:
    async def test_upsert_is_keyed_by_name(self, sql_handler_store):
        first = await sql_handler_store.upsert("H", "Loan.Created", 10, True)
        second = await sql_handler_store.upsert("H", "Loan.Funded", 20, False)

        assert second.handler_id == first.handler_id
        assert (second.event_type, second.priority, second.is_enabled) == (
            "Loan.Funded", 20, False,
        )
        assert len(await sql_handler_store.list_all()) == 1

    async def test_record_execution_increments(self, sql_handler_store):
        await sql_handler_store.upsert("H", "Loan.Created", 10, True)
        when = datetime(2024, 6, 1, tzinfo=timezone.utc)
        await sql_handler_store.record_execution("H", True, when)
        await sql_handler_store.record_execution("H", True, when)
        record = await sql_handler_store.record_execution("H", False, when)

        assert (record.success_count, record.failure_count) == (2, 1)
        assert record.last_executed_at == when

    async def test_record_execution_missing_row(self, sql_handler_store):
        assert await sql_handler_store.record_execution(
            "ghost", True, datetime.now(timezone.utc),
        ) is None

    async def test_enable_disable(self, sql_handler_store):
        await sql_handler_store.upsert("H", "Loan.Created", 10, True)
        assert await sql_handler_store.disable("H") is True
        assert (await sql_handler_store.get("H")).is_enabled is False
        assert await sql_handler_store.set_enabled("H", True) is True
        assert await sql_handler_store.set_enabled("ghost", True) is False
        assert await sql_handler_store.get("ghost") is None

    async def test_list_all_sorted(self, sql_handler_store):
        for name in ("b", "c", "a"):
            await sql_handler_store.upsert(name, "Loan.Created", 100, True)
        assert [r.handler_name for r in await sql_handler_store.list_all()] == ["a", "b", "c"]


# ---------------------------------------------------------------------------
# SqlAlchemyProcessingLog
# ---------------------------------------------------------------------------

class TestSqlAlchemyProcessingLog:
    async def test_append_and_for_event(
        self, sql_event_store, sql_handler_store, sql_processing_log,
    ):
        event = await sql_event_store.append(_draft(), 1)
        handler = await sql_handler_store.upsert("H", "Payment.Processed", 10, True)

        entry = await sql_processing_log.append(
            event.event_id, handler.handler_id, ExecutionStatus.FAILURE, 12, "boom",
        )
        assert entry.status == ExecutionStatus.FAILURE
        assert entry.executed_at is not None

        [loaded] = await sql_processing_log.for_event(event.event_id)
        assert loaded.handler_id == handler.handler_id
        assert loaded.error == "boom"
        assert loaded.execution_time_ms == 12

    async def test_for_event_with_bad_id(self, sql_processing_log):
        assert await sql_processing_log.for_event("nope") == []


# ---------------------------------------------------------------------------
# Full bus over SQLite
# ---------------------------------------------------------------------------

class TestBusOnSqlAlchemy:
    async def test_publish_dispatch_and_replay(
        self, sql_event_store, sql_handler_store, sql_processing_log,
    ):
        bus = EventBus(
            event_store=sql_event_store,
            handler_store=sql_handler_store,
            processing_log=sql_processing_log,
        )
        await bus.start()

        seen: list[int] = []

        async def ok(event: DomainEvent) -> None:
            seen.append(event.sequence_number)

        async def boom(event: DomainEvent) -> None:
            raise RuntimeError("downstream 503")

        await bus.subscribe(HandlerRegistration("Ok", "Payment.Processed", ok, priority=1))
        await bus.subscribe(HandlerRegistration("Boom", "Payment.Processed", boom, priority=2))

        first = await bus.publish(_draft())
        second = await bus.publish(_draft())
        assert (first.sequence_number, second.sequence_number) == (1, 2)

        stored = await sql_event_store.get(second.event_id)
        assert stored.processing_status == ProcessingStatus.PROCESSED

        entries = await bus.get_processing_log(first.event_id)
        assert {e.status for e in entries} == {ExecutionStatus.SUCCESS, ExecutionStatus.FAILURE}

        results = await bus.replay("p-1", "Payment")
        assert len(results) == 4
        assert seen == [1, 2, 1, 2]

        stats = {r.handler_name: r for r in await bus.get_handler_stats()}
        assert stats["Ok"].success_count == 4
        assert stats["Boom"].failure_count == 4

    async def test_restart_continues_numbering(
        self, sql_event_store, sql_handler_store, sql_processing_log,
    ):
        def new_bus() -> EventBus:
            return EventBus(
                event_store=sql_event_store,
                handler_store=sql_handler_store,
                processing_log=sql_processing_log,
            )

        old = new_bus()
        await old.start()
        await old.publish(_draft())
        await old.publish(_draft())

        fresh = new_bus()
        await fresh.start()
        event = await fresh.publish(_draft())
        assert event.sequence_number == 3

    async def test_store_allocator_handles_other_writers(
        self, sql_event_store, sql_handler_store, sql_processing_log,
    ):
        bus = EventBus(
            event_store=sql_event_store,
            handler_store=sql_handler_store,
            processing_log=sql_processing_log,
            sequence_allocator=StoreSequenceAllocator(sql_event_store),
        )
        await bus.publish(_draft())
        await sql_event_store.append(_draft(), 2)  # another process
        event = await bus.publish(_draft())
        assert event.sequence_number == 3

    async def test_dict_payload_with_decimal_and_date(
        self, sql_event_store, sql_handler_store, sql_processing_log,
    ):
        bus = EventBus(
            event_store=sql_event_store,
            handler_store=sql_handler_store,
            processing_log=sql_processing_log,
        )
        await bus.start()
        event = await bus.publish(_draft(
            payload={"amount": Decimal("1500.00"), "processedDate": date(2024, 7, 1)},
            metadata={"receivedAt": datetime(2024, 7, 1, 9, 30, tzinfo=timezone.utc)},
        ))
        assert event.processing_status == ProcessingStatus.PROCESSED

        stored = await sql_event_store.get(event.event_id)
        assert stored.payload == {"amount": "1500.00", "processedDate": "2024-07-01"}
        assert stored.metadata == {"receivedAt": "2024-07-01T09:30:00Z"}

    async def test_non_sequence_insert_error_is_not_retried(
        self, sql_event_store, sql_handler_store, sql_processing_log,
    ):
        bus = EventBus(
            event_store=sql_event_store,
            handler_store=sql_handler_store,
            processing_log=sql_processing_log,
            sequence_conflict_retries=3,
        )
        with pytest.raises(StorageError) as info:
            await bus.publish(_draft(event_type=None))
        assert not isinstance(info.value, SequenceConflictError)

        event = await bus.publish(_draft())
        assert event.sequence_number == 1
