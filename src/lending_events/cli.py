"""CLI entry point for the lending event bus."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click

from .core.config import Settings, load_settings
from .core.enums import ExecutionStatus, ProcessingStatus, StorageBackend
from .core.errors import EventBusError
from .domain.events import DomainEvent, EventDraft, EventMetadata
from .infrastructure.event_bus import EventBus

T = TypeVar("T")

_config_option = click.option(
    "--config", default=None, help="Config file path (TOML)",
)


@click.group()
def main() -> None:
    """Lending domain event bus."""


def _run(config: str | None, fn: Callable[[EventBus], Awaitable[T]]) -> T:
    """Build a bus from *config*, run *fn* against it, release the engine."""
    settings = load_settings(config_path=config)

    from .observability.logger import setup_logging

    setup_logging(
        level=settings.observability.log_level,
        format=settings.observability.log_format,
    )

    async def _inner() -> T:
        from .infrastructure.factory import create_event_bus

        bus = await create_event_bus(settings)
        try:
            return await fn(bus)
        finally:
            await bus.stop()
            if settings.storage.backend == StorageBackend.POSTGRES:
                from .storage.postgres.connection import dispose

                await dispose()

    try:
        return asyncio.run(_inner())
    except EventBusError as exc:
        raise click.ClickException(str(exc)) from exc


def _print_event(event: DomainEvent) -> None:
    click.echo(
        f"  {event.sequence_number:>5}  {event.occurred_at.isoformat():32s} "
        f"{event.event_type:28s} {event.processing_status.value:10s} {event.event_id}"
    )
    if event.processing_error:
        click.echo(f"         error: {event.processing_error}")


@main.command("init-db")
@_config_option
def init_db(config: str | None) -> None:
    """Create the event bus tables (CREATE TABLE IF NOT EXISTS)."""
    settings: Settings = load_settings(config_path=config)
    settings.validate_storage()
    if settings.storage.backend != StorageBackend.POSTGRES:
        raise click.ClickException("init-db needs storage.backend = \"postgres\"")

    from .storage.postgres.connection import dispose, init_engine

    async def _init() -> None:
        await init_engine(settings.storage.postgres_url, create_tables=True)
        await dispose()

    asyncio.run(_init())
    click.echo("Event bus tables created.")


@main.command()
@click.argument("event_type")
@click.argument("aggregate_type")
@click.argument("aggregate_id")
@click.option("--payload", default="{}", help="Event payload as a JSON object")
@click.option("--user-id", default=None, help="Acting user id (metadata)")
@click.option("--source", default="cli", help="Metadata source tag")
@_config_option
def publish(
    event_type: str,
    aggregate_type: str,
    aggregate_id: str,
    payload: str,
    user_id: str | None,
    source: str,
    config: str | None,
) -> None:
    """Publish one event and print its stored row."""
    try:
        data: Any = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"not valid JSON: {exc}", param_hint="--payload")
    if not isinstance(data, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--payload")

    draft = EventDraft(
        event_type=event_type,
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        payload=data,
        metadata=EventMetadata(user_id=user_id, source=source),
    )
    event = _run(config, lambda bus: bus.publish(draft))
    _print_event(event)


@main.command()
@click.argument("aggregate_id")
@click.option("--type", "aggregate_type", default=None, help="Aggregate type filter")
@click.option("--payloads", "show_payloads", is_flag=True, help="Also print payloads")
@_config_option
def history(
    aggregate_id: str,
    aggregate_type: str | None,
    show_payloads: bool,
    config: str | None,
) -> None:
    """Show the stored events of one aggregate, oldest first."""
    events = _run(
        config, lambda bus: bus.get_event_history(aggregate_id, aggregate_type),
    )
    if not events:
        click.echo("No events found.")
        return

    click.echo(f"{len(events)} event(s) for {aggregate_type or '*'}:{aggregate_id}")
    for event in events:
        _print_event(event)
        if show_payloads:
            click.echo(f"         {json.dumps(event.payload, sort_keys=True)}")


@main.command()
@click.argument("aggregate_id")
@click.option("--type", "aggregate_type", default=None, help="Aggregate type filter")
@_config_option
def replay(aggregate_id: str, aggregate_type: str | None, config: str | None) -> None:
    """Re-dispatch an aggregate's history to the reference handlers.

    Handlers disabled in the registry stay disabled.
    """
    from .handlers import (
        RecordingAlertService,
        RecordingAnalyticsService,
        RecordingComplianceService,
        RecordingPaymentScheduleService,
        register_event_handlers,
    )

    alerts = RecordingAlertService()
    analytics = RecordingAnalyticsService()
    compliance = RecordingComplianceService()
    schedules = RecordingPaymentScheduleService()

    async def _replay(bus: EventBus) -> list:
        enabled = {r.handler_name: r.is_enabled for r in await bus.get_handler_stats()}
        await register_event_handlers(
            bus, alerts, analytics,
            compliance=compliance, schedules=schedules, enabled=enabled,
        )
        return await bus.replay(aggregate_id, aggregate_type)

    results = _run(config, _replay)
    if not results:
        click.echo("Nothing replayed.")
        return

    for r in results:
        line = f"  {r.event_id}  {r.handler_name:36s} {r.status.value}"
        if r.error:
            line += f"  ({r.error})"
        click.echo(line)
    failures = sum(1 for r in results if r.status == ExecutionStatus.FAILURE)
    click.echo(
        f"{len(results)} handler execution(s), {failures} failure(s), "
        f"{len(alerts.alerts)} alert(s), {len(analytics.snapshots)} snapshot(s)"
    )
    if compliance.audit_log or compliance.envelopes or compliance.reviews or schedules.schedules:
        click.echo(
            f"{len(compliance.envelopes)} envelope(s), "
            f"{len(compliance.audit_log)} audit entries, "
            f"{len(compliance.reviews)} review(s), "
            f"{len(schedules.schedules)} payment schedule(s)"
        )


@main.command()
@click.option("--name", default=None, help="Show one handler only")
@_config_option
def handlers(name: str | None, config: str | None) -> None:
    """List registered handlers with their statistics."""
    records = _run(config, lambda bus: bus.get_handler_stats(name))
    if not records:
        click.echo("No handlers registered.")
        return

    click.echo(
        f"  {'Handler':36s} {'Event type':28s} {'Prio':>5} {'On':>3} "
        f"{'OK':>6} {'Fail':>6}  Last run"
    )
    click.echo(f"  {'-' * 100}")
    for r in records:
        last = r.last_executed_at.isoformat() if r.last_executed_at else "-"
        click.echo(
            f"  {r.handler_name:36s} {r.event_type:28s} {r.priority:>5} "
            f"{'y' if r.is_enabled else 'n':>3} {r.success_count:>6} "
            f"{r.failure_count:>6}  {last}"
        )


def _set_enabled(config: str | None, name: str, enabled: bool) -> None:
    async def _toggle(bus: EventBus) -> bool:
        if not await bus.get_handler_stats(name):
            return False
        await bus.set_handler_enabled(name, enabled)
        return True

    if not _run(config, _toggle):
        raise click.ClickException(f"Handler {name!r} is not registered")
    click.echo(f"{name} {'enabled' if enabled else 'disabled'}.")


@main.command()
@click.argument("name")
@_config_option
def enable(name: str, config: str | None) -> None:
    """Switch a registered handler on."""
    _set_enabled(config, name, True)


@main.command()
@click.argument("name")
@_config_option
def disable(name: str, config: str | None) -> None:
    """Switch a registered handler off; replay skips it too."""
    _set_enabled(config, name, False)


@main.command()
@click.option(
    "--status",
    type=click.Choice([s.value for s in ProcessingStatus]),
    default=ProcessingStatus.FAILED.value,
    help="Processing status to list",
)
@click.option("--limit", default=50, type=int, help="Max events to show")
@_config_option
def events(status: str, limit: int, config: str | None) -> None:
    """List events by processing status (default: failed)."""
    found = _run(
        config,
        lambda bus: bus.list_events_by_status(ProcessingStatus(status), limit),
    )
    if not found:
        click.echo(f"No {status} events.")
        return
    for event in found:
        click.echo(f"  {event.aggregate_type}:{event.aggregate_id}")
        _print_event(event)


if __name__ == "__main__":
    main()
