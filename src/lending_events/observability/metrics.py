"""Prometheus metrics for the event bus.

Exposes publish, dispatch and handler outcome metrics for monitoring via
Grafana.
"""

from __future__ import annotations

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
)

# ---------------------------------------------------------------------------
# System metrics
# ---------------------------------------------------------------------------

SYSTEM_INFO = Info("lending_event_bus", "Lending event bus information")

# ---------------------------------------------------------------------------
# Event metrics
# ---------------------------------------------------------------------------

EVENTS_PUBLISHED = Counter(
    "lending_events_published_total",
    "Total events persisted by publish",
    ["event_type"],
)

EVENTS_FAILED = Counter(
    "lending_events_failed_total",
    "Events whose dispatch aborted on a storage error",
    ["event_type"],
)

EVENTS_REPLAYED = Counter(
    "lending_events_replayed_total",
    "Events re-dispatched by replay",
    ["aggregate_type"],
)

SEQUENCE_CONFLICTS = Counter(
    "lending_events_sequence_conflicts_total",
    "Sequence numbers rejected by the store as already taken",
    ["aggregate_type"],
)

SEQUENCE_PARTITIONS = Gauge(
    "lending_events_sequence_partitions",
    "Aggregates known to the sequence allocator after startup",
)

# ---------------------------------------------------------------------------
# Handler metrics
# ---------------------------------------------------------------------------

HANDLER_EXECUTIONS = Counter(
    "lending_events_handler_executions_total",
    "Handler executions by outcome",
    ["handler_name", "status"],
)

HANDLER_LATENCY = Histogram(
    "lending_events_handler_latency_seconds",
    "Handler execution time",
    ["handler_name"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

HANDLERS_REGISTERED = Gauge(
    "lending_events_handlers_registered",
    "In-memory handler registrations",
)


def start_metrics_server(port: int = 9090, backend: str = "unknown") -> None:
    """Start Prometheus metrics HTTP server in a background thread."""
    SYSTEM_INFO.info({
        "version": "0.1.0",
        "backend": backend,
    })
    start_http_server(port)


# ---------------------------------------------------------------------------
# Convenience helpers for emitting metrics from the bus
# ---------------------------------------------------------------------------


def record_event_published(event_type: str) -> None:
    """Record a persisted event."""
    EVENTS_PUBLISHED.labels(event_type=event_type).inc()


def record_event_failed(event_type: str) -> None:
    """Record an event marked failed."""
    EVENTS_FAILED.labels(event_type=event_type).inc()


def record_event_replayed(aggregate_type: str) -> None:
    """Record an event re-dispatched by replay."""
    EVENTS_REPLAYED.labels(aggregate_type=aggregate_type).inc()


def record_sequence_conflict(aggregate_type: str) -> None:
    """Record a rejected sequence number."""
    SEQUENCE_CONFLICTS.labels(aggregate_type=aggregate_type).inc()


def update_sequence_partitions(count: int) -> None:
    """Update the seeded partition gauge."""
    SEQUENCE_PARTITIONS.set(count)


def record_handler_execution(handler_name: str, status: str, seconds: float) -> None:
    """Record one handler execution and its latency."""
    HANDLER_EXECUTIONS.labels(handler_name=handler_name, status=status).inc()
    HANDLER_LATENCY.labels(handler_name=handler_name).observe(seconds)


def update_handlers_registered(count: int) -> None:
    """Update the registration gauge."""
    HANDLERS_REGISTERED.set(count)
