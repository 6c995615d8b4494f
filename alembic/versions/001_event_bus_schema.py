"""Event bus schema: domain_events, event_handlers, event_processing_log.

Revision ID: 001_event_bus
Revises: None
Create Date: 2026-10-19 00:00:00.000000
"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "001_event_bus"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Append-only event log
    op.create_table(
        "domain_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("event_version", sa.Text(), nullable=False, server_default="1.0"),
        sa.Column("aggregate_id", sa.String(255), nullable=False),
        sa.Column("aggregate_type", sa.Text(), nullable=False),
        sa.Column("payload", JSONB(), nullable=False),
        sa.Column("metadata", JSONB(), nullable=True),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("causation_id", sa.String(255), nullable=True),
        sa.Column("correlation_id", sa.String(255), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_status", sa.String(24), nullable=False, server_default="pending"),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint(
            "aggregate_type", "aggregate_id", "sequence_number",
            name="uq_domain_events_aggregate_sequence",
        ),
    )
    op.create_index("domain_events_event_type_idx", "domain_events", ["event_type"])
    op.create_index("domain_events_aggregate_idx", "domain_events", ["aggregate_id", "aggregate_type"])
    op.create_index("domain_events_occurred_at_idx", "domain_events", ["occurred_at"])
    op.create_index("domain_events_processing_status_idx", "domain_events", ["processing_status"])

    # Handler registry with statistics
    op.create_table(
        "event_handlers",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("handler_name", sa.Text(), nullable=False, unique=True),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("last_executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("event_handlers_event_type_idx", "event_handlers", ["event_type"])

    # One row per (event, handler) execution
    op.create_table(
        "event_processing_log",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "event_id", UUID(as_uuid=True),
            sa.ForeignKey("domain_events.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "handler_id", UUID(as_uuid=True),
            sa.ForeignKey("event_handlers.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("event_processing_log_event_id_idx", "event_processing_log", ["event_id"])
    op.create_index("event_processing_log_executed_at_idx", "event_processing_log", ["executed_at"])


def downgrade() -> None:
    op.drop_table("event_processing_log")
    op.drop_table("event_handlers")
    op.drop_table("domain_events")
