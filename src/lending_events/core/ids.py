"""Canonical ID and timestamp factories.

All modules import from here instead of defining local _uuid()/_now() copies.

ID Categories
-------------
1. Event IDs: UUID v4 strings assigned when an event is persisted.
2. Aggregate IDs: caller-supplied, opaque strings (loan id, fund id, ...).
3. Partition keys: ``"<aggregate_type>:<aggregate_id>"``, the unit of
   sequence numbering.

Timestamp Rule
--------------
All timestamps are ``datetime`` with ``tzinfo=timezone.utc``, never naive.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone


def new_id() -> str:
    """Generate a new UUID v4 string.  Use for all internal entity IDs."""
    return str(uuid.uuid4())


def partition_key(aggregate_type: str, aggregate_id: str) -> str:
    """Return the sequence partition key for an aggregate."""
    return f"{aggregate_type}:{aggregate_id}"


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
