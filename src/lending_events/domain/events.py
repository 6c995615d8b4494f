"""Domain events as the bus stores and dispatches them.

Design invariants
-----------------
1.  Every event is **immutable** (``frozen=True``).  The only fields that
    ever change after persistence are ``processing_status``,
    ``processed_at`` and ``processing_error``, and those changes happen in
    the store, never on the object a handler receives.
2.  ``sequence_number`` is strictly increasing per
    ``(aggregate_type, aggregate_id)``, starting at 1, with no gaps.
3.  ``event_type`` is namespaced ``<Aggregate>.<Verb>``.
4.  ``payload`` is opaque to the bus.  Typed access goes through
    :mod:`lending_events.domain.payloads`.
5.  ``causation_id`` points to the event or command that directly caused
    this event; ``correlation_id`` groups a whole request's events.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, TypeAdapter

from lending_events.core.enums import ProcessingStatus
from lending_events.core.ids import partition_key

# Dumps to fresh JSON-safe containers (Decimal, date, UUID become strings).
_JSON_OBJECT = TypeAdapter(dict[str, Any])


class EventMetadata(BaseModel):
    """Context about who or what produced an event.

    Publishers should fill ``user_id`` and ``organization_id`` when they
    are known.  Extra keys are kept as-is.
    """

    model_config = ConfigDict(extra="allow")

    user_id: str | None = None
    organization_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


@dataclass(frozen=True)
class EventDraft:
    """Everything a publisher supplies; the bus adds identity and order."""

    event_type: str
    aggregate_id: str
    aggregate_type: str
    payload: dict[str, Any] | BaseModel = field(default_factory=dict)
    event_version: str = "1.0"
    metadata: dict[str, Any] | EventMetadata | None = None
    causation_id: str | None = None
    correlation_id: str | None = None

    @property
    def partition_key(self) -> str:
        return partition_key(self.aggregate_type, self.aggregate_id)

    def payload_dict(self) -> dict[str, Any]:
        """Payload as a JSON-safe dict that shares nothing with the draft."""
        if isinstance(self.payload, BaseModel):
            return self.payload.model_dump(mode="json", by_alias=True)
        return _JSON_OBJECT.dump_python(self.payload, mode="json")

    def metadata_dict(self) -> dict[str, Any] | None:
        if self.metadata is None:
            return None
        if isinstance(self.metadata, EventMetadata):
            return self.metadata.to_dict()
        return _JSON_OBJECT.dump_python(self.metadata, mode="json")


@dataclass(frozen=True)
class DomainEvent:
    """A persisted event, as handlers and history readers see it.

    Fields
    ~~~~~~
    event_id          Store-assigned identity (UUID4 string).
    event_type        Discriminator, e.g. ``"Fund.Created"``.
    event_version     Payload schema version, e.g. ``"1.0"``.
    aggregate_id      Identity of the entity the event describes.
    aggregate_type    Kind of entity, e.g. ``"Fund"``.
    payload           Event-type specific data.
    metadata          Acting user, organization, source, ...
    sequence_number   Position within the aggregate's history.
    occurred_at       Persistence time (UTC).
    """

    event_id: str
    event_type: str
    aggregate_id: str
    aggregate_type: str
    sequence_number: int
    occurred_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    event_version: str = "1.0"
    metadata: dict[str, Any] | None = None
    causation_id: str | None = None
    correlation_id: str | None = None
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    processed_at: datetime | None = None
    processing_error: str | None = None

    @property
    def partition_key(self) -> str:
        return partition_key(self.aggregate_type, self.aggregate_id)

    def metadata_model(self) -> EventMetadata:
        return EventMetadata(**(self.metadata or {}))


class EventTypes:
    """Event type strings published by the lending application."""

    # Loan
    LOAN_CREATED = "Loan.Created"
    LOAN_FUNDED = "Loan.Funded"
    LOAN_STATUS_CHANGED = "Loan.StatusChanged"
    LOAN_UPDATED = "Loan.Updated"
    LOAN_DELINQUENT = "Loan.Delinquent"

    # Payment
    PAYMENT_SCHEDULE_CREATED = "Payment.ScheduleCreated"
    PAYMENT_SCHEDULED = "Payment.Scheduled"
    PAYMENT_PROCESSED = "Payment.Processed"
    PAYMENT_FAILED = "Payment.Failed"
    PAYMENT_LATE = "Payment.Late"
    PAYMENT_RECONCILED = "Payment.Reconciled"

    # Draw
    DRAW_REQUESTED = "Draw.Requested"
    DRAW_APPROVED = "Draw.Approved"
    DRAW_REJECTED = "Draw.Rejected"
    DRAW_DISBURSED = "Draw.Disbursed"
    DRAW_STATUS_CHANGED = "Draw.StatusChanged"

    # Compliance
    DOCUMENT_GENERATED = "Compliance.DocumentGenerated"
    DOCUMENT_SIGNED = "Compliance.DocumentSigned"
    DOCUMENT_COMPLETED = "Document.Completed"

    # Fund
    FUND_CREATED = "Fund.Created"
    FUND_UPDATED = "Fund.Updated"
    FUND_CLOSED = "Fund.Closed"
    COMMITMENT_ADDED = "Fund.CommitmentAdded"
    COMMITMENT_CANCELLED = "Fund.CommitmentCancelled"
    FUND_COMMITMENT_ACTIVATED = "Fund.CommitmentActivated"
    CAPITAL_CALLED = "Fund.CapitalCalled"
    CAPITAL_RECEIVED = "Fund.CapitalReceived"
    CAPITAL_ALLOCATED = "Fund.CapitalAllocated"
    CAPITAL_RETURNED = "Fund.CapitalReturned"
    DISTRIBUTION_MADE = "Fund.DistributionMade"
    FUND_DISTRIBUTION_POSTED = "Fund.DistributionPosted"
    FUND_CAPITAL_EVENT_RECORDED = "Fund.CapitalEventRecorded"

    # Commitment / capital-account aggregates
    COMMITMENT_ACTIVATED = "Commitment.Activated"
    COMMITMENT_FUNDED = "Commitment.Funded"
    DISTRIBUTION_POSTED = "Distribution.Posted"
    CAPITAL_EVENT_RECORDED = "CapitalEvent.Recorded"

    # Inspection
    INSPECTION_DUE = "Inspection.Due"
    INSPECTION_OVERDUE = "Inspection.Overdue"

    # Investor / KYC
    INVESTOR_CREATED = "Investor.Created"
    KYC_APPROVED = "KYC.Approved"
    KYC_REJECTED = "KYC.Rejected"
    KYC_REQUIRES_REVIEW = "KYC.RequiresReview"

    # Borrower
    BORROWER_KYC_APPROVED = "Borrower.KYCApproved"

    @classmethod
    def all(cls) -> list[str]:
        return [
            v for k, v in vars(cls).items()
            if k.isupper() and isinstance(v, str)
        ]
