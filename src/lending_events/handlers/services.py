"""Collaborators the reference handlers call into.

The services belong to the wider lending application; handlers only
need the narrow protocols below.  The recording and in-memory
implementations keep everything in memory for tests and local runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Protocol

from lending_events.core.ids import new_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertRequest:
    """What an alert handler asks the alert service to raise."""

    source_event_id: str
    event_type: str
    aggregate_type: str
    aggregate_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] | None = None


class AlertService(Protocol):
    async def handle_event(self, alert: AlertRequest) -> None:
        ...


class AnalyticsService(Protocol):
    async def compute_fund_snapshot(self, fund_id: str | None = None) -> None:
        ...


class RecordingAlertService:
    """Keeps every alert request in a list."""

    def __init__(self) -> None:
        self.alerts: list[AlertRequest] = []

    async def handle_event(self, alert: AlertRequest) -> None:
        logger.info("Alert %s for %s:%s", alert.event_type, alert.aggregate_type, alert.aggregate_id)
        self.alerts.append(alert)

    def of_type(self, event_type: str) -> list[AlertRequest]:
        return [a for a in self.alerts if a.event_type == event_type]


class RecordingAnalyticsService:
    """Counts snapshot recomputations per fund id (``None`` = all funds)."""

    def __init__(self) -> None:
        self.snapshots: list[str | None] = []

    async def compute_fund_snapshot(self, fund_id: str | None = None) -> None:
        self.snapshots.append(fund_id)


# ---------------------------------------------------------------------------
# Parties (borrowers, lenders, investors)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Party:
    party_id: str
    email: str
    name: str
    kyc_status: str | None = None


class PartyDirectory(Protocol):
    async def get_borrower(self, borrower_id: str) -> Party | None:
        ...

    async def get_lender(self, lender_id: str) -> Party | None:
        ...

    async def get_investor(self, investor_id: str) -> Party | None:
        ...


class InMemoryPartyDirectory:
    """Dict-backed directory.  Unknown ids return ``None``."""

    def __init__(self) -> None:
        self.borrowers: dict[str, Party] = {}
        self.lenders: dict[str, Party] = {}
        self.investors: dict[str, Party] = {}

    async def get_borrower(self, borrower_id: str) -> Party | None:
        return self.borrowers.get(borrower_id)

    async def get_lender(self, lender_id: str) -> Party | None:
        return self.lenders.get(lender_id)

    async def get_investor(self, investor_id: str) -> Party | None:
        return self.investors.get(investor_id)


# ---------------------------------------------------------------------------
# Compliance
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Signer:
    email: str
    name: str
    role: str
    order: int


@dataclass(frozen=True)
class SignatureEnvelopeRequest:
    """A document to send out for signature."""

    document_type: str  # loan_agreement | ppm | subscription_agreement
    document_id: str
    signers: tuple[Signer, ...]
    organization_id: str | None = None
    loan_id: str | None = None
    fund_id: str | None = None


@dataclass(frozen=True)
class AuditLogEntry:
    event_type: str
    entity_type: str
    entity_id: str
    action: str
    organization_id: str | None = None
    user_id: str | None = None
    changes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ComplianceReview:
    """Something the compliance team has to look at by hand."""

    reason: str  # kyc_rejected | kyc_requires_review | kyc_not_approved
    borrower_id: str
    source_event_id: str
    organization_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class ComplianceService(Protocol):
    async def create_signature_envelope(self, request: SignatureEnvelopeRequest) -> None:
        ...

    async def create_audit_log(self, entry: AuditLogEntry) -> None:
        ...

    async def request_review(self, review: ComplianceReview) -> None:
        ...

    async def mark_document_completed(
        self, document_type: str, loan_id: str | None, fund_id: str | None,
    ) -> None:
        ...


class RecordingComplianceService:
    """Keeps envelopes, audit entries, reviews and completions in lists."""

    def __init__(self) -> None:
        self.envelopes: list[SignatureEnvelopeRequest] = []
        self.audit_log: list[AuditLogEntry] = []
        self.reviews: list[ComplianceReview] = []
        self.completed_documents: list[tuple[str, str | None, str | None]] = []

    async def create_signature_envelope(self, request: SignatureEnvelopeRequest) -> None:
        self.envelopes.append(request)

    async def create_audit_log(self, entry: AuditLogEntry) -> None:
        self.audit_log.append(entry)

    async def request_review(self, review: ComplianceReview) -> None:
        logger.info("Compliance review (%s) for borrower %s", review.reason, review.borrower_id)
        self.reviews.append(review)

    async def mark_document_completed(
        self, document_type: str, loan_id: str | None, fund_id: str | None,
    ) -> None:
        self.completed_documents.append((document_type, loan_id, fund_id))


# ---------------------------------------------------------------------------
# Payment schedules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScheduledPayment:
    payment_number: int
    due_date: date
    amount: Decimal
    principal: Decimal
    interest: Decimal


@dataclass(frozen=True)
class PaymentScheduleRecord:
    loan_id: str
    schedule_type: str  # amortized | interest_only
    payment_frequency: str  # monthly | quarterly | maturity
    payments: tuple[ScheduledPayment, ...]

    @property
    def total_amount(self) -> Decimal:
        return sum((p.amount for p in self.payments), Decimal(0))


class PaymentScheduleService(Protocol):
    async def create_schedule(self, schedule: PaymentScheduleRecord) -> str:
        """Persist *schedule* and its payment rows; return the schedule id."""
        ...


class RecordingPaymentScheduleService:
    def __init__(self) -> None:
        self.schedules: dict[str, PaymentScheduleRecord] = {}

    async def create_schedule(self, schedule: PaymentScheduleRecord) -> str:
        schedule_id = new_id()
        self.schedules[schedule_id] = schedule
        return schedule_id

    def for_loan(self, loan_id: str) -> list[PaymentScheduleRecord]:
        return [s for s in self.schedules.values() if s.loan_id == loan_id]
