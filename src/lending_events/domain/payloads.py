"""Typed payload models keyed by event type.

The bus stores payloads as plain JSON objects and never validates them on
publish.  Handlers that want structure decode explicitly::

    @typed_handler(FundCreatedPayload)
    async def on_fund_created(event: DomainEvent, payload: FundCreatedPayload) -> None:
        ...

Wire keys are camelCase (``totalCapacity``); model attributes are
snake_case.  Both spellings are accepted on input.  Unknown keys are kept
so that a newer ``event_version`` never breaks an older consumer.
"""

from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable
from datetime import date, datetime
from decimal import Decimal
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from lending_events.core.errors import PayloadDecodeError, UnknownEventTypeError

from .events import DomainEvent, EventTypes

P = TypeVar("P", bound=BaseModel)


class EventPayload(BaseModel):
    """Base for all payload models."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


# =========================================================================
# Loan
# =========================================================================

class LoanCreatedPayload(EventPayload):
    loan_id: str | None = None
    organization_id: str | None = None
    borrower_id: str | None = None
    lender_id: str | None = None
    principal: Decimal
    rate: Decimal
    term_months: int
    loan_category: str | None = None
    created_by: str | None = None


class LoanFundedPayload(EventPayload):
    loan_id: str | None = None
    organization_id: str | None = None
    principal: Decimal
    rate: Decimal
    term_months: int
    payment_type: str
    payment_frequency: str
    funded_date: date | datetime
    maturity_date: date | datetime | None = None
    funded_by: str | None = None


class LoanStatusChangedPayload(EventPayload):
    loan_id: str | None = None
    organization_id: str | None = None
    previous_status: str
    new_status: str
    changed_by: str | None = None
    reason: str | None = None


# =========================================================================
# Payment
# =========================================================================

class PaymentScheduleCreatedPayload(EventPayload):
    schedule_id: str
    loan_id: str
    organization_id: str | None = None
    number_of_payments: int
    start_date: date | datetime
    frequency: str
    created_by: str | None = None


class PaymentScheduledPayload(EventPayload):
    payment_id: str
    schedule_id: str
    loan_id: str
    organization_id: str | None = None
    amount: Decimal
    due_date: date | datetime
    payment_number: int


class PaymentProcessedPayload(EventPayload):
    payment_id: str
    loan_id: str
    organization_id: str | None = None
    amount: Decimal
    processed_date: date | datetime
    payment_method: str | None = None
    transaction_id: str | None = None
    processed_by: str | None = None


# =========================================================================
# Draw
# =========================================================================

class DrawRequestedPayload(EventPayload):
    draw_id: str
    loan_id: str
    organization_id: str | None = None
    amount: Decimal
    requested_date: date | datetime
    requested_by: str | None = None
    notes: str | None = None


class DrawApprovedPayload(EventPayload):
    draw_id: str
    loan_id: str
    organization_id: str | None = None
    amount: Decimal
    approved_date: date | datetime
    approved_by: str | None = None
    notes: str | None = None


class DrawDisbursedPayload(EventPayload):
    draw_id: str
    loan_id: str
    organization_id: str | None = None
    amount: Decimal
    disbursed_date: date | datetime
    disbursed_by: str | None = None
    transaction_id: str | None = None


# =========================================================================
# Compliance
# =========================================================================

class DocumentGeneratedPayload(EventPayload):
    document_id: str
    loan_id: str
    organization_id: str | None = None
    document_type: str
    document_url: str
    generated_date: date | datetime


class DocumentCompletedPayload(EventPayload):
    signature_id: str
    document_type: str
    organization_id: str | None = None
    loan_id: str | None = None
    fund_id: str | None = None


# =========================================================================
# KYC
# =========================================================================

class KYCVerificationPayload(EventPayload):
    """Shared by KYC.Approved, KYC.Rejected and KYC.RequiresReview."""

    verification_id: str
    borrower_id: str
    organization_id: str | None = None
    reason: str | None = None


class BorrowerKYCApprovedPayload(EventPayload):
    borrower_id: str
    verification_id: str
    organization_id: str | None = None
    approved_at: datetime


# =========================================================================
# Fund
# =========================================================================

class FundCreatedPayload(EventPayload):
    fund_id: str | None = None
    organization_id: str | None = None
    name: str
    fund_type: str | None = None
    total_capacity: Decimal | None = None
    inception_date: date | datetime | None = None
    created_by: str | None = None


class FundUpdatedPayload(EventPayload):
    fund_id: str | None = None
    organization_id: str | None = None
    changes: dict[str, Any]
    updated_by: str | None = None


class FundClosedPayload(EventPayload):
    fund_id: str | None = None
    organization_id: str | None = None
    closing_date: date | datetime
    closed_by: str | None = None


class CommitmentAddedPayload(EventPayload):
    commitment_id: str
    fund_id: str
    lender_id: str
    organization_id: str | None = None
    committed_amount: Decimal
    commitment_date: date | datetime


class CommitmentCancelledPayload(EventPayload):
    commitment_id: str
    fund_id: str
    lender_id: str
    organization_id: str | None = None
    cancelled_by: str | None = None
    reason: str | None = None


class CapitalCalledPayload(EventPayload):
    call_id: str
    fund_id: str
    organization_id: str | None = None
    call_number: int
    call_amount: Decimal
    due_date: date | datetime
    purpose: str | None = None


class CapitalReceivedPayload(EventPayload):
    call_id: str
    fund_id: str
    lender_id: str
    organization_id: str | None = None
    amount: Decimal
    received_date: date | datetime


class CapitalAllocatedPayload(EventPayload):
    allocation_id: str
    fund_id: str
    loan_id: str
    organization_id: str | None = None
    amount: Decimal
    allocated_date: date | datetime


class CapitalReturnedPayload(EventPayload):
    allocation_id: str
    fund_id: str
    loan_id: str
    organization_id: str | None = None
    amount: Decimal
    returned_date: date | datetime


class DistributionMadePayload(EventPayload):
    distribution_id: str
    fund_id: str
    organization_id: str | None = None
    total_amount: Decimal
    distribution_type: str
    distribution_date: date | datetime


class CommitmentActivatedPayload(EventPayload):
    fund_id: str | None = None
    investor_id: str | None = None
    amount: Decimal | None = None


class DistributionPostedPayload(EventPayload):
    account_id: str | None = None
    fund_id: str | None = None
    investor_id: str | None = None
    amount: Decimal | None = None
    effective_date: date | datetime | None = None


class InvestorCreatedPayload(EventPayload):
    fund_id: str | None = None
    name: str | None = None
    email: str | None = None
    accreditation_status: str | None = None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

PAYLOAD_MODELS: dict[str, type[EventPayload]] = {
    EventTypes.LOAN_CREATED: LoanCreatedPayload,
    EventTypes.LOAN_FUNDED: LoanFundedPayload,
    EventTypes.LOAN_STATUS_CHANGED: LoanStatusChangedPayload,
    EventTypes.PAYMENT_SCHEDULE_CREATED: PaymentScheduleCreatedPayload,
    EventTypes.PAYMENT_SCHEDULED: PaymentScheduledPayload,
    EventTypes.PAYMENT_PROCESSED: PaymentProcessedPayload,
    EventTypes.DRAW_REQUESTED: DrawRequestedPayload,
    EventTypes.DRAW_APPROVED: DrawApprovedPayload,
    EventTypes.DRAW_DISBURSED: DrawDisbursedPayload,
    EventTypes.DOCUMENT_GENERATED: DocumentGeneratedPayload,
    EventTypes.DOCUMENT_COMPLETED: DocumentCompletedPayload,
    EventTypes.KYC_APPROVED: KYCVerificationPayload,
    EventTypes.KYC_REJECTED: KYCVerificationPayload,
    EventTypes.KYC_REQUIRES_REVIEW: KYCVerificationPayload,
    EventTypes.BORROWER_KYC_APPROVED: BorrowerKYCApprovedPayload,
    EventTypes.FUND_CREATED: FundCreatedPayload,
    EventTypes.FUND_UPDATED: FundUpdatedPayload,
    EventTypes.FUND_CLOSED: FundClosedPayload,
    EventTypes.COMMITMENT_ADDED: CommitmentAddedPayload,
    EventTypes.COMMITMENT_CANCELLED: CommitmentCancelledPayload,
    EventTypes.CAPITAL_CALLED: CapitalCalledPayload,
    EventTypes.CAPITAL_RECEIVED: CapitalReceivedPayload,
    EventTypes.CAPITAL_ALLOCATED: CapitalAllocatedPayload,
    EventTypes.CAPITAL_RETURNED: CapitalReturnedPayload,
    EventTypes.DISTRIBUTION_MADE: DistributionMadePayload,
    EventTypes.COMMITMENT_ACTIVATED: CommitmentActivatedPayload,
    EventTypes.DISTRIBUTION_POSTED: DistributionPostedPayload,
    EventTypes.INVESTOR_CREATED: InvestorCreatedPayload,
}


def register_payload_model(event_type: str, model: type[EventPayload]) -> None:
    """Add or replace the payload model for *event_type*."""
    PAYLOAD_MODELS[event_type] = model


def decode_payload(event: DomainEvent, model: type[P] | None = None) -> P:
    """Validate ``event.payload`` against *model* or the registered model.

    Raises
    ------
    UnknownEventTypeError
        If no *model* is given and none is registered for the event type.
    PayloadDecodeError
        If the payload does not validate.
    """
    cls: type[Any] | None = model or PAYLOAD_MODELS.get(event.event_type)
    if cls is None:
        raise UnknownEventTypeError(
            f"No payload model registered for {event.event_type!r}"
        )
    try:
        return cls.model_validate(event.payload)
    except ValidationError as exc:
        raise PayloadDecodeError(
            f"{event.event_type} v{event.event_version} payload "
            f"(event {event.event_id}) is invalid: {exc}"
        ) from exc


def typed_handler(
    model: type[P],
) -> Callable[
    [Callable[[DomainEvent, P], Awaitable[None]]],
    Callable[[DomainEvent], Awaitable[None]],
]:
    """Adapt ``async fn(event, payload)`` into a plain bus handler.

    A decode failure raises inside the handler, so the bus records it as a
    handler failure like any other exception.
    """

    def decorator(
        fn: Callable[[DomainEvent, P], Awaitable[None]],
    ) -> Callable[[DomainEvent], Awaitable[None]]:
        @functools.wraps(fn)
        async def wrapper(event: DomainEvent) -> None:
            payload = decode_payload(event, model)
            await fn(event, payload)

        return wrapper

    return decorator
