"""KYC reactions.

``KYC.Approved`` is re-published on the borrower aggregate as
``Borrower.KYCApproved``.  Rejections and manual-review results open a
compliance review.  ``Loan.Created`` runs a KYC check first (priority 1)
and opens a review when the borrower is not approved; it does not block
the loan.
"""

from __future__ import annotations

import logging
from typing import ClassVar

from lending_events.domain.events import DomainEvent, EventDraft, EventTypes
from lending_events.domain.payloads import (
    BorrowerKYCApprovedPayload,
    KYCVerificationPayload,
    decode_payload,
)
from lending_events.infrastructure.event_bus import EventBus

from .services import ComplianceReview, ComplianceService, PartyDirectory

logger = logging.getLogger(__name__)


class KYCApprovedHandler:
    HANDLER_NAME: ClassVar[str] = "KYCApprovedHandler"
    EVENT_TYPE: ClassVar[str] = EventTypes.KYC_APPROVED
    PRIORITY: ClassVar[int] = 5

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus

    async def __call__(self, event: DomainEvent) -> None:
        payload = decode_payload(event, KYCVerificationPayload)
        await self._bus.publish(EventDraft(
            event_type=EventTypes.BORROWER_KYC_APPROVED,
            aggregate_id=payload.borrower_id,
            aggregate_type="Borrower",
            payload=BorrowerKYCApprovedPayload(
                borrower_id=payload.borrower_id,
                verification_id=payload.verification_id,
                organization_id=payload.organization_id,
                approved_at=event.occurred_at,
            ),
            metadata=event.metadata,
            causation_id=event.event_id,
            correlation_id=event.correlation_id,
        ))


class KYCReviewHandler:
    """Opens a compliance review for a KYC outcome that needs a human."""

    PRIORITY: ClassVar[int] = 5

    def __init__(
        self,
        handler_name: str,
        event_type: str,
        reason: str,
        compliance: ComplianceService,
    ) -> None:
        self.handler_name = handler_name
        self.event_type = event_type
        self.reason = reason
        self._compliance = compliance

    async def __call__(self, event: DomainEvent) -> None:
        payload = decode_payload(event, KYCVerificationPayload)
        details = {"verificationId": payload.verification_id}
        if payload.reason:
            details["reason"] = payload.reason
        await self._compliance.request_review(ComplianceReview(
            reason=self.reason,
            borrower_id=payload.borrower_id,
            source_event_id=event.event_id,
            organization_id=payload.organization_id,
            details=details,
        ))


KYC_REVIEW_HANDLERS: tuple[tuple[str, str, str], ...] = (
    ("KYCRejectedHandler", EventTypes.KYC_REJECTED, "kyc_rejected"),
    ("KYCRequiresReviewHandler", EventTypes.KYC_REQUIRES_REVIEW, "kyc_requires_review"),
)


class LoanCreatedKYCCheckHandler:
    """Checks the borrower's KYC status before other Loan.Created handlers."""

    HANDLER_NAME: ClassVar[str] = "LoanCreatedKYCCheckHandler"
    EVENT_TYPE: ClassVar[str] = EventTypes.LOAN_CREATED
    PRIORITY: ClassVar[int] = 1

    def __init__(self, parties: PartyDirectory, compliance: ComplianceService) -> None:
        self._parties = parties
        self._compliance = compliance

    async def __call__(self, event: DomainEvent) -> None:
        loan_id = event.payload.get("loanId") or event.aggregate_id
        borrower_id = event.payload.get("borrowerId")
        if not borrower_id:
            logger.info("No borrower on loan %s, skipping KYC check", loan_id)
            return

        borrower = await self._parties.get_borrower(borrower_id)
        if borrower is None:
            logger.error("Borrower %s not found for loan %s", borrower_id, loan_id)
            return

        if borrower.kyc_status == "approved":
            logger.info("Borrower %s KYC approved, loan %s can proceed", borrower_id, loan_id)
            return

        logger.warning(
            "Loan %s created but borrower %s KYC status is %s",
            loan_id, borrower_id, borrower.kyc_status,
        )
        await self._compliance.request_review(ComplianceReview(
            reason="kyc_not_approved",
            borrower_id=borrower_id,
            source_event_id=event.event_id,
            organization_id=event.payload.get("organizationId"),
            details={"loanId": loan_id, "kycStatus": borrower.kyc_status},
        ))
