"""Compliance reactions: signature envelopes and audit trail entries.

Missing parties are logged and the event is left alone; the handler still
counts as a success because there is nothing to retry.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from lending_events.domain.events import DomainEvent, EventTypes
from lending_events.domain.payloads import DocumentCompletedPayload, decode_payload

from .services import (
    AuditLogEntry,
    ComplianceService,
    Party,
    PartyDirectory,
    SignatureEnvelopeRequest,
    Signer,
)

logger = logging.getLogger(__name__)

FUND_DOCUMENT_TYPES = frozenset({"ppm", "subscription_agreement"})


def _signer(party: Party, role: str, order: int) -> Signer:
    return Signer(email=party.email, name=party.name or party.email, role=role, order=order)


class ComplianceLoanCreatedHandler:
    """Sends the loan agreement out for borrower (and lender) signature."""

    HANDLER_NAME: ClassVar[str] = "ComplianceLoanCreatedHandler"
    EVENT_TYPE: ClassVar[str] = EventTypes.LOAN_CREATED
    PRIORITY: ClassVar[int] = 5

    def __init__(self, compliance: ComplianceService, parties: PartyDirectory) -> None:
        self._compliance = compliance
        self._parties = parties

    async def __call__(self, event: DomainEvent) -> None:
        loan_id = event.payload.get("loanId") or event.aggregate_id
        borrower_id = event.payload.get("borrowerId")
        lender_id = event.payload.get("lenderId")

        borrower = await self._parties.get_borrower(borrower_id) if borrower_id else None
        if borrower is None:
            logger.error("Borrower %s not found for loan %s", borrower_id, loan_id)
            return

        signers = [_signer(borrower, "borrower", 1)]
        lender = await self._parties.get_lender(lender_id) if lender_id else None
        if lender is not None:
            signers.append(_signer(lender, "lender", 2))

        await self._compliance.create_signature_envelope(SignatureEnvelopeRequest(
            document_type="loan_agreement",
            document_id=loan_id,
            signers=tuple(signers),
            organization_id=event.payload.get("organizationId"),
            loan_id=loan_id,
        ))
        logger.info("Loan agreement envelope created for loan %s", loan_id)


class ComplianceInvestorCreatedHandler:
    """Sends the PPM and subscription agreement to a new investor."""

    HANDLER_NAME: ClassVar[str] = "ComplianceInvestorCreatedHandler"
    EVENT_TYPE: ClassVar[str] = EventTypes.INVESTOR_CREATED
    PRIORITY: ClassVar[int] = 5

    def __init__(self, compliance: ComplianceService, parties: PartyDirectory) -> None:
        self._compliance = compliance
        self._parties = parties

    async def __call__(self, event: DomainEvent) -> None:
        investor_id = event.payload.get("investorId") or event.aggregate_id
        fund_id = event.payload.get("fundId")
        if not fund_id:
            logger.error("Investor %s created without a fund id", investor_id)
            return

        investor = await self._parties.get_investor(investor_id)
        if investor is None:
            logger.error("Investor %s not found", investor_id)
            return

        signers = (_signer(investor, "investor", 1),)
        for document_type in ("ppm", "subscription_agreement"):
            await self._compliance.create_signature_envelope(SignatureEnvelopeRequest(
                document_type=document_type,
                document_id=fund_id,
                signers=signers,
                organization_id=event.payload.get("organizationId"),
                fund_id=fund_id,
            ))


class ComplianceDocumentCompletedHandler:
    """Moves the loan or fund workflow on once a document is fully signed."""

    HANDLER_NAME: ClassVar[str] = "ComplianceDocumentCompletedHandler"
    EVENT_TYPE: ClassVar[str] = EventTypes.DOCUMENT_COMPLETED
    PRIORITY: ClassVar[int] = 5

    def __init__(self, compliance: ComplianceService) -> None:
        self._compliance = compliance

    async def __call__(self, event: DomainEvent) -> None:
        payload = decode_payload(event, DocumentCompletedPayload)
        if payload.document_type == "loan_agreement" and payload.loan_id:
            await self._compliance.mark_document_completed(
                payload.document_type, payload.loan_id, None,
            )
        elif payload.document_type in FUND_DOCUMENT_TYPES and payload.fund_id:
            await self._compliance.mark_document_completed(
                payload.document_type, None, payload.fund_id,
            )
        else:
            logger.debug(
                "Document %s (%s) completed; nothing to update",
                payload.signature_id, payload.document_type,
            )


class AuditHandler:
    """Base for audit trail handlers.  Subclasses pick the entity and changes."""

    HANDLER_NAME: ClassVar[str]
    EVENT_TYPE: ClassVar[str]
    ENTITY_TYPE: ClassVar[str]
    ENTITY_KEY: ClassVar[str]
    ACTION: ClassVar[str]
    USER_KEY: ClassVar[str]
    PRIORITY: ClassVar[int] = 10

    def __init__(self, compliance: ComplianceService) -> None:
        self._compliance = compliance

    async def __call__(self, event: DomainEvent) -> None:
        entity_id = event.payload.get(self.ENTITY_KEY) or event.aggregate_id
        await self._compliance.create_audit_log(AuditLogEntry(
            event_type=self.EVENT_TYPE,
            entity_type=self.ENTITY_TYPE,
            entity_id=entity_id,
            action=self.ACTION,
            organization_id=event.payload.get("organizationId"),
            user_id=event.payload.get(self.USER_KEY),
            changes=self.changes(event),
        ))

    def changes(self, event: DomainEvent) -> dict[str, Any]:
        raise NotImplementedError


class ComplianceLoanFundedAuditHandler(AuditHandler):
    HANDLER_NAME = "ComplianceLoanFundedAuditHandler"
    EVENT_TYPE = EventTypes.LOAN_FUNDED
    ENTITY_TYPE = "loan"
    ENTITY_KEY = "loanId"
    ACTION = "funded"
    USER_KEY = "fundedBy"

    def changes(self, event: DomainEvent) -> dict[str, Any]:
        return {
            "principal": event.payload.get("principal"),
            "fundedAt": event.occurred_at.isoformat(),
        }


class CompliancePaymentReceivedAuditHandler(AuditHandler):
    HANDLER_NAME = "CompliancePaymentReceivedAuditHandler"
    EVENT_TYPE = EventTypes.PAYMENT_PROCESSED
    ENTITY_TYPE = "payment"
    ENTITY_KEY = "paymentId"
    ACTION = "processed"
    USER_KEY = "processedBy"

    def changes(self, event: DomainEvent) -> dict[str, Any]:
        return {
            "loanId": event.payload.get("loanId"),
            "amount": event.payload.get("amount"),
            "processedAt": event.occurred_at.isoformat(),
        }
