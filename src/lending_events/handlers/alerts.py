"""Alert handlers: turn domain events into alert requests.

Two kinds:

*  Pass-through alerts (payment late/failed, draw decisions, inspections,
   delinquency) forward the event payload unchanged, at priority 5.
*  Fund alerts decode their payload with the typed models and send a
   reshaped payload, at priority 100.
"""

from __future__ import annotations

from typing import Any, ClassVar

from lending_events.domain.events import DomainEvent, EventTypes
from lending_events.domain.payloads import (
    CommitmentActivatedPayload,
    DistributionPostedPayload,
    EventPayload,
    FundCreatedPayload,
    InvestorCreatedPayload,
    decode_payload,
)

from .services import AlertRequest, AlertService


class PassThroughAlertHandler:
    """Forwards one event type to the alert service as-is."""

    PRIORITY: ClassVar[int] = 5

    def __init__(self, handler_name: str, event_type: str, alerts: AlertService) -> None:
        self.handler_name = handler_name
        self.event_type = event_type
        self._alerts = alerts

    async def __call__(self, event: DomainEvent) -> None:
        await self._alerts.handle_event(AlertRequest(
            source_event_id=event.event_id,
            event_type=self.event_type,
            aggregate_type=event.aggregate_type,
            aggregate_id=event.aggregate_id,
            payload=dict(event.payload),
            metadata=event.metadata,
        ))


PASS_THROUGH_ALERTS: tuple[tuple[str, str], ...] = (
    ("PaymentLateAlertHandler", EventTypes.PAYMENT_LATE),
    ("PaymentFailedAlertHandler", EventTypes.PAYMENT_FAILED),
    ("DrawStatusChangedAlertHandler", EventTypes.DRAW_STATUS_CHANGED),
    ("DrawApprovedAlertHandler", EventTypes.DRAW_APPROVED),
    ("DrawRejectedAlertHandler", EventTypes.DRAW_REJECTED),
    ("InspectionDueAlertHandler", EventTypes.INSPECTION_DUE),
    ("InspectionOverdueAlertHandler", EventTypes.INSPECTION_OVERDUE),
    ("LoanDelinquentAlertHandler", EventTypes.LOAN_DELINQUENT),
)


class FundAlertHandler:
    """Base for fund-domain alerts built from a decoded payload."""

    HANDLER_NAME: ClassVar[str]
    EVENT_TYPE: ClassVar[str]
    ALERT_AGGREGATE_TYPE: ClassVar[str]
    PAYLOAD_MODEL: ClassVar[type[EventPayload]]
    PRIORITY: ClassVar[int] = 100

    def __init__(self, alerts: AlertService) -> None:
        self._alerts = alerts

    async def __call__(self, event: DomainEvent) -> None:
        payload = decode_payload(event, self.PAYLOAD_MODEL)
        await self._alerts.handle_event(AlertRequest(
            source_event_id=event.event_id,
            event_type=self.EVENT_TYPE,
            aggregate_type=self.ALERT_AGGREGATE_TYPE,
            aggregate_id=event.aggregate_id,
            payload=self.build_payload(event, payload),
            metadata=event.metadata,
        ))

    def build_payload(self, event: DomainEvent, payload: Any) -> dict[str, Any]:
        raise NotImplementedError


class CommitmentActivatedAlertHandler(FundAlertHandler):
    HANDLER_NAME = "CommitmentActivatedAlertHandler"
    EVENT_TYPE = EventTypes.COMMITMENT_ACTIVATED
    ALERT_AGGREGATE_TYPE = "Commitment"
    PAYLOAD_MODEL = CommitmentActivatedPayload

    def build_payload(
        self, event: DomainEvent, payload: CommitmentActivatedPayload,
    ) -> dict[str, Any]:
        return {
            "commitmentId": event.aggregate_id,
            "fundId": payload.fund_id,
            "investorId": payload.investor_id,
            "amount": str(payload.amount) if payload.amount is not None else None,
            "activatedAt": event.occurred_at.isoformat(),
        }


class DistributionPostedAlertHandler(FundAlertHandler):
    HANDLER_NAME = "DistributionPostedAlertHandler"
    EVENT_TYPE = EventTypes.DISTRIBUTION_POSTED
    ALERT_AGGREGATE_TYPE = "CapitalEvent"
    PAYLOAD_MODEL = DistributionPostedPayload

    def build_payload(
        self, event: DomainEvent, payload: DistributionPostedPayload,
    ) -> dict[str, Any]:
        return {
            "distributionId": event.aggregate_id,
            "accountId": payload.account_id,
            "fundId": payload.fund_id,
            "investorId": payload.investor_id,
            "amount": str(payload.amount) if payload.amount is not None else None,
            "effectiveDate": (
                payload.effective_date.isoformat() if payload.effective_date else None
            ),
        }


class FundCreatedAlertHandler(FundAlertHandler):
    HANDLER_NAME = "FundCreatedAlertHandler"
    EVENT_TYPE = EventTypes.FUND_CREATED
    ALERT_AGGREGATE_TYPE = "Fund"
    PAYLOAD_MODEL = FundCreatedPayload

    def build_payload(
        self, event: DomainEvent, payload: FundCreatedPayload,
    ) -> dict[str, Any]:
        return {
            "fundId": event.aggregate_id,
            "name": payload.name,
            "status": (payload.model_extra or {}).get("status"),
            "inceptionDate": (
                payload.inception_date.isoformat() if payload.inception_date else None
            ),
            "targetSize": (
                str(payload.total_capacity) if payload.total_capacity is not None
                else (payload.model_extra or {}).get("targetSize")
            ),
        }


class InvestorCreatedAlertHandler(FundAlertHandler):
    HANDLER_NAME = "InvestorCreatedAlertHandler"
    EVENT_TYPE = EventTypes.INVESTOR_CREATED
    ALERT_AGGREGATE_TYPE = "Investor"
    PAYLOAD_MODEL = InvestorCreatedPayload

    def build_payload(
        self, event: DomainEvent, payload: InvestorCreatedPayload,
    ) -> dict[str, Any]:
        return {
            "investorId": event.aggregate_id,
            "fundId": payload.fund_id,
            "name": payload.name,
            "email": payload.email,
            "accreditationStatus": payload.accreditation_status,
        }


FUND_ALERT_HANDLERS: tuple[type[FundAlertHandler], ...] = (
    CommitmentActivatedAlertHandler,
    DistributionPostedAlertHandler,
    FundCreatedAlertHandler,
    InvestorCreatedAlertHandler,
)
