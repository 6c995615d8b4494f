"""Reference handlers and their bootstrap wiring.

Call :func:`register_event_handlers` once at startup, after the bus is
started.  Handler callables do not survive a restart; the registry table
only remembers their metadata and statistics.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from lending_events.infrastructure.event_bus import (
    EventBus,
    EventHandler,
    HandlerRegistration,
)

from .alerts import (
    FUND_ALERT_HANDLERS,
    PASS_THROUGH_ALERTS,
    CommitmentActivatedAlertHandler,
    DistributionPostedAlertHandler,
    FundCreatedAlertHandler,
    InvestorCreatedAlertHandler,
    PassThroughAlertHandler,
)
from .compliance import (
    ComplianceDocumentCompletedHandler,
    ComplianceInvestorCreatedHandler,
    ComplianceLoanCreatedHandler,
    ComplianceLoanFundedAuditHandler,
    CompliancePaymentReceivedAuditHandler,
)
from .fund_analytics import FundAnalyticsHandler
from .kyc import (
    KYC_REVIEW_HANDLERS,
    KYCApprovedHandler,
    KYCReviewHandler,
    LoanCreatedKYCCheckHandler,
)
from .payment_schedule import PaymentScheduleCreator, calculate_payment_schedule
from .services import (
    AlertRequest,
    AlertService,
    AnalyticsService,
    ComplianceService,
    InMemoryPartyDirectory,
    Party,
    PartyDirectory,
    PaymentScheduleService,
    RecordingAlertService,
    RecordingAnalyticsService,
    RecordingComplianceService,
    RecordingPaymentScheduleService,
)

logger = logging.getLogger(__name__)

__all__ = [
    "AlertRequest",
    "AlertService",
    "AnalyticsService",
    "CommitmentActivatedAlertHandler",
    "ComplianceDocumentCompletedHandler",
    "ComplianceInvestorCreatedHandler",
    "ComplianceLoanCreatedHandler",
    "ComplianceLoanFundedAuditHandler",
    "CompliancePaymentReceivedAuditHandler",
    "ComplianceService",
    "DistributionPostedAlertHandler",
    "FundAnalyticsHandler",
    "FundCreatedAlertHandler",
    "InMemoryPartyDirectory",
    "InvestorCreatedAlertHandler",
    "KYCApprovedHandler",
    "KYCReviewHandler",
    "LoanCreatedKYCCheckHandler",
    "Party",
    "PartyDirectory",
    "PassThroughAlertHandler",
    "PaymentScheduleCreator",
    "PaymentScheduleService",
    "RecordingAlertService",
    "RecordingAnalyticsService",
    "RecordingComplianceService",
    "RecordingPaymentScheduleService",
    "calculate_payment_schedule",
    "handler_names",
    "register_event_handlers",
    "unregister_event_handlers",
]

_COMPLIANCE_HANDLERS = (
    ComplianceLoanCreatedHandler,
    ComplianceInvestorCreatedHandler,
)
_AUDIT_HANDLERS = (
    ComplianceLoanFundedAuditHandler,
    CompliancePaymentReceivedAuditHandler,
)


def handler_names() -> list[str]:
    """Every handler name :func:`register_event_handlers` subscribes."""
    names = [PaymentScheduleCreator.HANDLER_NAME]
    names.extend(name for name, _ in PASS_THROUGH_ALERTS)
    names.append(FundAnalyticsHandler.HANDLER_NAME)
    names.extend(cls.HANDLER_NAME for cls in FUND_ALERT_HANDLERS)
    names.extend(cls.HANDLER_NAME for cls in _COMPLIANCE_HANDLERS)
    names.append(ComplianceDocumentCompletedHandler.HANDLER_NAME)
    names.append(KYCApprovedHandler.HANDLER_NAME)
    names.extend(name for name, _, _ in KYC_REVIEW_HANDLERS)
    names.append(LoanCreatedKYCCheckHandler.HANDLER_NAME)
    names.extend(cls.HANDLER_NAME for cls in _AUDIT_HANDLERS)
    return names


async def register_event_handlers(
    bus: EventBus,
    alerts: AlertService,
    analytics: AnalyticsService,
    *,
    compliance: ComplianceService | None = None,
    schedules: PaymentScheduleService | None = None,
    parties: PartyDirectory | None = None,
    enabled: Mapping[str, bool] | None = None,
) -> int:
    """Subscribe all reference handlers.  Returns the registration count.

    Collaborators left as ``None`` get the in-memory implementations.
    *enabled* overrides ``is_enabled`` by handler name; pass the persisted
    registry state so that re-registering does not switch a disabled
    handler back on.
    """
    compliance = compliance or RecordingComplianceService()
    schedules = schedules or RecordingPaymentScheduleService()
    parties = parties or InMemoryPartyDirectory()

    registrations: list[HandlerRegistration] = []

    def add(name: str, event_type: str, handler: EventHandler, priority: int) -> None:
        registrations.append(HandlerRegistration(
            handler_name=name,
            event_type=event_type,
            handler=handler,
            priority=priority,
        ))

    add(
        PaymentScheduleCreator.HANDLER_NAME,
        PaymentScheduleCreator.EVENT_TYPE,
        PaymentScheduleCreator(schedules),
        PaymentScheduleCreator.PRIORITY,
    )

    for name, event_type in PASS_THROUGH_ALERTS:
        add(
            name, event_type,
            PassThroughAlertHandler(name, event_type, alerts),
            PassThroughAlertHandler.PRIORITY,
        )

    fund_analytics = FundAnalyticsHandler(analytics)
    for event_type in FundAnalyticsHandler.EVENT_TYPES:
        add(
            FundAnalyticsHandler.HANDLER_NAME, event_type,
            fund_analytics, FundAnalyticsHandler.PRIORITY,
        )

    for cls in FUND_ALERT_HANDLERS:
        add(cls.HANDLER_NAME, cls.EVENT_TYPE, cls(alerts), cls.PRIORITY)

    for cls in _COMPLIANCE_HANDLERS:
        add(cls.HANDLER_NAME, cls.EVENT_TYPE, cls(compliance, parties), cls.PRIORITY)
    add(
        ComplianceDocumentCompletedHandler.HANDLER_NAME,
        ComplianceDocumentCompletedHandler.EVENT_TYPE,
        ComplianceDocumentCompletedHandler(compliance),
        ComplianceDocumentCompletedHandler.PRIORITY,
    )

    add(
        KYCApprovedHandler.HANDLER_NAME,
        KYCApprovedHandler.EVENT_TYPE,
        KYCApprovedHandler(bus),
        KYCApprovedHandler.PRIORITY,
    )
    for name, event_type, reason in KYC_REVIEW_HANDLERS:
        add(
            name, event_type,
            KYCReviewHandler(name, event_type, reason, compliance),
            KYCReviewHandler.PRIORITY,
        )
    add(
        LoanCreatedKYCCheckHandler.HANDLER_NAME,
        LoanCreatedKYCCheckHandler.EVENT_TYPE,
        LoanCreatedKYCCheckHandler(parties, compliance),
        LoanCreatedKYCCheckHandler.PRIORITY,
    )

    for cls in _AUDIT_HANDLERS:
        add(cls.HANDLER_NAME, cls.EVENT_TYPE, cls(compliance), cls.PRIORITY)

    if enabled:
        for registration in registrations:
            registration.is_enabled = enabled.get(registration.handler_name, True)

    for registration in registrations:
        await bus.subscribe(registration)

    logger.info("Registered %d event handler subscriptions", len(registrations))
    return len(registrations)


async def unregister_event_handlers(bus: EventBus) -> None:
    """Unsubscribe every reference handler (rows stay, disabled)."""
    for name in handler_names():
        await bus.unsubscribe(name)
