"""Tests for the reference handlers and their bootstrap registration."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from lending_events.core.enums import ExecutionStatus
from lending_events.domain.events import DomainEvent, EventDraft, EventTypes
from lending_events.handlers import (
    FundAnalyticsHandler,
    InMemoryPartyDirectory,
    Party,
    RecordingAlertService,
    RecordingAnalyticsService,
    RecordingComplianceService,
    RecordingPaymentScheduleService,
    calculate_payment_schedule,
    handler_names,
    register_event_handlers,
    unregister_event_handlers,
)
from lending_events.handlers.alerts import PASS_THROUGH_ALERTS
from lending_events.handlers.payment_schedule import add_months


@pytest.fixture
def alerts() -> RecordingAlertService:
    return RecordingAlertService()


@pytest.fixture
def analytics() -> RecordingAnalyticsService:
    return RecordingAnalyticsService()


@pytest.fixture
def compliance() -> RecordingComplianceService:
    return RecordingComplianceService()


@pytest.fixture
def schedules() -> RecordingPaymentScheduleService:
    return RecordingPaymentScheduleService()


@pytest.fixture
def parties() -> InMemoryPartyDirectory:
    directory = InMemoryPartyDirectory()
    directory.borrowers["b-1"] = Party("b-1", "bo@example.com", "Bo Rower", kyc_status="approved")
    directory.borrowers["b-2"] = Party("b-2", "pending@example.com", "", kyc_status="pending")
    directory.lenders["len-1"] = Party("len-1", "lender@example.com", "First Lender")
    directory.investors["inv-1"] = Party("inv-1", "ada@example.com", "Ada")
    return directory


@pytest.fixture
async def wired_bus(bus, alerts, analytics, compliance, schedules, parties):
    await register_event_handlers(
        bus, alerts, analytics,
        compliance=compliance, schedules=schedules, parties=parties,
    )
    return bus


async def _handler_order(bus, event_id: str) -> list[str]:
    names = {r.handler_id: r.handler_name for r in await bus.get_handler_stats()}
    return [names[e.handler_id] for e in await bus.get_processing_log(event_id)]


class TestRegistration:
    async def test_registers_every_handler(self, bus, alerts, analytics):
        count = await register_event_handlers(bus, alerts, analytics)
        # FundAnalyticsHandler listens to four event types; every other
        # handler to exactly one.
        assert count == 26
        assert len(bus.get_registrations()) == 26

        rows = await bus.get_handler_stats()
        assert sorted(r.handler_name for r in rows) == sorted(handler_names())
        assert len(rows) == 23

    async def test_priorities(self, wired_bus):
        rows = {r.handler_name: r for r in await wired_bus.get_handler_stats()}
        assert rows["LoanCreatedKYCCheckHandler"].priority == 1
        assert rows["PaymentLateAlertHandler"].priority == 5
        assert rows["ComplianceLoanCreatedHandler"].priority == 5
        assert rows["KYCApprovedHandler"].priority == 5
        assert rows["PaymentScheduleCreator"].priority == 10
        assert rows["CompliancePaymentReceivedAuditHandler"].priority == 10
        assert rows["FundAnalyticsHandler"].priority == 50
        assert rows["FundCreatedAlertHandler"].priority == 100

    async def test_enabled_overrides_keep_handlers_off(self, bus, alerts, analytics):
        await register_event_handlers(
            bus, alerts, analytics, enabled={"FundCreatedAlertHandler": False},
        )
        [row] = await bus.get_handler_stats("FundCreatedAlertHandler")
        assert row.is_enabled is False

        await bus.publish(EventDraft(
            event_type=EventTypes.FUND_CREATED,
            aggregate_type="Fund",
            aggregate_id="fund-1",
            payload={"name": "Growth I"},
        ))
        assert alerts.alerts == []
        [analytics_row] = await bus.get_handler_stats("FundAnalyticsHandler")
        assert analytics_row.success_count == 1

    async def test_unregister(self, wired_bus):
        await unregister_event_handlers(wired_bus)
        assert wired_bus.get_registrations() == []
        rows = await wired_bus.get_handler_stats()
        assert rows and not any(r.is_enabled for r in rows)


class TestPassThroughAlerts:
    @pytest.mark.parametrize("handler_name,event_type", PASS_THROUGH_ALERTS)
    async def test_forwards_payload(self, wired_bus, alerts, handler_name, event_type):
        event = await wired_bus.publish(EventDraft(
            event_type=event_type,
            aggregate_type=event_type.split(".")[0],
            aggregate_id="agg-1",
            payload={"daysLate": 12},
            metadata={"organizationId": "org-1"},
        ))

        [alert] = alerts.of_type(event_type)
        assert alert.source_event_id == event.event_id
        assert alert.payload == {"daysLate": 12}
        assert alert.metadata == {"organizationId": "org-1"}

        [row] = await wired_bus.get_handler_stats(handler_name)
        assert row.success_count == 1


class TestFundAlerts:
    async def test_commitment_activated(self, wired_bus, alerts, analytics):
        event = await wired_bus.publish(EventDraft(
            event_type=EventTypes.COMMITMENT_ACTIVATED,
            aggregate_type="Commitment",
            aggregate_id="c-1",
            payload={"fundId": "fund-1", "investorId": "inv-1", "amount": "250000"},
        ))

        [alert] = alerts.of_type(EventTypes.COMMITMENT_ACTIVATED)
        assert alert.aggregate_type == "Commitment"
        assert alert.payload == {
            "commitmentId": "c-1",
            "fundId": "fund-1",
            "investorId": "inv-1",
            "amount": "250000",
            "activatedAt": event.occurred_at.isoformat(),
        }
        assert analytics.snapshots == ["fund-1"]

    async def test_analytics_runs_before_fund_alert(self, wired_bus):
        event = await wired_bus.publish(EventDraft(
            event_type=EventTypes.DISTRIBUTION_POSTED,
            aggregate_type="CapitalEvent",
            aggregate_id="d-1",
            payload={"accountId": "acct-1", "fundId": "fund-1", "amount": 1000,
                     "effectiveDate": "2024-06-30"},
        ))
        assert await _handler_order(wired_bus, event.event_id) == [
            "FundAnalyticsHandler", "DistributionPostedAlertHandler",
        ]

    async def test_distribution_payload(self, wired_bus, alerts):
        await wired_bus.publish(EventDraft(
            event_type=EventTypes.DISTRIBUTION_POSTED,
            aggregate_type="CapitalEvent",
            aggregate_id="d-1",
            payload={"accountId": "acct-1", "fundId": "fund-1", "amount": 1000,
                     "effectiveDate": "2024-06-30"},
        ))
        [alert] = alerts.of_type(EventTypes.DISTRIBUTION_POSTED)
        assert alert.payload["effectiveDate"] == "2024-06-30"
        assert alert.payload["amount"] == "1000"

    async def test_investor_created(self, wired_bus, alerts, analytics):
        await wired_bus.publish(EventDraft(
            event_type=EventTypes.INVESTOR_CREATED,
            aggregate_type="Investor",
            aggregate_id="inv-1",
            payload={"fundId": "fund-1", "name": "Ada", "email": "ada@example.com",
                     "accreditationStatus": "verified"},
        ))
        [alert] = alerts.of_type(EventTypes.INVESTOR_CREATED)
        assert alert.payload["investorId"] == "inv-1"
        assert alert.payload["accreditationStatus"] == "verified"
        assert analytics.snapshots == []

    async def test_bad_payload_is_recorded_as_failure(self, wired_bus, alerts):
        event = await wired_bus.publish(EventDraft(
            event_type=EventTypes.FUND_CREATED,
            aggregate_type="Fund",
            aggregate_id="fund-9",
            payload={"totalCapacity": "not a number"},
        ))
        assert alerts.alerts == []
        [row] = await wired_bus.get_handler_stats("FundCreatedAlertHandler")
        assert row.failure_count == 1
        statuses = [e.status for e in await wired_bus.get_processing_log(event.event_id)]
        assert ExecutionStatus.FAILURE in statuses


class TestFundAnalytics:
    async def test_fund_created_uses_aggregate_id(self, wired_bus, analytics):
        await wired_bus.publish(EventDraft(
            event_type=EventTypes.FUND_CREATED,
            aggregate_type="Fund",
            aggregate_id="fund-1",
            payload={"name": "Growth I"},
        ))
        assert analytics.snapshots == ["fund-1"]

    async def test_fund_id_from_metadata(self, wired_bus, analytics):
        await wired_bus.publish(EventDraft(
            event_type=EventTypes.CAPITAL_EVENT_RECORDED,
            aggregate_type="CapitalEvent",
            aggregate_id="ce-1",
            payload={"amount": 10},
            metadata={"fundId": "fund-2"},
        ))
        assert analytics.snapshots == ["fund-2"]

    async def test_unhandled_type_is_ignored(self, analytics):
        handler = FundAnalyticsHandler(analytics)
        await handler(DomainEvent(
            event_id="e", event_type="Loan.Created", aggregate_id="L1",
            aggregate_type="Loan", sequence_number=1,
            occurred_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        ))
        assert analytics.snapshots == []


class TestPaymentScheduleCalculation:
    def test_add_months_clamps_to_month_end(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)
        assert add_months(date(2024, 6, 15), 0) == date(2024, 6, 15)

    def test_interest_only_monthly(self):
        payments = calculate_payment_schedule(
            principal=Decimal("120000"),
            annual_rate=Decimal("6"),
            term_months=12,
            payment_type="interest_only",
            frequency="monthly",
            start_date=date(2024, 1, 31),
        )
        assert len(payments) == 12
        assert {p.interest for p in payments} == {Decimal("600.00")}
        assert payments[0].amount == Decimal("600.00")
        assert payments[0].principal == Decimal("0.00")
        assert payments[-1].amount == Decimal("120600.00")
        assert payments[0].due_date == date(2024, 2, 29)
        assert payments[-1].due_date == date(2025, 1, 31)

    def test_amortized_level_payment(self):
        payments = calculate_payment_schedule(
            principal=Decimal("100000"),
            annual_rate=Decimal("12"),
            term_months=12,
            payment_type="amortized",
            frequency="monthly",
            start_date=date(2024, 1, 1),
        )
        assert {p.amount for p in payments} == {Decimal("8884.88")}
        assert payments[0].interest == Decimal("1000.00")
        repaid = sum(p.principal for p in payments)
        assert abs(repaid - Decimal("100000")) <= Decimal("0.10")

    def test_amortized_without_interest(self):
        payments = calculate_payment_schedule(
            Decimal("12000"), Decimal("0"), 12, "amortized", "monthly", date(2024, 1, 1),
        )
        assert {p.amount for p in payments} == {Decimal("1000.00")}
        assert {p.interest for p in payments} == {Decimal("0.00")}

    def test_quarterly_rounds_periods_up(self):
        payments = calculate_payment_schedule(
            Decimal("50000"), Decimal("8"), 10, "interest_only", "quarterly", date(2024, 1, 15),
        )
        assert [p.due_date for p in payments] == [
            date(2024, 4, 15), date(2024, 7, 15), date(2024, 10, 15), date(2025, 1, 15),
        ]
        assert payments[0].interest == Decimal("1000.00")

    def test_maturity_is_one_payment_on_start_date(self):
        [payment] = calculate_payment_schedule(
            Decimal("10000"), Decimal("10"), 6, "interest_only", "maturity", date(2024, 3, 1),
        )
        assert payment.due_date == date(2024, 3, 1)
        assert payment.amount == Decimal("11000.00")

    @pytest.mark.parametrize("payment_type,frequency", [
        ("balloon", "monthly"),
        ("amortized", "weekly"),
    ])
    def test_unsupported_terms(self, payment_type, frequency):
        with pytest.raises(ValueError, match="Unsupported"):
            calculate_payment_schedule(
                Decimal("1000"), Decimal("5"), 12, payment_type, frequency, date(2024, 1, 1),
            )


def _loan_funded(**payload) -> EventDraft:
    body = {
        "loanId": "L1",
        "organizationId": "org-1",
        "principal": "120000",
        "rate": "6",
        "termMonths": 12,
        "paymentType": "interest_only",
        "paymentFrequency": "monthly",
        "fundedDate": "2024-01-31",
        "fundedBy": "u-7",
    }
    body.update(payload)
    return EventDraft(
        event_type=EventTypes.LOAN_FUNDED,
        aggregate_type="Loan",
        aggregate_id="L1",
        payload=body,
    )


class TestLoanFunded:
    async def test_schedule_then_audit(self, wired_bus, schedules, compliance):
        event = await wired_bus.publish(_loan_funded())

        [schedule] = schedules.for_loan("L1")
        assert schedule.schedule_type == "interest_only"
        assert schedule.payment_frequency == "monthly"
        assert len(schedule.payments) == 12
        assert schedule.total_amount == Decimal("127200.00")

        [entry] = compliance.audit_log
        assert (entry.entity_type, entry.entity_id, entry.action) == ("loan", "L1", "funded")
        assert entry.user_id == "u-7"
        assert entry.organization_id == "org-1"
        assert entry.changes == {
            "principal": "120000",
            "fundedAt": event.occurred_at.isoformat(),
        }

        # Equal priority: registration order.
        assert await _handler_order(wired_bus, event.event_id) == [
            "PaymentScheduleCreator", "ComplianceLoanFundedAuditHandler",
        ]

    async def test_unsupported_frequency_fails_only_the_scheduler(
        self, wired_bus, schedules, compliance,
    ):
        await wired_bus.publish(_loan_funded(paymentFrequency="weekly"))
        assert schedules.schedules == {}
        assert len(compliance.audit_log) == 1
        [row] = await wired_bus.get_handler_stats("PaymentScheduleCreator")
        assert row.failure_count == 1


def _loan_created(borrower_id: str | None = "b-1", **payload) -> EventDraft:
    body = {"loanId": "L1", "organizationId": "org-1", "lenderId": "len-1", **payload}
    if borrower_id is not None:
        body["borrowerId"] = borrower_id
    return EventDraft(
        event_type=EventTypes.LOAN_CREATED,
        aggregate_type="Loan",
        aggregate_id="L1",
        payload=body,
    )


class TestLoanCreated:
    async def test_kyc_check_runs_before_compliance(self, wired_bus):
        event = await wired_bus.publish(_loan_created())
        assert await _handler_order(wired_bus, event.event_id) == [
            "LoanCreatedKYCCheckHandler", "ComplianceLoanCreatedHandler",
        ]

    async def test_loan_agreement_envelope(self, wired_bus, compliance):
        await wired_bus.publish(_loan_created())

        [envelope] = compliance.envelopes
        assert envelope.document_type == "loan_agreement"
        assert envelope.document_id == "L1"
        assert envelope.organization_id == "org-1"
        assert [(s.role, s.order, s.name) for s in envelope.signers] == [
            ("borrower", 1, "Bo Rower"),
            ("lender", 2, "First Lender"),
        ]
        assert compliance.reviews == []

    async def test_unapproved_borrower_opens_review(self, wired_bus, compliance):
        event = await wired_bus.publish(_loan_created(borrower_id="b-2"))

        [review] = compliance.reviews
        assert review.reason == "kyc_not_approved"
        assert review.borrower_id == "b-2"
        assert review.source_event_id == event.event_id
        assert review.details == {"loanId": "L1", "kycStatus": "pending"}

        # Borrower without a display name signs under their email.
        [envelope] = compliance.envelopes
        assert envelope.signers[0].name == "pending@example.com"

    async def test_unknown_or_missing_borrower_is_skipped(self, wired_bus, compliance):
        await wired_bus.publish(_loan_created(borrower_id="ghost"))
        await wired_bus.publish(_loan_created(borrower_id=None))

        assert compliance.envelopes == []
        assert compliance.reviews == []
        rows = {r.handler_name: r for r in await wired_bus.get_handler_stats()}
        assert rows["ComplianceLoanCreatedHandler"].success_count == 2
        assert rows["LoanCreatedKYCCheckHandler"].failure_count == 0


class TestComplianceDocuments:
    async def test_investor_gets_ppm_and_subscription(self, wired_bus, compliance):
        await wired_bus.publish(EventDraft(
            event_type=EventTypes.INVESTOR_CREATED,
            aggregate_type="Investor",
            aggregate_id="inv-1",
            payload={"fundId": "fund-1", "organizationId": "org-1"},
        ))
        assert [e.document_type for e in compliance.envelopes] == [
            "ppm", "subscription_agreement",
        ]
        assert {e.fund_id for e in compliance.envelopes} == {"fund-1"}
        assert compliance.envelopes[0].signers[0].email == "ada@example.com"

    async def test_investor_without_fund_is_skipped(self, wired_bus, compliance):
        await wired_bus.publish(EventDraft(
            event_type=EventTypes.INVESTOR_CREATED,
            aggregate_type="Investor",
            aggregate_id="inv-1",
        ))
        assert compliance.envelopes == []

    @pytest.mark.parametrize("payload,expected", [
        ({"documentType": "loan_agreement", "loanId": "L1"}, [("loan_agreement", "L1", None)]),
        ({"documentType": "ppm", "fundId": "fund-1"}, [("ppm", None, "fund-1")]),
        ({"documentType": "nda"}, []),
    ])
    async def test_document_completed(self, wired_bus, compliance, payload, expected):
        await wired_bus.publish(EventDraft(
            event_type=EventTypes.DOCUMENT_COMPLETED,
            aggregate_type="Document",
            aggregate_id="sig-1",
            payload={"signatureId": "sig-1", **payload},
        ))
        assert compliance.completed_documents == expected

    async def test_payment_processed_audit(self, wired_bus, compliance):
        event = await wired_bus.publish(EventDraft(
            event_type=EventTypes.PAYMENT_PROCESSED,
            aggregate_type="Payment",
            aggregate_id="p-1",
            payload={"paymentId": "p-1", "loanId": "L1", "amount": "1500.00",
                     "processedBy": "u-2", "organizationId": "org-1"},
        ))
        [entry] = compliance.audit_log
        assert (entry.entity_type, entry.entity_id, entry.action) == ("payment", "p-1", "processed")
        assert entry.user_id == "u-2"
        assert entry.changes == {
            "loanId": "L1",
            "amount": "1500.00",
            "processedAt": event.occurred_at.isoformat(),
        }


def _kyc(event_type: str, **payload) -> EventDraft:
    return EventDraft(
        event_type=event_type,
        aggregate_type="KYCVerification",
        aggregate_id="v-1",
        payload={"verificationId": "v-1", "borrowerId": "b-1",
                 "organizationId": "org-1", **payload},
        correlation_id="req-7",
    )


class TestKYC:
    async def test_approved_republishes_on_borrower(self, wired_bus):
        source = await wired_bus.publish(_kyc(EventTypes.KYC_APPROVED))

        [event] = await wired_bus.get_event_history("b-1", "Borrower")
        assert event.event_type == EventTypes.BORROWER_KYC_APPROVED
        assert event.sequence_number == 1
        assert event.causation_id == source.event_id
        assert event.correlation_id == "req-7"
        assert event.payload["borrowerId"] == "b-1"
        assert event.payload["verificationId"] == "v-1"
        assert "approvedAt" in event.payload

    @pytest.mark.parametrize("event_type,reason", [
        (EventTypes.KYC_REJECTED, "kyc_rejected"),
        (EventTypes.KYC_REQUIRES_REVIEW, "kyc_requires_review"),
    ])
    async def test_review_outcomes(self, wired_bus, compliance, event_type, reason):
        source = await wired_bus.publish(_kyc(event_type, reason="document expired"))

        [review] = compliance.reviews
        assert review.reason == reason
        assert review.borrower_id == "b-1"
        assert review.source_event_id == source.event_id
        assert review.details == {"verificationId": "v-1", "reason": "document expired"}

    async def test_malformed_kyc_payload_is_a_failure(self, wired_bus, compliance):
        await wired_bus.publish(EventDraft(
            event_type=EventTypes.KYC_REJECTED,
            aggregate_type="KYCVerification",
            aggregate_id="v-2",
            payload={"verificationId": "v-2"},
        ))
        assert compliance.reviews == []
        [row] = await wired_bus.get_handler_stats("KYCRejectedHandler")
        assert row.failure_count == 1
