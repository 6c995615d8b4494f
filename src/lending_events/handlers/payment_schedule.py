"""Loan.Funded → payment schedule.

Interest-only loans pay the periodic interest every period and the
principal with the last payment.  Amortized loans pay a level amount
computed with the standard annuity formula.  Amounts are rounded to cents
half-up.
"""

from __future__ import annotations

import calendar
import logging
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import ClassVar

from lending_events.domain.events import DomainEvent, EventTypes
from lending_events.domain.payloads import LoanFundedPayload, decode_payload

from .services import PaymentScheduleRecord, PaymentScheduleService, ScheduledPayment

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")

# frequency → (months per period, periods per year)
_FREQUENCIES: dict[str, tuple[int, int]] = {
    "monthly": (1, 12),
    "quarterly": (3, 4),
    "maturity": (0, 1),
}


def _cents(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def add_months(start: date, months: int) -> date:
    """Calendar month arithmetic, clamping to the last day of the month."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def number_of_payments(term_months: int, frequency: str) -> int:
    if frequency == "monthly":
        return term_months
    if frequency == "quarterly":
        return -(-term_months // 3)
    if frequency == "maturity":
        return 1
    raise ValueError(f"Unsupported payment frequency: {frequency}")


def calculate_payment_schedule(
    principal: Decimal,
    annual_rate: Decimal,
    term_months: int,
    payment_type: str,
    frequency: str,
    start_date: date,
) -> list[ScheduledPayment]:
    """Build the payment list for a funded loan.

    *annual_rate* is a percentage (``7.5`` means 7.5 %).  A ``maturity``
    loan has a single payment due on *start_date*.

    Raises ``ValueError`` for an unknown *payment_type* or *frequency*.
    """
    if frequency not in _FREQUENCIES:
        raise ValueError(f"Unsupported payment frequency: {frequency}")
    months_per_period, periods_per_year = _FREQUENCIES[frequency]
    count = number_of_payments(term_months, frequency)
    periodic_rate = annual_rate / periods_per_year / 100

    def due(n: int) -> date:
        return add_months(start_date, n * months_per_period)

    payments: list[ScheduledPayment] = []
    if payment_type == "interest_only":
        interest = _cents(principal * periodic_rate)
        for n in range(1, count + 1):
            last = n == count
            paid_principal = principal if last else Decimal(0)
            payments.append(ScheduledPayment(
                payment_number=n,
                due_date=due(n),
                amount=_cents(interest + paid_principal),
                principal=_cents(paid_principal),
                interest=interest,
            ))
    elif payment_type == "amortized":
        if periodic_rate == 0:
            level = principal / count
        else:
            growth = (1 + periodic_rate) ** count
            level = principal * periodic_rate * growth / (growth - 1)
        balance = principal
        for n in range(1, count + 1):
            interest = balance * periodic_rate
            paid_principal = level - interest
            balance -= paid_principal
            payments.append(ScheduledPayment(
                payment_number=n,
                due_date=due(n),
                amount=_cents(level),
                principal=_cents(paid_principal),
                interest=_cents(interest),
            ))
    else:
        raise ValueError(f"Unsupported payment type: {payment_type}")
    return payments


class PaymentScheduleCreator:
    """Creates the payment schedule of a newly funded loan."""

    HANDLER_NAME: ClassVar[str] = "PaymentScheduleCreator"
    EVENT_TYPE: ClassVar[str] = EventTypes.LOAN_FUNDED
    PRIORITY: ClassVar[int] = 10

    def __init__(self, schedules: PaymentScheduleService) -> None:
        self._schedules = schedules

    async def __call__(self, event: DomainEvent) -> None:
        payload = decode_payload(event, LoanFundedPayload)
        loan_id = payload.loan_id or event.aggregate_id
        start = payload.funded_date
        if isinstance(start, datetime):
            start = start.date()

        payments = calculate_payment_schedule(
            principal=payload.principal,
            annual_rate=payload.rate,
            term_months=payload.term_months,
            payment_type=payload.payment_type,
            frequency=payload.payment_frequency,
            start_date=start,
        )
        schedule_id = await self._schedules.create_schedule(PaymentScheduleRecord(
            loan_id=loan_id,
            schedule_type=(
                "amortized" if payload.payment_type == "amortized" else "interest_only"
            ),
            payment_frequency=payload.payment_frequency,
            payments=tuple(payments),
        ))
        logger.info(
            "Created payment schedule %s for loan %s with %d payments",
            schedule_id, loan_id, len(payments),
        )
