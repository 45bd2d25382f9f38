"""
Overstay penalty calculator

Single source of truth for overstay arithmetic. All money is integer cents;
rates are Decimals. Rounding is half-up to the cent, applied once at each
multiplication that produces a persisted value, so a breakdown can be reproduced
exactly from a record's snapshot fields.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

from .errors import OverstayValidationError

Rate = Union[Decimal, int, float, str]

_ONE = Decimal("1")
_HUNDRED = Decimal("100")


def to_decimal(value: Rate) -> Decimal:
    """Convert a rate to Decimal without picking up binary float noise"""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_cents(amount: Decimal) -> int:
    return int(amount.quantize(_ONE, rounding=ROUND_HALF_UP))


def _require_non_negative(**values) -> None:
    for name, value in values.items():
        if value < 0:
            raise OverstayValidationError(f"{name} cannot be negative")


def days_overdue(booking_end_date: date, today: date) -> int:
    """Whole days since the booked end date, never negative"""
    return max(0, (today - booking_end_date).days)


def grace_period_ends_at(booking_end_date: date, grace_period_days: int) -> date:
    return booking_end_date + timedelta(days=grace_period_days)


def is_in_grace_period(days: int, grace_period_days: int) -> bool:
    return days <= grace_period_days


def penalty_days(days: int, grace_period_days: int, max_penalty_days: int) -> int:
    """Billable days: past the grace period, capped at max_penalty_days"""
    _require_non_negative(
        days_overdue=days, grace_period_days=grace_period_days, max_penalty_days=max_penalty_days
    )
    return min(max(days - grace_period_days, 0), max_penalty_days)


def daily_penalty_cents(daily_rate_cents: int, penalty_rate: Rate) -> int:
    """Daily storage rate plus the penalty surcharge, e.g. $50.00 at 20% -> 6000"""
    rate = to_decimal(penalty_rate)
    _require_non_negative(daily_rate_cents=daily_rate_cents, penalty_rate=rate)
    return round_cents(Decimal(daily_rate_cents) * (_ONE + rate))


def calculate_penalty_cents(
    daily_rate_cents: int,
    penalty_rate: Rate,
    grace_period_days: int,
    max_penalty_days: int,
    days: int,
) -> int:
    return daily_penalty_cents(daily_rate_cents, penalty_rate) * penalty_days(
        days, grace_period_days, max_penalty_days
    )


def tax_inclusive_total(amount_cents: int, tax_rate_percent: Rate) -> int:
    """Chef-facing total including kitchen tax, e.g. 12000 at 15% -> 13800"""
    rate = to_decimal(tax_rate_percent)
    _require_non_negative(amount_cents=amount_cents, tax_rate_percent=rate)
    return round_cents(Decimal(amount_cents) * (_ONE + rate / _HUNDRED))


@dataclass(frozen=True)
class PenaltyBreakdown:
    days_overdue: int
    penalty_days: int
    daily_rate_cents: int
    daily_penalty_cents: int
    calculated_penalty_cents: int
    tax_rate_percent: Decimal
    tax_cents: int
    total_with_tax_cents: int

    def to_dict(self) -> dict:
        return {
            "daysOverdue": self.days_overdue,
            "penaltyDays": self.penalty_days,
            "dailyRateCents": self.daily_rate_cents,
            "dailyPenaltyCents": self.daily_penalty_cents,
            "calculatedPenaltyCents": self.calculated_penalty_cents,
            "taxRatePercent": str(self.tax_rate_percent),
            "taxCents": self.tax_cents,
            "totalWithTaxCents": self.total_with_tax_cents,
        }


def breakdown(
    daily_rate_cents: int,
    penalty_rate: Rate,
    grace_period_days: int,
    max_penalty_days: int,
    days: int,
    tax_rate_percent: Rate = 0,
) -> PenaltyBreakdown:
    billable = penalty_days(days, grace_period_days, max_penalty_days)
    daily = daily_penalty_cents(daily_rate_cents, penalty_rate)
    calculated = daily * billable
    total = tax_inclusive_total(calculated, tax_rate_percent)
    return PenaltyBreakdown(
        days_overdue=days,
        penalty_days=billable,
        daily_rate_cents=daily_rate_cents,
        daily_penalty_cents=daily,
        calculated_penalty_cents=calculated,
        tax_rate_percent=to_decimal(tax_rate_percent),
        tax_cents=total - calculated,
        total_with_tax_cents=total,
    )


def breakdown_for_record(record) -> PenaltyBreakdown:
    """Breakdown reproduced purely from an OverstayRecord's snapshot fields"""
    days = record.days_overdue
    if record.frozen_days_overdue is not None:
        days = record.frozen_days_overdue
    return breakdown(
        daily_rate_cents=record.daily_rate_cents,
        penalty_rate=record.penalty_rate,
        grace_period_days=record.grace_period_days,
        max_penalty_days=record.max_penalty_days,
        days=days,
        tax_rate_percent=record.kitchen_tax_rate_percent,
    )


def format_cents(amount_cents: int) -> str:
    return f"${amount_cents / 100:,.2f}"
