"""
Loan math shared by the projection engine, reconciliation and the dashboard.

Months are handled in two forms: ``(year, month_index)`` pairs with a
zero-based month index (the projection loop), and first-of-month ``date``
objects serialized as ``YYYY-MM-DD`` (everything persisted).
"""
import math
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from dateutil.relativedelta import relativedelta


CENT = Decimal('0.01')

# Balances at or below this are treated as paid off
PAID_OFF_THRESHOLD = 0.01


def normalize_annual_rate(annual_rate):
    """Return the annual rate as a decimal fraction.

    Values above 1 are treated as percentages (5.5 -> 0.055).  Non-finite,
    zero or negative input yields 0.
    """
    try:
        rate = float(annual_rate)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(rate) or rate <= 0:
        return 0.0
    return rate / 100 if rate > 1 else rate


def monthly_rate(annual_rate):
    return normalize_annual_rate(annual_rate) / 12


def derive_standard_monthly_payment(principal, annual_rate, term_months):
    """Fixed payment that retires *principal* over *term_months* (PMT formula).

    PMT = P * r / (1 - (1 + r) ** -n) with r the monthly rate.  Zero-rate
    loans fall back to a straight-line ``principal / term_months``.
    """
    principal = float(principal)
    rate = monthly_rate(annual_rate)
    if rate == 0:
        return principal / term_months
    return (principal * rate) / (1 - math.pow(1 + rate, -term_months))


def increment_month(year, month_index):
    """Advance a (year, zero-based month) pair by one month."""
    month_index += 1
    if month_index >= 12:
        return year + 1, 0
    return year, month_index


def iso_month_string(year, month_index):
    """``(2025, 0)`` -> ``'2025-01-01'``"""
    return f"{year:04d}-{month_index + 1:02d}-01"


def month_start(value=None):
    """First day of the month containing *value*.

    Accepts a date, a datetime or an ISO string; ``None`` means today (UTC).
    Raises ValueError for strings that are not ISO dates.
    """
    if value is None:
        value = datetime.now(timezone.utc)
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace('Z', '+00:00'))
    return date(value.year, value.month, 1)


def compute_projected_payoff_month(start_iso, months_to_payoff):
    """ISO date of the month *months_to_payoff* months after *start_iso*'s month.

    An absent or unparsable start falls back to the current month.
    """
    try:
        base = month_start(start_iso)
    except ValueError:
        base = month_start()
    return (base + relativedelta(months=int(months_to_payoff))).isoformat()


def months_between(start, end):
    """Whole calendar months from *start*'s month to *end*'s month."""
    return (end.year - start.year) * 12 + (end.month - start.month)


def iter_month_starts(start, end):
    """Yield first-of-month dates from *start* through *end*, inclusive."""
    current = month_start(start)
    last = month_start(end)
    while current <= last:
        yield current
        current = current + relativedelta(months=1)


def to_money(value):
    """Quantize an amount to cents for a Numeric(14, 2) column."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
