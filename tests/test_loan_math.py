"""
Tests for the loan math helpers: rate normalization, the PMT formula and
month arithmetic.
"""
from datetime import date, datetime
from decimal import Decimal

import pytest

from utils.loan_math import (
    compute_projected_payoff_month,
    derive_standard_monthly_payment,
    increment_month,
    iso_month_string,
    iter_month_starts,
    month_start,
    months_between,
    normalize_annual_rate,
    to_money,
)


class TestNormalizeAnnualRate:
    def test_decimal_rate_unchanged(self):
        assert normalize_annual_rate(0.065) == pytest.approx(0.065)

    def test_percentage_converted(self):
        assert normalize_annual_rate(5.5) == pytest.approx(0.055)

    def test_decimal_type_accepted(self):
        assert normalize_annual_rate(Decimal('0.12000')) == pytest.approx(0.12)

    @pytest.mark.parametrize('bad', [0, -3, float('nan'), float('inf'), None, 'abc'])
    def test_invalid_rates_become_zero(self, bad):
        assert normalize_annual_rate(bad) == 0.0


class TestStandardMonthlyPayment:
    def test_known_pmt_value(self):
        # 10,000 at 12% over 24 months
        assert derive_standard_monthly_payment(10000, 0.12, 24) == pytest.approx(470.73, abs=0.01)

    def test_zero_rate_is_straight_line(self):
        assert derive_standard_monthly_payment(1200, 0, 12) == pytest.approx(100.0)

    @pytest.mark.parametrize('principal,rate,term', [
        (10000, 0.12, 24),
        (5000, 0.06, 24),
        (250000, 0.045, 300),
        (800, 0.299, 6),
    ])
    def test_payments_cover_principal(self, principal, rate, term):
        payment = derive_standard_monthly_payment(principal, rate, term)
        assert payment * term >= principal

    def test_percentage_rate_matches_decimal_rate(self):
        assert derive_standard_monthly_payment(5000, 6, 24) == pytest.approx(
            derive_standard_monthly_payment(5000, 0.06, 24)
        )


class TestMonthArithmetic:
    def test_increment_within_year(self):
        assert increment_month(2025, 4) == (2025, 5)

    def test_increment_rolls_over_december(self):
        assert increment_month(2025, 11) == (2026, 0)

    def test_iso_month_string(self):
        assert iso_month_string(2025, 0) == '2025-01-01'
        assert iso_month_string(2025, 11) == '2025-12-01'

    def test_month_start_from_datetime(self):
        assert month_start(datetime(2025, 3, 17, 14, 5)) == date(2025, 3, 1)

    def test_month_start_from_iso_string(self):
        assert month_start('2025-07-19T10:00:00Z') == date(2025, 7, 1)

    def test_month_start_rejects_garbage(self):
        with pytest.raises(ValueError):
            month_start('not-a-date')

    def test_months_between(self):
        assert months_between(date(2024, 11, 1), date(2025, 2, 1)) == 3

    def test_iter_month_starts_inclusive(self):
        months = list(iter_month_starts(date(2024, 11, 20), date(2025, 1, 5)))
        assert months == [date(2024, 11, 1), date(2024, 12, 1), date(2025, 1, 1)]


class TestProjectedPayoffMonth:
    def test_adds_whole_months(self):
        assert compute_projected_payoff_month('2025-01-01', 36) == '2028-01-01'

    def test_uses_month_of_start(self):
        assert compute_projected_payoff_month('2025-01-31T23:00:00', 1) == '2025-02-01'

    def test_missing_start_falls_back_to_current_month(self):
        expected = month_start().replace(day=1)
        result = compute_projected_payoff_month(None, 0)
        assert result == expected.isoformat()

    def test_unparsable_start_falls_back_to_current_month(self):
        assert compute_projected_payoff_month('garbage', 0) == month_start().isoformat()


class TestToMoney:
    def test_rounds_half_up(self):
        assert to_money(0.125) == Decimal('0.13')

    def test_float_noise_removed(self):
        assert to_money(0.1 + 0.2) == Decimal('0.30')
