"""
Tests for ProjectionService: baseline and strategy amortization schedules.

Uses ProjectionLoan objects directly, so no database rows are needed.
"""
import pytest

from services.projection_service import ProjectionLoan, ProjectionService
from utils.errors import ProjectionError


@pytest.fixture
def two_loans():
    # A: 10,000 at 12% over 24 months; B: 5,000 at 6% over 24 months
    return [
        ProjectionLoan(1, 10000, 0.12, 24),
        ProjectionLoan(2, 5000, 0.06, 24),
    ]


class TestProjectionLoan:
    def test_standard_payment_from_pmt(self):
        assert ProjectionLoan(1, 10000, 0.12, 24).standard_payment == pytest.approx(470.73, abs=0.01)

    def test_percentage_rate_normalized(self):
        loan = ProjectionLoan(1, 10000, 12, 24)
        assert loan.annual_rate == pytest.approx(0.12)
        assert loan.monthly_rate == pytest.approx(0.01)

    def test_zero_balance_has_no_payment(self):
        loan = ProjectionLoan(1, 0, 0.05, 12)
        assert loan.standard_payment == 0.0
        assert not loan.is_open

    @pytest.mark.parametrize('balance,rate,term', [
        (-1, 0.05, 12),
        (float('nan'), 0.05, 12),
        (float('inf'), 0.05, 12),
        (1000, float('nan'), 12),
        (1000, 0.05, 0),
        (1000, 0.05, None),
        ('lots', 0.05, 12),
    ])
    def test_invalid_inputs_raise(self, balance, rate, term):
        with pytest.raises(ProjectionError):
            ProjectionLoan(1, balance, rate, term)


class TestBaselineProjection:
    def test_pays_off_on_schedule(self, two_loans):
        schedule = ProjectionService.generate_baseline_projection(two_loans, 2025, 0)
        assert len(schedule) == 24
        assert schedule[0]['month'] == '2025-01-01'
        assert schedule[-1]['month'] == '2026-12-01'
        assert schedule[-1]['remaining'] <= 0.01

    def test_first_month_interest(self, two_loans):
        first = ProjectionService.generate_baseline_projection(two_loans, 2025, 0)[0]
        assert first['interest'] == pytest.approx(125.0)
        rows = {row['loan_id']: row for row in first['loans']}
        assert rows[1]['interest'] == pytest.approx(100.0)
        assert rows[2]['interest'] == pytest.approx(25.0)
        assert rows[1]['overpayment'] == 0.0

    def test_inputs_not_mutated(self, two_loans):
        ProjectionService.generate_baseline_projection(two_loans, 2025, 0)
        assert two_loans[0].remaining_balance == 10000

    def test_extra_payment_shortens_schedule(self, two_loans):
        plain = ProjectionService.generate_baseline_projection(two_loans, 2025, 0)
        extra = ProjectionService.generate_baseline_projection(two_loans, 2025, 0, extra_payment=100)
        assert len(extra) < len(plain)
        assert extra[-1]['cumulative_interest'] < plain[-1]['cumulative_interest']

    def test_month_cap_respected(self, two_loans):
        schedule = ProjectionService.generate_baseline_projection(two_loans, 2025, 0, max_months=6)
        assert len(schedule) == 6
        assert schedule[-1]['remaining'] > 0.01

    def test_start_month_rolls_over_year(self, two_loans):
        schedule = ProjectionService.generate_baseline_projection(two_loans, 2025, 11, max_months=2)
        assert [entry['month'] for entry in schedule] == ['2025-12-01', '2026-01-01']

    def test_no_open_loans_gives_empty_schedule(self):
        assert ProjectionService.generate_baseline_projection([ProjectionLoan(1, 0, 0.05, 12)], 2025, 0) == []


class TestStrategyProjection:
    def test_avalanche_targets_highest_rate_first(self, two_loans):
        schedule = ProjectionService.generate_strategy_projection(
            two_loans, 'avalanche', 200, False, 2025, 0
        )
        first = schedule[0]
        rows = {row['loan_id']: row for row in first['loans']}
        assert first['overpayment_budget'] == pytest.approx(200)
        assert rows[1]['overpayment'] == pytest.approx(200)
        assert rows[2]['overpayment'] == 0.0
        assert rows[1]['principal'] == pytest.approx(570.73, abs=0.01)

    def test_avalanche_rolls_to_next_loan_after_payoff(self, two_loans):
        def payoff_index(schedule, loan_id):
            for index, entry in enumerate(schedule):
                for row in entry['loans']:
                    if row['loan_id'] == loan_id and row['remaining'] <= 0.01:
                        return index
            return None

        baseline = ProjectionService.generate_baseline_projection(two_loans, 2025, 0)
        strategy = ProjectionService.generate_strategy_projection(
            two_loans, 'avalanche', 200, False, 2025, 0
        )

        paid_off = payoff_index(strategy, 1)
        assert paid_off is not None
        assert paid_off < payoff_index(baseline, 1)

        following = {row['loan_id']: row for row in strategy[paid_off + 1]['loans']}
        assert 1 not in following
        assert following[2]['overpayment'] > 0

    @pytest.mark.parametrize('strategy', ['avalanche', 'snowball', 'equal', 'ratio'])
    def test_never_costs_more_than_baseline(self, two_loans, strategy):
        comparison = ProjectionService.compare(two_loans, strategy, 200, False, 2025, 0)
        assert comparison['strategy_summary']['total_interest'] <= \
            comparison['baseline_summary']['total_interest']
        assert comparison['strategy_summary']['months'] < comparison['baseline_summary']['months']
        assert comparison['total_interest_saved'] > 0

    def test_terminates_within_cap(self, two_loans):
        schedule = ProjectionService.generate_strategy_projection(
            two_loans, 'snowball', 50, True, 2025, 0, max_months=600
        )
        assert len(schedule) <= 600
        assert schedule[-1]['remaining'] <= 0.01

    def test_deterministic(self, two_loans):
        first = ProjectionService.generate_strategy_projection(two_loans, 'ratio', 150, True, 2025, 3)
        second = ProjectionService.generate_strategy_projection(
            list(reversed(two_loans)), 'ratio', 150, True, 2025, 3
        )
        assert first == second

    def test_reinvest_grows_budget_after_payoff(self):
        loans = [ProjectionLoan(1, 1000, 0.05, 6), ProjectionLoan(2, 20000, 0.05, 120)]
        schedule = ProjectionService.generate_strategy_projection(
            loans, 'avalanche', 100, True, 2025, 0
        )
        small_payment = loans[0].standard_payment
        later = [entry for entry in schedule
                 if all(row['loan_id'] != 1 for row in entry['loans'])]
        assert later
        assert later[0]['overpayment_budget'] == pytest.approx(100 + small_payment, abs=0.01)

    def test_without_reinvest_budget_is_flat(self):
        loans = [ProjectionLoan(1, 1000, 0.05, 6), ProjectionLoan(2, 20000, 0.05, 120)]
        schedule = ProjectionService.generate_strategy_projection(
            loans, 'avalanche', 100, False, 2025, 0
        )
        assert {entry['overpayment_budget'] for entry in schedule} == {100.0}

    def test_reinvest_saves_more_interest(self, two_loans):
        plain = ProjectionService.compare(two_loans, 'avalanche', 100, False, 2025, 0)
        reinvested = ProjectionService.compare(two_loans, 'avalanche', 100, True, 2025, 0)
        assert reinvested['total_interest_saved'] >= plain['total_interest_saved']

    @pytest.mark.parametrize('limit', [-1, float('nan'), float('inf')])
    def test_invalid_limit_raises(self, two_loans, limit):
        with pytest.raises(ProjectionError):
            ProjectionService.generate_strategy_projection(two_loans, 'avalanche', limit, False, 2025, 0)

    def test_zero_limit_matches_baseline_interest(self, two_loans):
        comparison = ProjectionService.compare(two_loans, 'equal', 0, False, 2025, 0)
        assert comparison['total_interest_saved'] == pytest.approx(0, abs=0.01)


class TestSummarize:
    def test_empty_schedule(self):
        assert ProjectionService.summarize([]) == {'months': 0, 'total_interest': 0.0, 'paid_off': True}

    def test_summary_of_schedule(self, two_loans):
        schedule = ProjectionService.generate_baseline_projection(two_loans, 2025, 0)
        summary = ProjectionService.summarize(schedule)
        assert summary['months'] == 24
        assert summary['paid_off'] is True
        assert summary['total_interest'] == schedule[-1]['cumulative_interest']
