"""
Tests for the dashboard overview and its per-user cache.
"""
from datetime import date
from types import SimpleNamespace

import pytest
from dateutil.relativedelta import relativedelta

from services.dashboard_service import DashboardService
from services.execution_log_service import ExecutionLogService
from services.loan_service import LoanService
from services.staleness_service import StalenessService
from utils.cache import DashboardCache
from utils.errors import NotFoundError, ValidationError
from utils.loan_math import month_start


@pytest.fixture
def plan_start(active_simulation):
    return month_start(active_simulation.start_reference)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestDashboardCache:
    def test_get_set(self):
        cache = DashboardCache(ttl_seconds=60)
        cache.set(1, {'a': 1}, variant='v')
        assert cache.get(1, 'v') == {'a': 1}
        assert cache.get(1, 'other') is None
        assert cache.get(2, 'v') is None

    def test_entries_expire(self):
        clock = FakeClock()
        cache = DashboardCache(ttl_seconds=60, clock=clock)
        cache.set(1, 'value')
        clock.now += 59
        assert cache.get(1) == 'value'
        clock.now += 2
        assert cache.get(1) is None

    def test_invalidate_drops_every_variant(self):
        cache = DashboardCache()
        cache.set(1, 'a', variant='x')
        cache.set(1, 'b', variant='y')
        cache.set(2, 'c', variant='x')
        cache.invalidate(1)
        assert cache.get(1, 'x') is None and cache.get(1, 'y') is None
        assert cache.get(2, 'x') == 'c'


class TestParseInclude:
    def test_empty(self):
        assert DashboardService.parse_include(None) == frozenset()
        assert DashboardService.parse_include('') == frozenset()

    def test_flags(self):
        assert DashboardService.parse_include('monthly_trend, adherence') == \
            frozenset({'monthly_trend', 'adherence'})

    def test_unknown_flag(self):
        with pytest.raises(ValidationError):
            DashboardService.parse_include('monthly_trend,horoscope')


class TestLoanMetrics:
    def _loan(self, **overrides):
        values = dict(id=1, name='Car', principal=10000, remaining_balance=10000,
                      annual_rate=0.12, term_months=24, original_term_months=24,
                      start_month=date(2025, 1, 1), is_closed=False)
        values.update(overrides)
        return SimpleNamespace(**values)

    def test_new_loan(self):
        metrics = DashboardService.loan_metrics(self._loan(), date(2025, 1, 1))
        assert metrics['monthly_payment'] == pytest.approx(470.73, abs=0.01)
        assert metrics['months_remaining'] == 24
        assert metrics['progress'] == 0.0

    def test_capped_by_original_term(self):
        metrics = DashboardService.loan_metrics(self._loan(), date(2026, 7, 1))
        assert metrics['months_remaining'] == 6

    def test_never_negative(self):
        metrics = DashboardService.loan_metrics(self._loan(), date(2030, 1, 1))
        assert metrics['months_remaining'] == 0

    def test_progress(self):
        metrics = DashboardService.loan_metrics(self._loan(remaining_balance=2500), date(2025, 1, 1))
        assert metrics['progress'] == 0.75

    def test_zero_rate(self):
        metrics = DashboardService.loan_metrics(
            self._loan(principal=1200, remaining_balance=1200, annual_rate=0, term_months=12,
                       original_term_months=12),
            date(2025, 1, 1),
        )
        assert metrics['monthly_payment'] == 100.0
        assert metrics['months_remaining'] == 12

    def test_closed_loan(self):
        metrics = DashboardService.loan_metrics(
            self._loan(is_closed=True, remaining_balance=0), date(2025, 6, 1)
        )
        assert metrics['monthly_payment'] == 0.0
        assert metrics['months_remaining'] == 0
        assert metrics['progress'] == 1.0


class TestOverview:
    def test_requires_active_simulation(self, user, loan):
        with pytest.raises(NotFoundError) as exc:
            DashboardService.get_overview(user.id)
        assert exc.value.code == 'ACTIVE_SIMULATION_NOT_FOUND'

    def test_overview_sections(self, user, loan, active_simulation, plan_start):
        overview = DashboardService.get_overview(user.id, now=plan_start)

        summary = overview['active_simulation']
        assert summary['id'] == active_simulation.id
        assert summary['status'] == 'active'
        assert summary['stale'] is False
        assert summary['total_interest_saved'] > 0

        assert [item['loan_id'] for item in overview['loans']] == [loan.id]
        entries = overview['current_month']['entries']
        assert overview['current_month']['month_start'] == plan_start.isoformat()
        assert len(entries) == 1
        assert entries[0]['scheduled_overpayment'] == 200.0
        assert entries[0]['payment_status'] == 'pending'
        assert 'graphs' not in overview and 'adherence' not in overview

    def test_reconciles_missing_months(self, user, loan, active_simulation, plan_start):
        DashboardService.get_overview(user.id, now=plan_start + relativedelta(months=2))
        assert ExecutionLogService.list_logs(user.id)['total'] == 3

    def test_graphs(self, user, loan, active_simulation, plan_start):
        overview = DashboardService.get_overview(
            user.id, include=frozenset({'monthly_trend', 'interest_breakdown'}), now=plan_start
        )
        balances = overview['graphs']['monthly_balances']
        assert balances[0]['month'] == plan_start.isoformat()
        assert balances[-1]['total_remaining'] <= 0.01
        breakdown = overview['graphs']['interest_vs_saved']
        assert len(breakdown) == len(balances)
        assert all(point['interest_saved'] >= 0 for point in breakdown)

    def test_adherence(self, user, loan, active_simulation, plan_start):
        now = plan_start + relativedelta(months=2)
        overview = DashboardService.get_overview(user.id, include=frozenset({'adherence'}), now=now)
        assert overview['adherence']['backfilled_payment_count'] == 2
        assert overview['adherence']['ratio'] == 0.0

        current = overview['current_month']['entries'][0]
        ExecutionLogService.patch_log(user.id, current['log_id'], {'overpayment_status': 'executed'})
        overview = DashboardService.get_overview(user.id, include=frozenset({'adherence'}), now=now)
        assert overview['adherence']['overpayment_executed_count'] == 1
        assert overview['adherence']['ratio'] == 1.0

    def test_cached_until_mutation(self, user, loan, active_simulation, plan_start, monkeypatch):
        built = []
        build_month = DashboardService._current_month
        monkeypatch.setattr(DashboardService, '_current_month',
                            staticmethod(lambda *args: built.append(1) or build_month(*args)))

        first = DashboardService.get_overview(user.id, now=plan_start)
        assert DashboardService.get_overview(user.id, now=plan_start) == first
        assert len(built) == 1

        LoanService.patch_loan(user.id, loan.id, {'name': 'Renamed'})
        second = DashboardService.get_overview(user.id, now=plan_start)
        assert len(built) == 2
        assert second['loans'][0]['name'] == 'Renamed'

    def test_callers_cannot_change_cached_entry(self, user, loan, active_simulation, plan_start):
        first = DashboardService.get_overview(user.id, now=plan_start)
        first['loans'].clear()
        first['active_simulation']['status'] = 'tampered'

        second = DashboardService.get_overview(user.id, now=plan_start)
        assert len(second['loans']) == 1
        assert second['active_simulation']['status'] == 'active'

        second['loans'].clear()
        assert len(DashboardService.get_overview(user.id, now=plan_start)['loans']) == 1

    def test_include_flags_cached_separately(self, user, loan, active_simulation, plan_start):
        plain = DashboardService.get_overview(user.id, now=plan_start)
        with_adherence = DashboardService.get_overview(
            user.id, include=frozenset({'adherence'}), now=plan_start
        )
        assert 'adherence' not in plain
        assert 'adherence' in with_adherence

    def test_stale_simulation_still_shown(self, user, loan, active_simulation, plan_start):
        StalenessService.mark_active_simulation_stale(user.id)
        overview = DashboardService.get_overview(user.id, now=plan_start)
        assert overview['active_simulation']['stale'] is True
        assert overview['current_month']['entries'] == []

    def test_other_user_has_no_dashboard(self, other_user, active_simulation):
        with pytest.raises(NotFoundError):
            DashboardService.get_overview(other_user.id)
