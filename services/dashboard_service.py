"""
Dashboard Service
=================
Everything the dashboard shows in one read, cached per user.

Overview sections
-----------------
  active_simulation - summary of the user's active plan (NotFoundError if none)
  loans             - per-loan standard payment, months remaining, progress
  current_month     - this month's execution log entries
  graphs            - optional: projected balances and interest vs. saved
  adherence         - optional: counts of paid / executed / skipped entries

Every read first reconciles the execution logs up to the current month.
Results are cached in ``extensions.dashboard_cache`` under the user id and
the requested sections; loan, settings and execution-log mutations drop the
user's entries.
"""
import copy
import math

from flask import current_app
from sqlalchemy import func

from extensions import db, dashboard_cache
from models.loans import Loan
from models.monthly_execution_logs import (
    MonthlyExecutionLog,
    OVERPAYMENT_EXECUTED,
    OVERPAYMENT_SKIPPED,
    PAYMENT_BACKFILLED,
    PAYMENT_PAID,
)
from services.execution_log_service import ExecutionLogService
from services.projection_service import ProjectionService
from services.simulation_service import SimulationService
from utils.db_helpers import user_query
from utils.errors import NotFoundError, ValidationError
from utils.loan_math import monthly_rate, month_start, months_between


INCLUDE_MONTHLY_TREND = 'monthly_trend'
INCLUDE_INTEREST_BREAKDOWN = 'interest_breakdown'
INCLUDE_ADHERENCE = 'adherence'
INCLUDE_OPTIONS = (INCLUDE_MONTHLY_TREND, INCLUDE_INTEREST_BREAKDOWN, INCLUDE_ADHERENCE)


class DashboardService:

    @staticmethod
    def parse_include(raw):
        """``'monthly_trend,adherence'`` -> frozenset of include flags."""
        if not raw:
            return frozenset()
        flags = frozenset(part.strip() for part in raw.split(',') if part.strip())
        unknown = flags - set(INCLUDE_OPTIONS)
        if unknown:
            raise ValidationError(
                f"Unknown include option(s): {', '.join(sorted(unknown))}",
                details={'allowed': list(INCLUDE_OPTIONS)},
            )
        return flags

    @staticmethod
    def get_overview(user_id, include=frozenset(), now=None):
        """Dashboard payload for *user_id*.

        Args:
            include: flags from INCLUDE_OPTIONS selecting optional sections.
            now:     reference date for the current month (defaults to today).

        Raises:
            NotFoundError: the user has no active simulation.
        """
        current = month_start(now)
        reconciled = ExecutionLogService.ensure_monthly_execution_logs(user_id, now=current)
        if reconciled['created']:
            dashboard_cache.invalidate(user_id)

        variant = f"{current.isoformat()}|{','.join(sorted(include))}"
        cached = dashboard_cache.get(user_id, variant)
        if cached is not None:
            return copy.deepcopy(cached)

        simulation = SimulationService.get_active_simulation(user_id)
        if simulation is None:
            raise NotFoundError('No active simulation', code='ACTIVE_SIMULATION_NOT_FOUND')

        loans = user_query(Loan, user_id).order_by(Loan.id).all()
        overview = {
            'active_simulation': {
                'id': simulation.id,
                'strategy': simulation.strategy,
                'goal': simulation.goal,
                'status': simulation.status,
                'stale': simulation.stale,
                'projected_payoff_month': (simulation.projected_payoff_month.isoformat()
                                           if simulation.projected_payoff_month else None),
                'total_interest_saved': float(simulation.total_interest_saved or 0),
            },
            'loans': [DashboardService.loan_metrics(loan, current) for loan in loans],
            'current_month': DashboardService._current_month(user_id, current),
        }

        if INCLUDE_MONTHLY_TREND in include or INCLUDE_INTEREST_BREAKDOWN in include:
            series = DashboardService._projection_series(simulation, loans, current)
            overview['graphs'] = {}
            if INCLUDE_MONTHLY_TREND in include:
                overview['graphs']['monthly_balances'] = series['monthly_balances']
            if INCLUDE_INTEREST_BREAKDOWN in include:
                overview['graphs']['interest_vs_saved'] = series['interest_vs_saved']

        if INCLUDE_ADHERENCE in include:
            overview['adherence'] = DashboardService._adherence(user_id)

        dashboard_cache.set(user_id, copy.deepcopy(overview), variant)
        current_app.logger.debug(f"Built dashboard overview for user {user_id} ({variant})")
        return overview

    @staticmethod
    def loan_metrics(loan, current):
        """Standard payment, months remaining and repayment progress of one loan."""
        balance = float(loan.remaining_balance)
        payment = 0.0
        months_remaining = 0

        if not loan.is_closed and balance > 0:
            payment = ProjectionService.standard_payment(loan)
            rate = monthly_rate(loan.annual_rate)
            if rate > 0:
                ratio = 1 - (balance * rate) / payment
                months_remaining = math.ceil(-math.log(ratio) / math.log(1 + rate)) if ratio > 0 else 0
            else:
                months_remaining = math.ceil(balance / payment)
            elapsed = months_between(loan.start_month, current)
            months_remaining = max(0, min(months_remaining, loan.original_term_months - elapsed))

        principal = float(loan.principal)
        progress = (principal - balance) / principal if principal else 0.0

        return {
            'loan_id': loan.id,
            'name': loan.name,
            'remaining_balance': round(balance, 2),
            'monthly_payment': round(payment, 2),
            'months_remaining': months_remaining,
            'progress': round(min(1.0, max(0.0, progress)), 4),
            'is_closed': loan.is_closed,
        }

    @staticmethod
    def _current_month(user_id, current):
        logs = user_query(MonthlyExecutionLog, user_id).filter_by(month_start=current)\
            .order_by(MonthlyExecutionLog.loan_id).all()
        return {
            'month_start': current.isoformat(),
            'entries': [{
                'log_id': log.id,
                'loan_id': log.loan_id,
                'scheduled_payment': round(float(log.interest_portion or 0)
                                           + float(log.principal_portion or 0), 2),
                'scheduled_overpayment': float(log.scheduled_overpayment_amount or 0),
                'payment_status': log.payment_status,
                'overpayment_status': log.overpayment_status,
            } for log in logs],
        }

    @staticmethod
    def _projection_series(simulation, loans, current):
        """Projected total balance per month and interest paid vs. saved."""
        open_loans = [loan for loan in loans if not loan.is_closed]
        if not open_loans:
            return {'monthly_balances': [], 'interest_vs_saved': []}

        comparison = ProjectionService.compare(
            open_loans,
            simulation.strategy,
            simulation.monthly_overpayment_limit,
            simulation.reinvest_reduced_payments,
            current.year,
            current.month - 1,
            max_months=current_app.config.get('SIMULATION_MAX_MONTHS', 600),
        )
        baseline_interest = {entry['month']: entry['interest'] for entry in comparison['baseline']}

        monthly_balances = []
        interest_vs_saved = []
        for entry in comparison['strategy']:
            monthly_balances.append({'month': entry['month'], 'total_remaining': entry['remaining']})
            interest_vs_saved.append({
                'month': entry['month'],
                'interest': entry['interest'],
                'interest_saved': round(max(0.0, baseline_interest.get(entry['month'], 0.0)
                                            - entry['interest']), 2),
            })
        return {'monthly_balances': monthly_balances, 'interest_vs_saved': interest_vs_saved}

    @staticmethod
    def _adherence(user_id):
        """Counts of ledger outcomes; ratio is executed / (executed + skipped)."""
        payment_counts = dict(
            db.session.query(MonthlyExecutionLog.payment_status, func.count(MonthlyExecutionLog.id))
            .filter(MonthlyExecutionLog.user_id == user_id)
            .group_by(MonthlyExecutionLog.payment_status)
            .all()
        )
        overpayment_counts = dict(
            db.session.query(MonthlyExecutionLog.overpayment_status, func.count(MonthlyExecutionLog.id))
            .filter(MonthlyExecutionLog.user_id == user_id)
            .group_by(MonthlyExecutionLog.overpayment_status)
            .all()
        )
        executed = overpayment_counts.get(OVERPAYMENT_EXECUTED, 0)
        skipped = overpayment_counts.get(OVERPAYMENT_SKIPPED, 0)
        return {
            'backfilled_payment_count': payment_counts.get(PAYMENT_BACKFILLED, 0),
            'paid_payment_count': payment_counts.get(PAYMENT_PAID, 0),
            'overpayment_executed_count': executed,
            'overpayment_skipped_count': skipped,
            'ratio': round(executed / (executed + skipped), 4) if executed + skipped else 0.0,
        }
