"""
Projection Service
==================
Month-by-month amortization of a user's open loans, with and without an
overpayment strategy.

Both generators share one loop.  For every month, each loan whose balance is
above £0.01 accrues ``balance × monthly rate`` of interest and pays

    principal = min(standard payment + overpayment − interest, balance)

The standard payment is fixed per loan from its balance and remaining term
(PMT formula, see utils.loan_math).  The loop stops when every balance is at
or below £0.01, or at the month cap.

  Baseline - overpayment is a flat ``extra_payment`` on every open loan
             (0 by default, i.e. standard payments only).
  Strategy - a monthly budget is split by an allocation policy
             (services.allocation_service).  With ``reinvest_reduced_payments``
             the standard payments of loans that have paid off are added to
             the budget from the following month on.

Primary entry points
--------------------
  generate_baseline_projection()  - schedule with standard payments (+ flat extra)
  generate_strategy_projection()  - schedule with an allocated overpayment budget
  summarize()                     - months and total interest of a schedule
  compare()                       - run both and diff total interest

Calculations run in floats; amounts are rounded to pennies only in the
emitted rows.
"""
import math

from services.allocation_service import allocate_overpayment
from utils.errors import ProjectionError
from utils.loan_math import (
    PAID_OFF_THRESHOLD,
    derive_standard_monthly_payment,
    increment_month,
    iso_month_string,
    monthly_rate,
    normalize_annual_rate,
)


DEFAULT_MAX_MONTHS = 600


class ProjectionLoan:
    """Mutable working copy of one loan for the projection loop.

    Exposes ``id``, ``remaining_balance`` and ``annual_rate`` so the
    allocation policies can read it like a Loan row.
    """

    def __init__(self, loan_id, balance, annual_rate, term_months):
        try:
            balance = float(balance)
            rate = float(annual_rate)
        except (TypeError, ValueError) as exc:
            raise ProjectionError(f"Loan {loan_id} has a non-numeric balance or rate") from exc

        if not math.isfinite(balance) or balance < 0:
            raise ProjectionError(f"Loan {loan_id} has an invalid balance: {balance}",
                                  details={'loan_id': loan_id})
        if not math.isfinite(rate):
            raise ProjectionError(f"Loan {loan_id} has an invalid rate: {rate}",
                                  details={'loan_id': loan_id})
        if term_months is None or int(term_months) <= 0:
            raise ProjectionError(f"Loan {loan_id} has a non-positive term: {term_months}",
                                  details={'loan_id': loan_id})

        self.id = loan_id
        self.loan_amount = balance
        self.remaining_balance = balance
        self.annual_rate = normalize_annual_rate(rate)
        self.term_months = int(term_months)
        self.monthly_rate = monthly_rate(rate)
        self.standard_payment = (
            derive_standard_monthly_payment(balance, self.annual_rate, self.term_months)
            if balance > 0 else 0.0
        )

    @classmethod
    def from_loan(cls, loan):
        return cls(loan.id, loan.remaining_balance, loan.annual_rate, loan.term_months)

    @classmethod
    def from_snapshot(cls, snapshot):
        return cls(snapshot.loan_id, snapshot.starting_balance, snapshot.starting_rate,
                   snapshot.remaining_term_months)

    @property
    def is_open(self):
        return self.remaining_balance > PAID_OFF_THRESHOLD

    def __repr__(self):
        return f'<ProjectionLoan {self.id}: {self.remaining_balance:.2f} @ {self.annual_rate}>'


def _working_copies(loans):
    copies = []
    for loan in loans:
        if isinstance(loan, ProjectionLoan):
            copies.append(ProjectionLoan(loan.id, loan.remaining_balance,
                                         loan.annual_rate, loan.term_months))
        else:
            copies.append(ProjectionLoan.from_loan(loan))
    return sorted(copies, key=lambda loan: loan.id)


def _run(loans, start_year, start_month, max_months, overpayments_for, include_budget):
    schedule = []
    cumulative_interest = 0.0
    year, month_index = start_year, start_month

    for _ in range(max_months):
        active = [loan for loan in loans if loan.is_open]
        if not active:
            break

        interests = {loan.id: loan.remaining_balance * loan.monthly_rate for loan in active}
        capacities = {
            loan.id: max(0.0, loan.remaining_balance + interests[loan.id] - loan.standard_payment)
            for loan in active
        }
        budget, overpayments = overpayments_for(active, capacities, interests)

        month_interest = 0.0
        month_principal = 0.0
        loan_rows = []
        paid_off = []
        for loan in active:
            interest = interests[loan.id]
            overpayment = overpayments.get(loan.id, 0.0)
            principal = min(loan.standard_payment + overpayment - interest, loan.remaining_balance)
            loan.remaining_balance -= principal
            if not loan.is_open:
                paid_off.append(loan)

            month_interest += interest
            month_principal += principal
            loan_rows.append({
                'loan_id': loan.id,
                'loan_amount': round(loan.loan_amount, 2),
                'interest': round(interest, 2),
                'principal': round(principal, 2),
                'overpayment': round(overpayment, 2),
                'remaining': round(max(loan.remaining_balance, 0.0), 2),
            })

        cumulative_interest += month_interest
        entry = {
            'month': iso_month_string(year, month_index),
            'interest': round(month_interest, 2),
            'principal': round(month_principal, 2),
            'remaining': round(sum(max(loan.remaining_balance, 0.0) for loan in loans), 2),
            'cumulative_interest': round(cumulative_interest, 2),
            'loans': loan_rows,
        }
        if include_budget:
            entry['overpayment_budget'] = round(budget, 2)
        schedule.append(entry)

        for loan in paid_off:
            loan.remaining_balance = 0.0
        year, month_index = increment_month(year, month_index)

    return schedule


class ProjectionService:
    """Baseline and strategy amortization schedules for a set of loans."""

    @staticmethod
    def standard_payment(loan):
        """Standard monthly payment of a Loan row from its balance and remaining term."""
        return ProjectionLoan.from_loan(loan).standard_payment

    @staticmethod
    def generate_baseline_projection(loans, start_year, start_month,
                                     max_months=DEFAULT_MAX_MONTHS, extra_payment=0):
        """Schedule with standard payments plus a flat *extra_payment* per open loan.

        Args:
            loans:        Loan rows or ProjectionLoan objects (never mutated).
            start_year:   Calendar year of the first projected month.
            start_month:  Zero-based month index (0 = January).
            max_months:   Month cap.
            extra_payment: Flat overpayment applied to every open loan.

        Returns:
            list of month dicts, see module docstring.
        """
        extra = float(extra_payment or 0)

        def flat_extra(active, capacities, interests):
            return 0.0, {loan.id: min(extra, capacities[loan.id]) for loan in active}

        return _run(_working_copies(loans), start_year, start_month, max_months,
                    flat_extra, include_budget=False)

    @staticmethod
    def generate_strategy_projection(loans, strategy, monthly_overpayment_limit,
                                     reinvest_reduced_payments, start_year, start_month,
                                     max_months=DEFAULT_MAX_MONTHS):
        """Schedule with the monthly overpayment budget split by *strategy*.

        The budget is ``monthly_overpayment_limit``, plus (when reinvesting)
        the standard payments of every loan already paid off.  Loans that
        paid off during a month free their payment from the next month.

        Each month dict carries ``overpayment_budget`` in addition to the
        baseline fields.
        """
        working = _working_copies(loans)
        limit = float(monthly_overpayment_limit or 0)
        if not math.isfinite(limit) or limit < 0:
            raise ProjectionError(f"Invalid monthly overpayment limit: {monthly_overpayment_limit}")
        initial_standard_total = sum(loan.standard_payment for loan in working if loan.is_open)

        def allocated(active, capacities, interests):
            budget = limit
            if reinvest_reduced_payments:
                freed = initial_standard_total - sum(loan.standard_payment for loan in active)
                budget += max(0.0, freed)
            return budget, allocate_overpayment(active, strategy, budget, capacities, interests)

        return _run(working, start_year, start_month, max_months,
                    allocated, include_budget=True)

    @staticmethod
    def summarize(schedule):
        """Months to payoff and total interest of a generated schedule."""
        if not schedule:
            return {'months': 0, 'total_interest': 0.0, 'paid_off': True}
        return {
            'months': len(schedule),
            'total_interest': schedule[-1]['cumulative_interest'],
            'paid_off': schedule[-1]['remaining'] <= PAID_OFF_THRESHOLD,
        }

    @staticmethod
    def compare(loans, strategy, monthly_overpayment_limit, reinvest_reduced_payments,
                start_year, start_month, max_months=DEFAULT_MAX_MONTHS):
        """Run the baseline and strategy projections over the same loans.

        Returns both schedules, both summaries and ``total_interest_saved``
        (never negative).
        """
        baseline = ProjectionService.generate_baseline_projection(
            loans, start_year, start_month, max_months=max_months
        )
        projected = ProjectionService.generate_strategy_projection(
            loans, strategy, monthly_overpayment_limit, reinvest_reduced_payments,
            start_year, start_month, max_months=max_months
        )
        baseline_summary = ProjectionService.summarize(baseline)
        strategy_summary = ProjectionService.summarize(projected)
        saved = max(0.0, baseline_summary['total_interest'] - strategy_summary['total_interest'])

        return {
            'baseline': baseline,
            'strategy': projected,
            'baseline_summary': baseline_summary,
            'strategy_summary': strategy_summary,
            'total_interest_saved': round(saved, 2),
        }
