"""
Overpayment Allocation
======================
Pure functions that split one month's overpayment budget across a user's
open loans.

Policies
--------
  avalanche - whole budget to the highest-rate loan, remainder rolls to the next
  snowball  - whole budget to the smallest-balance loan, remainder rolls on
  equal     - even split in whole cents, remainder cents to the first loan by id
  ratio     - proportional to each loan's interest for the month

Every policy respects per-loan *capacity*: the principal a loan still owes
after its standard payment.  A loan never receives more than it can absorb,
and whatever it cannot absorb moves to the other loans.  Ties on the ordering
key are broken by loan id, so identical inputs always give identical output.

Loans are any objects exposing ``id``, ``remaining_balance`` and
``annual_rate``.
"""
import math

from utils.errors import ValidationError
from utils.loan_math import PAID_OFF_THRESHOLD, monthly_rate


STRATEGY_AVALANCHE = 'avalanche'
STRATEGY_SNOWBALL = 'snowball'
STRATEGY_EQUAL = 'equal'
STRATEGY_RATIO = 'ratio'

STRATEGIES = (
    {'id': STRATEGY_AVALANCHE, 'name': 'Debt Avalanche',
     'description': 'Pay highest interest first'},
    {'id': STRATEGY_SNOWBALL, 'name': 'Debt Snowball',
     'description': 'Pay smallest balance first'},
    {'id': STRATEGY_EQUAL, 'name': 'Equal Distribution',
     'description': 'Distribute overpayment equally'},
    {'id': STRATEGY_RATIO, 'name': 'Ratio Allocation',
     'description': 'Allocate by interest share'},
)

STRATEGY_IDS = tuple(strategy['id'] for strategy in STRATEGIES)

# Leftover budget smaller than this is rounding noise
_EPSILON = 1e-9


def list_strategies():
    """Catalogue of the available allocation policies."""
    return [dict(strategy) for strategy in STRATEGIES]


def allocate_overpayment(loans, strategy, budget, capacities=None, interests=None):
    """Split *budget* across *loans* according to *strategy*.

    Args:
        loans:      Open loans for the month.
        strategy:   One of ``STRATEGY_IDS``.
        budget:     Overpayment available this month.
        capacities: ``{loan_id: max extra principal}``; defaults to the
                    remaining balance.
        interests:  ``{loan_id: interest this month}`` used by ``ratio``;
                    defaults to balance × monthly rate.

    Returns:
        dict mapping every loan id to its overpayment (0.0 when it gets none).
        The amounts sum to *budget* unless the loans cannot absorb it all.
    """
    if strategy not in STRATEGY_IDS:
        raise ValidationError(f"Unknown strategy '{strategy}'", code='INVALID_STRATEGY')

    allocation = {loan.id: 0.0 for loan in loans}
    budget = float(budget or 0)
    if budget <= 0:
        return allocation

    if capacities is None:
        capacities = {loan.id: float(loan.remaining_balance) for loan in loans}

    eligible = [
        loan for loan in loans
        if float(loan.remaining_balance) > PAID_OFF_THRESHOLD and capacities.get(loan.id, 0) > 0
    ]
    if not eligible:
        return allocation

    if strategy == STRATEGY_AVALANCHE:
        ordered = sorted(eligible, key=lambda loan: (-float(loan.annual_rate), loan.id))
        allocation.update(_allocate_in_order(ordered, budget, capacities))
    elif strategy == STRATEGY_SNOWBALL:
        ordered = sorted(eligible, key=lambda loan: (float(loan.remaining_balance), loan.id))
        allocation.update(_allocate_in_order(ordered, budget, capacities))
    elif strategy == STRATEGY_EQUAL:
        allocation.update(_allocate_equal(eligible, budget, capacities))
    else:
        if interests is None:
            interests = {
                loan.id: float(loan.remaining_balance) * monthly_rate(loan.annual_rate)
                for loan in loans
            }
        allocation.update(_allocate_ratio(eligible, budget, capacities, interests))

    return allocation


def _allocate_in_order(ordered, budget, capacities):
    """Fill loans one at a time, rolling what is left to the next."""
    allocation = {}
    remaining = budget
    for loan in ordered:
        if remaining <= _EPSILON:
            break
        amount = min(remaining, capacities[loan.id])
        allocation[loan.id] = amount
        remaining -= amount
    return allocation


def _allocate_equal(loans, budget, capacities):
    """Even split in cents; capped loans drop out and the rest share again."""
    ordered = sorted(loans, key=lambda loan: loan.id)
    room = {loan.id: int(math.floor(capacities[loan.id] * 100 + _EPSILON)) for loan in ordered}
    given = {loan.id: 0 for loan in ordered}
    remaining = int(round(budget * 100))
    open_loans = [loan for loan in ordered if room[loan.id] > 0]

    while remaining > 0 and open_loans:
        share, extra = divmod(remaining, len(open_loans))
        still_open = []
        for index, loan in enumerate(open_loans):
            wanted = share + (extra if index == 0 else 0)
            amount = min(wanted, room[loan.id])
            given[loan.id] += amount
            room[loan.id] -= amount
            remaining -= amount
            if room[loan.id] > 0:
                still_open.append(loan)
        if len(still_open) == len(open_loans):
            break
        open_loans = still_open

    return {loan_id: cents / 100 for loan_id, cents in given.items()}


def _allocate_ratio(loans, budget, capacities, interests):
    """Interest-weighted split; capped loans drop out and the rest re-share."""
    allocation = {loan.id: 0.0 for loan in loans}
    open_loans = sorted(loans, key=lambda loan: loan.id)
    remaining = budget

    while remaining > _EPSILON and open_loans:
        weights = {loan.id: max(0.0, interests.get(loan.id, 0.0)) for loan in open_loans}
        total_weight = sum(weights.values())
        if total_weight <= 0:
            weights = {loan.id: 1.0 for loan in open_loans}
            total_weight = float(len(open_loans))

        shares = {loan.id: remaining * weights[loan.id] / total_weight for loan in open_loans}
        capped = [
            loan for loan in open_loans
            if shares[loan.id] >= capacities[loan.id] - allocation[loan.id]
        ]

        if not capped:
            for loan in open_loans:
                allocation[loan.id] += shares[loan.id]
            remaining = 0.0
            break

        for loan in capped:
            amount = capacities[loan.id] - allocation[loan.id]
            allocation[loan.id] += amount
            remaining -= amount
        open_loans = [loan for loan in open_loans if loan not in capped]

    return allocation
