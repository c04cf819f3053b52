"""
Loan Service
============
CRUD for a user's loans, with an audit trail of edits and invalidation of the
active simulation.

Every mutation that touches a simulation-relevant field (see
``Loan.SIMULATION_FIELDS``) marks the active simulation stale and drops the
user's dashboard cache in the same call.

Change events
-------------
Updates append LoanChangeEvent rows, one per kind of change:

  principal_correction - principal changed
  rate_change          - annual_rate changed
  term_adjustment      - term_months changed
  balance_adjustment   - remaining_balance changed

Optimistic concurrency
----------------------
``etag()`` fingerprints a loan.  Full updates must present the current tag;
partial updates may.  A mismatch raises PreconditionError.

Primary entry points
--------------------
  list_loans() / get_loan()
  create_loan() / update_loan() / patch_loan()
  close_loan() / delete_loan()
"""
import base64
import hashlib
import math
from decimal import Decimal, InvalidOperation

from flask import current_app

from extensions import db
from models.loans import Loan, LoanChangeEvent
from models.simulations import Simulation, STATUS_RUNNING
from services.staleness_service import StalenessService
from utils.db_helpers import user_get_or_404, user_query
from utils.errors import ConflictError, PreconditionError, ValidationError
from utils.loan_math import month_start, to_money


EDITABLE_FIELDS = (
    'name',
    'principal',
    'remaining_balance',
    'annual_rate',
    'term_months',
    'original_term_months',
    'start_month',
    'is_closed',
    'closed_month',
)

REQUIRED_FIELDS = ('principal', 'remaining_balance', 'annual_rate', 'term_months', 'start_month')

# (change_type, field) pairs recorded as LoanChangeEvent rows
CHANGE_EVENT_FIELDS = (
    ('principal_correction', 'principal'),
    ('rate_change', 'annual_rate'),
    ('term_adjustment', 'term_months'),
    ('balance_adjustment', 'remaining_balance'),
)


class LoanService:
    """Loan CRUD, change events and simulation invalidation."""

    @staticmethod
    def etag(loan):
        """Weak entity tag over the loan's simulation-relevant state."""
        parts = [str(loan.id), loan.created_at.isoformat() if loan.created_at else '']
        parts.extend('' if value is None else str(value) for value in loan.simulation_state())
        digest = hashlib.sha256('|'.join(parts).encode()).digest()
        token = base64.urlsafe_b64encode(digest).decode().rstrip('=')
        return f'W/"loan:{loan.id}:{token}"'

    @staticmethod
    def _check_etag(loan, expected_etag, required):
        expected = (expected_etag or '').strip()
        if not expected:
            if required:
                raise PreconditionError('If-Match header is required to update a loan',
                                        code='LOAN_ETAG_REQUIRED')
            return
        if expected != LoanService.etag(loan):
            raise PreconditionError('Loan has been modified by another process. Refresh and retry.',
                                    code='LOAN_ETAG_MISMATCH')

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def list_loans(user_id, is_closed=None, page=1, page_size=20, sort='created_at', order='desc'):
        """Paginated loans for *user_id*, optionally filtered by closed state."""
        query = user_query(Loan, user_id)
        if is_closed is not None:
            query = query.filter_by(is_closed=is_closed)

        sort_column = {
            'created_at': Loan.created_at,
            'remaining_balance': Loan.remaining_balance,
            'annual_rate': Loan.annual_rate,
            'name': Loan.name,
        }.get(sort)
        if sort_column is None:
            raise ValidationError(f"Cannot sort loans by '{sort}'", details={'field': 'sort'})
        sort_column = sort_column.asc() if order == 'asc' else sort_column.desc()

        page, page_size = max(1, int(page)), min(100, max(1, int(page_size)))
        total = query.count()
        items = query.order_by(sort_column, Loan.id).offset((page - 1) * page_size).limit(page_size).all()

        return {
            'items': [loan.to_dict() for loan in items],
            'page': page,
            'page_size': page_size,
            'total': total,
            'total_pages': (total + page_size - 1) // page_size,
        }

    @staticmethod
    def get_loan(user_id, loan_id):
        return user_get_or_404(Loan, loan_id, user_id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @staticmethod
    def create_loan(user_id, data):
        """Create a loan and mark the active simulation stale.

        ``original_term_months`` defaults to ``term_months``.

        Returns:
            (loan, stale_marked)
        """
        missing = [field for field in REQUIRED_FIELDS if data.get(field) is None]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}",
                                  details={'fields': missing})

        values = _clean_values(data)
        values.setdefault('original_term_months', values['term_months'])
        values.setdefault('is_closed', False)
        _check_consistency(values)

        loan = Loan(user_id=user_id, **values)
        if loan.is_closed:
            loan.remaining_balance = Decimal('0.00')
            loan.closed_month = loan.closed_month or month_start()

        db.session.add(loan)
        db.session.flush()
        stale = StalenessService.invalidate_user(user_id, commit=False)
        db.session.commit()

        current_app.logger.info(f"Created loan {loan.id} for user {user_id}")
        return loan, stale

    @staticmethod
    def update_loan(user_id, loan_id, data, expected_etag=None):
        """Replace every editable field of a loan (If-Match required)."""
        loan = user_get_or_404(Loan, loan_id, user_id)
        LoanService._check_etag(loan, expected_etag, required=True)

        missing = [field for field in REQUIRED_FIELDS if data.get(field) is None]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}",
                                  details={'fields': missing})
        values = _clean_values(data)
        values.setdefault('name', None)
        values.setdefault('original_term_months', loan.original_term_months)
        values.setdefault('is_closed', False)
        values.setdefault('closed_month', None)
        return LoanService._apply(user_id, loan, values)

    @staticmethod
    def patch_loan(user_id, loan_id, data, expected_etag=None):
        """Update only the fields present in *data* (If-Match optional)."""
        loan = user_get_or_404(Loan, loan_id, user_id)
        LoanService._check_etag(loan, expected_etag, required=False)
        values = _clean_values(data)
        if not values:
            return loan, False
        return LoanService._apply(user_id, loan, values)

    @staticmethod
    def close_loan(user_id, loan_id, closed_month=None):
        """Close a loan: balance to zero, excluded from projections from now on."""
        loan = user_get_or_404(Loan, loan_id, user_id)
        if loan.is_closed:
            raise ConflictError(f"Loan {loan_id} is already closed", code='LOAN_CLOSED')
        values = {
            'is_closed': True,
            'remaining_balance': Decimal('0.00'),
            'closed_month': _parse_month(closed_month) if closed_month else month_start(),
        }
        return LoanService._apply(user_id, loan, values)

    @staticmethod
    def delete_loan(user_id, loan_id):
        """Delete a loan with its events, logs and snapshots.

        Refused while a simulation is running, since it may be reading the loan.
        """
        loan = user_get_or_404(Loan, loan_id, user_id)
        running = user_query(Simulation, user_id).filter_by(status=STATUS_RUNNING).count()
        if running:
            raise ConflictError('Cannot delete a loan while a simulation is running',
                                code='SIMULATION_RUNNING')

        db.session.delete(loan)
        db.session.flush()
        stale = StalenessService.invalidate_user(user_id, commit=False)
        db.session.commit()

        current_app.logger.info(f"Deleted loan {loan_id} for user {user_id}")
        return stale

    @staticmethod
    def _apply(user_id, loan, values):
        if ('original_term_months' in values
                and values['original_term_months'] != loan.original_term_months):
            raise ValidationError('original_term_months cannot be modified after loan creation',
                                  code='LOAN_ORIGINAL_TERM_IMMUTABLE')

        merged = {field: getattr(loan, field) for field in EDITABLE_FIELDS}
        merged.update(values)
        if merged['is_closed'] and not loan.is_closed:
            merged['remaining_balance'] = Decimal('0.00')
            merged['closed_month'] = merged['closed_month'] or month_start()
        elif not merged['is_closed'] and 'closed_month' not in values:
            # Reopening drops the stored closing month
            merged['closed_month'] = None
        _check_consistency(merged)

        before = {field: getattr(loan, field) for field in Loan.SIMULATION_FIELDS}
        previous_state = loan.simulation_state()
        for field, value in merged.items():
            setattr(loan, field, value)

        effective_month = month_start()
        for change_type, field in CHANGE_EVENT_FIELDS:
            old, new = before[field], getattr(loan, field)
            if old == new:
                continue
            db.session.add(LoanChangeEvent(
                user_id=user_id,
                loan_id=loan.id,
                change_type=change_type,
                effective_month=effective_month,
                **{f'old_{field}': old, f'new_{field}': new},
            ))

        stale = False
        if loan.simulation_state() != previous_state:
            stale = StalenessService.invalidate_user(user_id, commit=False)
        else:
            StalenessService.invalidate_user(user_id, mark_stale=False)
        db.session.commit()

        current_app.logger.info(f"Updated loan {loan.id} for user {user_id} (stale_marked={stale})")
        return loan, stale


def _clean_values(data):
    """Parse the editable fields present in *data*; raise ValidationError on bad input."""
    values = {}
    for field in EDITABLE_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if field == 'name':
            values[field] = (str(value).strip() or None) if value is not None else None
        elif field in ('principal', 'remaining_balance'):
            values[field] = _parse_money(value, field)
        elif field == 'annual_rate':
            values[field] = _parse_rate(value)
        elif field in ('term_months', 'original_term_months'):
            values[field] = _parse_term(value, field)
        elif field in ('start_month', 'closed_month'):
            values[field] = _parse_month(value) if value is not None else None
        elif field == 'is_closed':
            if not isinstance(value, bool):
                raise ValidationError('is_closed must be a boolean', details={'field': field})
            values[field] = value
    return values


def _check_consistency(values):
    if values['remaining_balance'] > values['principal']:
        raise ValidationError('remaining_balance cannot exceed principal',
                              details={'field': 'remaining_balance'})
    if values.get('closed_month') and not values.get('is_closed'):
        raise ValidationError('closed_month requires is_closed', details={'field': 'closed_month'})


def _parse_money(value, field):
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", details={'field': field})
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", details={'field': field})
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{field} must be a non-negative number", details={'field': field})
    if field == 'principal' and amount <= 0:
        raise ValidationError('principal must be greater than 0', details={'field': field})
    return to_money(amount)


def _parse_rate(value):
    """Accept 0.065 or 6.5 for 6.5%; store the decimal form."""
    if isinstance(value, bool):
        raise ValidationError('annual_rate must be a number', details={'field': 'annual_rate'})
    try:
        rate = float(value)
    except (TypeError, ValueError):
        raise ValidationError('annual_rate must be a number', details={'field': 'annual_rate'})
    if not math.isfinite(rate) or rate <= 0:
        raise ValidationError('annual_rate must be greater than 0', details={'field': 'annual_rate'})
    if rate >= 1:
        rate = rate / 100
    if rate >= 1:
        raise ValidationError('annual_rate must be below 100%', details={'field': 'annual_rate'})
    return Decimal(str(rate)).quantize(Decimal('0.00001'))


def _parse_term(value, field):
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a whole number of months", details={'field': field})
    try:
        term = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a whole number of months", details={'field': field})
    if term != value and str(term) != str(value):
        raise ValidationError(f"{field} must be a whole number of months", details={'field': field})
    if term <= 0:
        raise ValidationError(f"{field} must be greater than 0", details={'field': field})
    return term


def _parse_month(value):
    try:
        return month_start(value)
    except (AttributeError, TypeError, ValueError):
        raise ValidationError(f"Invalid month '{value}'")
