"""
Execution Log Service
=====================
Per-loan, per-month ledger of what the user actually paid against the
active simulation's plan.

Reconciliation
--------------
``ensure_monthly_execution_logs`` fills in every missing (month, open loan)
row from the active simulation's start month through the current month:

  Past months    - payment ``backfilled``, overpayment ``backfilled``,
                   executed-at stamped with the month start.
  Current month  - payment ``pending``, overpayment ``scheduled``.

Scheduled amounts and the interest / principal / remaining figures come from
replaying the strategy projection from the simulation's loan snapshots.

Status transitions
------------------
  payment:      pending   → paid | backfilled
  overpayment:  scheduled → executed | skipped | backfilled

Skipping or backfilling an overpayment means the plan no longer matches
reality, so the active simulation is marked stale.
"""
from datetime import datetime
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy.exc import IntegrityError

from extensions import db
from models.loans import Loan
from models.monthly_execution_logs import (
    MonthlyExecutionLog,
    OVERPAYMENT_BACKFILLED,
    OVERPAYMENT_EXECUTED,
    OVERPAYMENT_SCHEDULED,
    OVERPAYMENT_SKIPPED,
    OVERPAYMENT_STATUSES,
    PAYMENT_BACKFILLED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    PAYMENT_STATUSES,
)
from models.simulations import Simulation, SimulationLoanSnapshot
from services.projection_service import ProjectionLoan, ProjectionService
from services.staleness_service import StalenessService
from utils.db_helpers import user_get, user_get_or_404, user_query, utcnow
from utils.errors import ConflictError, NotFoundError, ValidationError
from utils.loan_math import iter_month_starts, month_start, to_money


BACKFILL_REASON = 'Automatically backfilled on dashboard load'

PAYMENT_TRANSITIONS = {
    PAYMENT_PENDING: (PAYMENT_PAID, PAYMENT_BACKFILLED),
    PAYMENT_PAID: (),
    PAYMENT_BACKFILLED: (),
}

OVERPAYMENT_TRANSITIONS = {
    OVERPAYMENT_SCHEDULED: (OVERPAYMENT_EXECUTED, OVERPAYMENT_SKIPPED, OVERPAYMENT_BACKFILLED),
    OVERPAYMENT_EXECUTED: (),
    OVERPAYMENT_SKIPPED: (),
    OVERPAYMENT_BACKFILLED: (),
}

# Overpayment outcomes that invalidate the plan and need an explanation
STALE_OVERPAYMENT_STATUSES = (OVERPAYMENT_SKIPPED, OVERPAYMENT_BACKFILLED)

AMOUNT_FIELDS = (
    'scheduled_overpayment_amount',
    'actual_overpayment_amount',
    'interest_portion',
    'principal_portion',
    'remaining_balance_after',
)


class ExecutionLogService:

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    @staticmethod
    def ensure_monthly_execution_logs(user_id, now=None):
        """Create the missing log rows up to the current month.

        Only runs for an active, non-stale simulation.  Existing rows are
        never touched.

        Args:
            user_id: Owner of the logs.
            now:     Reference date for "current month" (defaults to today, UTC).

        Returns:
            dict with ``created`` (rows inserted) and ``months`` (ISO month
            starts considered).
        """
        logger = current_app.logger
        simulation = user_query(Simulation, user_id).filter_by(is_active=True, stale=False).first()
        if simulation is None:
            logger.debug(f"Reconciliation skipped for user {user_id}: no active simulation")
            return {'created': 0, 'months': []}

        loans = user_query(Loan, user_id).filter_by(is_closed=False).order_by(Loan.id).all()
        if not loans:
            return {'created': 0, 'months': []}

        start = month_start(simulation.start_reference)
        current = month_start(now)
        months = list(iter_month_starts(start, current))
        if not months:
            return {'created': 0, 'months': []}

        planned = ExecutionLogService._planned_rows(simulation, start, len(months))

        existing = {
            (loan_id, month)
            for loan_id, month in db.session.query(
                MonthlyExecutionLog.loan_id, MonthlyExecutionLog.month_start
            ).filter(
                MonthlyExecutionLog.user_id == user_id,
                MonthlyExecutionLog.month_start >= start,
                MonthlyExecutionLog.month_start <= current,
            )
        }

        created = 0
        for month in months:
            is_past = month < current
            executed_at = datetime(month.year, month.month, 1)
            for loan in loans:
                if (loan.id, month) in existing:
                    continue
                row = planned.get((month.isoformat(), loan.id), {})
                log = MonthlyExecutionLog(
                    user_id=user_id,
                    loan_id=loan.id,
                    month_start=month,
                    scheduled_overpayment_amount=to_money(row.get('overpayment', 0)),
                    interest_portion=_optional_money(row.get('interest')),
                    principal_portion=_optional_money(row.get('principal')),
                    remaining_balance_after=_optional_money(row.get('remaining')),
                )
                if is_past:
                    log.payment_status = PAYMENT_BACKFILLED
                    log.overpayment_status = OVERPAYMENT_BACKFILLED
                    log.payment_executed_at = executed_at
                    log.overpayment_executed_at = executed_at
                    log.reason_code = BACKFILL_REASON
                else:
                    log.payment_status = PAYMENT_PENDING
                    log.overpayment_status = OVERPAYMENT_SCHEDULED
                db.session.add(log)
                created += 1

        month_list = [month.isoformat() for month in months]
        if not created:
            return {'created': 0, 'months': month_list}

        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.warning(
                f"Reconciliation for user {user_id} lost a concurrent insert; leaving existing rows"
            )
            return {'created': 0, 'months': month_list}

        logger.info(
            f"Reconciliation created {created} execution log(s) for user {user_id} "
            f"({month_list[0]} .. {month_list[-1]})"
        )
        return {'created': created, 'months': month_list}

    @staticmethod
    def _planned_rows(simulation, start, month_count):
        """``{(month_iso, loan_id): per-loan projection row}`` from the snapshots."""
        snapshots = SimulationLoanSnapshot.query.filter_by(simulation_id=simulation.id)\
            .order_by(SimulationLoanSnapshot.loan_id).all()
        if not snapshots:
            return {}

        schedule = ProjectionService.generate_strategy_projection(
            [ProjectionLoan.from_snapshot(snapshot) for snapshot in snapshots],
            simulation.strategy,
            simulation.monthly_overpayment_limit,
            simulation.reinvest_reduced_payments,
            start.year,
            start.month - 1,
            max_months=month_count,
        )
        return {
            (entry['month'], row['loan_id']): row
            for entry in schedule
            for row in entry['loans']
        }

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    @staticmethod
    def list_logs(user_id, loan_id=None, month=None, payment_status=None,
                  overpayment_status=None, page=1, page_size=20, order='desc'):
        """Filtered, paginated logs, ordered by month then loan."""
        query = user_query(MonthlyExecutionLog, user_id)
        if loan_id is not None:
            query = query.filter_by(loan_id=loan_id)
        if month is not None:
            query = query.filter_by(month_start=_parse_month(month))
        if payment_status:
            _check_choice(payment_status, PAYMENT_STATUSES, 'payment_status')
            query = query.filter_by(payment_status=payment_status)
        if overpayment_status:
            _check_choice(overpayment_status, OVERPAYMENT_STATUSES, 'overpayment_status')
            query = query.filter_by(overpayment_status=overpayment_status)

        page, page_size = max(1, int(page)), min(100, max(1, int(page_size)))
        total = query.count()

        if order == 'asc':
            query = query.order_by(MonthlyExecutionLog.month_start.asc(), MonthlyExecutionLog.loan_id)
        else:
            query = query.order_by(MonthlyExecutionLog.month_start.desc(), MonthlyExecutionLog.loan_id)
        items = query.offset((page - 1) * page_size).limit(page_size).all()

        return {
            'items': [log.to_dict() for log in items],
            'page': page,
            'page_size': page_size,
            'total': total,
            'total_pages': (total + page_size - 1) // page_size,
        }

    @staticmethod
    def create_log(user_id, data):
        """Record a log row by hand.

        Raises:
            NotFoundError:   the loan does not exist for the user.
            ConflictError:   the loan is closed, or a row exists for the month.
            ValidationError: bad month, status or amount.
        """
        loan = user_get(Loan, data.get('loan_id'), user_id)
        if loan is None:
            raise NotFoundError(f"Loan {data.get('loan_id')} not found")
        if loan.is_closed:
            raise ConflictError('Cannot create a log for a closed loan', code='LOAN_CLOSED')

        payment_status = data.get('payment_status') or PAYMENT_PENDING
        overpayment_status = data.get('overpayment_status') or OVERPAYMENT_SCHEDULED
        _check_choice(payment_status, PAYMENT_STATUSES, 'payment_status')
        _check_choice(overpayment_status, OVERPAYMENT_STATUSES, 'overpayment_status')

        reason = _clean_reason(data.get('reason_code'))
        if overpayment_status in STALE_OVERPAYMENT_STATUSES and not reason:
            raise ValidationError(f"reason_code is required when overpayment is {overpayment_status}",
                                  details={'field': 'reason_code'})

        month = _parse_month(data.get('month_start'))
        now = utcnow()
        log = MonthlyExecutionLog(
            user_id=user_id,
            loan_id=loan.id,
            month_start=month,
            payment_status=payment_status,
            overpayment_status=overpayment_status,
            reason_code=reason,
            payment_executed_at=now if payment_status != PAYMENT_PENDING else None,
            overpayment_executed_at=(now if overpayment_status in (OVERPAYMENT_EXECUTED,
                                                                   OVERPAYMENT_BACKFILLED) else None),
        )
        for field in AMOUNT_FIELDS:
            if data.get(field) is not None:
                setattr(log, field, _parse_amount(data[field], field))

        db.session.add(log)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError(
                f"A log already exists for loan {loan.id} in {month.isoformat()}",
                code='DUPLICATE_LOG',
            )

        StalenessService.invalidate_user(
            user_id, mark_stale=overpayment_status in STALE_OVERPAYMENT_STATUSES, commit=False
        )
        db.session.commit()
        current_app.logger.info(f"Created execution log {log.id} for loan {loan.id} ({month})")
        return log

    @staticmethod
    def patch_log(user_id, log_id, data):
        """Advance a log's payment / overpayment status and amounts.

        Raises:
            NotFoundError:   no such log for the user.
            ConflictError:   the loan is closed.
            ValidationError: illegal transition or missing reason.
        """
        log = user_get_or_404(MonthlyExecutionLog, log_id, user_id)
        if log.loan.is_closed:
            raise ConflictError('Cannot modify a log for a closed loan', code='LOAN_CLOSED')

        payment_status = data.get('payment_status')
        overpayment_status = data.get('overpayment_status')
        if payment_status is not None and payment_status not in PAYMENT_TRANSITIONS[log.payment_status]:
            raise ValidationError(
                f"Invalid payment status transition from {log.payment_status} to {payment_status}",
                code='INVALID_STATUS_TRANSITION',
            )
        if (overpayment_status is not None
                and overpayment_status not in OVERPAYMENT_TRANSITIONS[log.overpayment_status]):
            raise ValidationError(
                f"Invalid overpayment status transition from {log.overpayment_status} "
                f"to {overpayment_status}",
                code='INVALID_STATUS_TRANSITION',
            )

        reason = _clean_reason(data.get('reason_code')) if 'reason_code' in data else log.reason_code
        if overpayment_status in STALE_OVERPAYMENT_STATUSES and not _clean_reason(data.get('reason_code')):
            raise ValidationError(f"reason_code is required when overpayment is {overpayment_status}",
                                  details={'field': 'reason_code'})

        now = utcnow()
        if payment_status is not None:
            log.payment_status = payment_status
            log.payment_executed_at = now
        if overpayment_status is not None:
            log.overpayment_status = overpayment_status
            if overpayment_status in (OVERPAYMENT_EXECUTED, OVERPAYMENT_BACKFILLED):
                log.overpayment_executed_at = now
        log.reason_code = reason

        for field in ('actual_overpayment_amount', 'scheduled_overpayment_amount',
                      'remaining_balance_after'):
            if field in data:
                setattr(log, field, _parse_amount(data[field], field) if data[field] is not None else None)

        stale = StalenessService.invalidate_user(
            user_id, mark_stale=overpayment_status in STALE_OVERPAYMENT_STATUSES, commit=False
        )
        db.session.commit()
        current_app.logger.info(
            f"Patched execution log {log.id} (payment={log.payment_status}, "
            f"overpayment={log.overpayment_status}, stale_marked={stale})"
        )
        return log


def _parse_month(value):
    if value is None:
        raise ValidationError('month_start is required', details={'field': 'month_start'})
    try:
        return month_start(value)
    except (AttributeError, TypeError, ValueError):
        raise ValidationError(f"Invalid month_start '{value}'", details={'field': 'month_start'})


def _parse_amount(value, field):
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", details={'field': field})
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{field} must be a non-negative number", details={'field': field})
    return to_money(amount)


def _optional_money(value):
    return to_money(value) if value is not None else None


def _clean_reason(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _check_choice(value, choices, field):
    if value not in choices:
        raise ValidationError(f"{field} must be one of: {', '.join(choices)}", details={'field': field})

