"""
Simulation Service
==================
Lifecycle of overpayment simulations: submission, detached computation,
activation, cancellation and retry.

Status machine
--------------
  running   → completed | error | cancelled
  completed → active
  active    → stale        (services.staleness_service)
  error     → running      (retry)

Every transition is a single ``UPDATE … WHERE status = <expected>``; the
number of rows it touched decides whether the transition happened.  A
computation that loses a race (the row was cancelled meanwhile) rolls back
everything it staged and leaves the row alone.

Primary entry points
--------------------
  queue_simulation()     - validate, cancel the previous run, insert, enqueue
  compute_and_persist()  - run both projections and persist the results
  activate_simulation()  - make a completed simulation the user's active plan
  cancel_simulation()    - stop a running simulation
  retry_simulation()     - re-run a simulation that ended in error
  resume_running()       - re-enqueue every running row (after a restart)
"""
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import case
from sqlalchemy.exc import IntegrityError

from extensions import db, task_queue
from models.loans import Loan
from models.settings import UserSettings
from models.simulations import (
    Simulation,
    SimulationHistoryMetric,
    SimulationLoanSnapshot,
    GOAL_FASTEST_PAYOFF,
    GOAL_PAYMENT_REDUCTION,
    SIMULATION_GOALS,
    SIMULATION_STATUSES,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_RUNNING,
)
from services.allocation_service import STRATEGY_IDS
from services.projection_service import ProjectionService
from utils.db_helpers import user_get_or_404, user_query, utcnow
from utils.errors import ConflictError, PreconditionError, ValidationError
from utils.loan_math import compute_projected_payoff_month, month_start, to_money


class SimulationService:

    @staticmethod
    def poll_interval(attempt=0):
        """Seconds a client should wait before its *attempt*-th status poll.

        Starts at SIMULATION_POLL_INITIAL_SECONDS and grows ×1.5 per attempt
        up to SIMULATION_POLL_MAX_SECONDS.
        """
        initial = current_app.config.get('SIMULATION_POLL_INITIAL_SECONDS', 1.5)
        ceiling = current_app.config.get('SIMULATION_POLL_MAX_SECONDS', 5.0)
        return round(min(ceiling, initial * (1.5 ** max(0, int(attempt)))), 2)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_command(user_id, command):
        strategy = command.get('strategy')
        if strategy not in STRATEGY_IDS:
            raise ValidationError(
                f"strategy must be one of: {', '.join(STRATEGY_IDS)}",
                code='INVALID_STRATEGY',
                details={'field': 'strategy'},
            )

        goal = command.get('goal') or GOAL_FASTEST_PAYOFF
        if goal not in SIMULATION_GOALS:
            raise ValidationError(
                f"goal must be one of: {', '.join(SIMULATION_GOALS)}",
                details={'field': 'goal'},
            )

        target = command.get('payment_reduction_target')
        if goal == GOAL_PAYMENT_REDUCTION:
            if target is None:
                raise ValidationError('payment_reduction_target is required for payment_reduction',
                                      details={'field': 'payment_reduction_target'})
            target = _parse_amount(target, 'payment_reduction_target')
            if target <= 0:
                raise ValidationError('payment_reduction_target must be greater than 0',
                                      details={'field': 'payment_reduction_target'})
        elif target is not None:
            raise ValidationError('payment_reduction_target is only allowed for payment_reduction',
                                  details={'field': 'payment_reduction_target'})

        settings = UserSettings.get_for_user(user_id)

        limit = command.get('monthly_overpayment_limit')
        if limit is None:
            limit = settings.monthly_overpayment_limit if settings else Decimal('0.00')
        limit = _parse_amount(limit, 'monthly_overpayment_limit')
        if limit < 0:
            raise ValidationError('monthly_overpayment_limit cannot be negative',
                                  details={'field': 'monthly_overpayment_limit'})

        reinvest = command.get('reinvest_reduced_payments')
        if reinvest is None:
            reinvest = settings.reinvest_reduced_payments if settings else False
        if not isinstance(reinvest, bool):
            raise ValidationError('reinvest_reduced_payments must be a boolean',
                                  details={'field': 'reinvest_reduced_payments'})

        return {
            'strategy': strategy,
            'goal': goal,
            'payment_reduction_target': target,
            'monthly_overpayment_limit': limit,
            'reinvest_reduced_payments': reinvest,
        }

    @staticmethod
    def queue_simulation(user_id, command):
        """Validate *command*, supersede any running simulation and enqueue a new one.

        Args:
            user_id: Owner of the simulation.
            command: dict with ``strategy``, ``goal``, optional
                     ``payment_reduction_target``, ``monthly_overpayment_limit``
                     and ``reinvest_reduced_payments`` (the last two default
                     to the user's settings).

        Returns:
            dict with ``simulation_id``, ``status`` and ``poll_interval_seconds``.
        """
        fields = SimulationService._validate_command(user_id, command or {})
        now = utcnow()

        cancelled = Simulation.query.filter_by(user_id=user_id, status=STATUS_RUNNING).update(
            {'status': STATUS_CANCELLED, 'cancelled_at': now}, synchronize_session=False
        )
        if cancelled:
            current_app.logger.info(
                f"Cancelled {cancelled} running simulation(s) for user {user_id} before queueing"
            )

        simulation = Simulation(
            user_id=user_id,
            status=STATUS_RUNNING,
            started_at=now,
            **fields,
        )
        db.session.add(simulation)
        db.session.commit()

        simulation_id = simulation.id
        current_app.logger.info(
            f"Queued simulation {simulation_id} ({fields['strategy']}/{fields['goal']}) for user {user_id}"
        )
        task_queue.enqueue(SimulationService.compute_and_persist, user_id, simulation_id)

        return {
            'simulation_id': simulation_id,
            'status': STATUS_RUNNING,
            'poll_interval_seconds': SimulationService.poll_interval(0),
        }

    # ------------------------------------------------------------------
    # Computation
    # ------------------------------------------------------------------

    @staticmethod
    def _is_running(simulation_id):
        status = db.session.query(Simulation.status).filter(Simulation.id == simulation_id).scalar()
        return status == STATUS_RUNNING

    @staticmethod
    def compute_and_persist(user_id, simulation_id):
        """Run the baseline and strategy projections and store the results.

        Writes snapshots and the history metric, then flips the row
        ``running → completed`` with a conditional update.  If the row stops
        being ``running`` at any point, staged writes are rolled back.

        Never raises: failures roll back, mark the row ``error`` and log.

        Returns:
            True when the simulation was completed by this call.
        """
        logger = current_app.logger
        try:
            simulation = Simulation.query.filter_by(id=simulation_id, user_id=user_id).first()
            if simulation is None or simulation.status != STATUS_RUNNING:
                logger.info(f"Simulation compute skipped: simulation {simulation_id} is not running")
                return False

            logger.info(f"Simulation compute start: simulation {simulation_id}, user {user_id}")

            loans = user_query(Loan, user_id).filter_by(is_closed=False).order_by(Loan.id).all()
            start = month_start(simulation.start_reference)
            comparison = ProjectionService.compare(
                loans,
                simulation.strategy,
                simulation.monthly_overpayment_limit,
                simulation.reinvest_reduced_payments,
                start.year,
                start.month - 1,
                max_months=current_app.config.get('SIMULATION_MAX_MONTHS', 600),
            )
            metrics = SimulationService._aggregate_metrics(
                loans, simulation, start, comparison
            )

            if not SimulationService._is_running(simulation_id):
                return SimulationService._abandon(simulation_id)
            SimulationLoanSnapshot.query.filter_by(simulation_id=simulation_id).delete(
                synchronize_session=False
            )
            for loan in loans:
                db.session.add(SimulationLoanSnapshot(
                    simulation_id=simulation_id,
                    user_id=user_id,
                    loan_id=loan.id,
                    starting_balance=loan.remaining_balance,
                    starting_rate=loan.annual_rate,
                    remaining_term_months=loan.term_months,
                    starting_month=start,
                ))
            db.session.flush()

            if not SimulationService._is_running(simulation_id):
                return SimulationService._abandon(simulation_id)
            SimulationHistoryMetric.query.filter_by(simulation_id=simulation_id).delete(
                synchronize_session=False
            )
            db.session.add(SimulationHistoryMetric(
                simulation_id=simulation_id,
                user_id=user_id,
                strategy=simulation.strategy,
                goal=simulation.goal,
                baseline_interest=metrics['baseline_interest'],
                total_interest_saved=metrics['total_interest_saved'],
                months_to_payoff=metrics['months_to_payoff'],
                payoff_month=metrics['payoff_month'],
                monthly_payment_total=metrics['monthly_payment_total'],
            ))
            db.session.flush()

            finalized = Simulation.query.filter_by(id=simulation_id, status=STATUS_RUNNING).update({
                'status': STATUS_COMPLETED,
                'completed_at': utcnow(),
                'baseline_interest': metrics['baseline_interest'],
                'total_interest_saved': metrics['total_interest_saved'],
                'projected_months_to_payoff': metrics['months_to_payoff'],
                'projected_payoff_month': metrics['payoff_month'],
            }, synchronize_session=False)
            if not finalized:
                return SimulationService._abandon(simulation_id)

            db.session.commit()
            logger.info(
                f"Simulation compute success: simulation {simulation_id}, "
                f"{metrics['months_to_payoff']} months, saved {metrics['total_interest_saved']}"
            )
            return True

        except Exception as exc:
            db.session.rollback()
            logger.error(
                f"Simulation compute failed: simulation {simulation_id}, user {user_id}: {exc}",
                extra={
                    'simulation_id': simulation_id,
                    'user_id': user_id,
                    'error_class': exc.__class__.__name__,
                },
            )
            SimulationService._mark_error(simulation_id)
            return False

    @staticmethod
    def _aggregate_metrics(loans, simulation, start, comparison):
        months = comparison['strategy_summary']['months']
        standard_total = sum(
            ProjectionService.standard_payment(loan) for loan in loans
        )
        payoff_month = compute_projected_payoff_month(start.isoformat(), months)
        return {
            'baseline_interest': to_money(comparison['baseline_summary']['total_interest']),
            'total_interest_saved': to_money(comparison['total_interest_saved']),
            'months_to_payoff': months,
            'payoff_month': month_start(payoff_month),
            'monthly_payment_total': to_money(
                standard_total + float(simulation.monthly_overpayment_limit)
            ),
        }

    @staticmethod
    def _abandon(simulation_id):
        db.session.rollback()
        current_app.logger.info(
            f"Simulation compute abandoned: simulation {simulation_id} is no longer running"
        )
        return False

    @staticmethod
    def _mark_error(simulation_id):
        try:
            Simulation.query.filter_by(id=simulation_id, status=STATUS_RUNNING).update(
                {'status': STATUS_ERROR}, synchronize_session=False
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            current_app.logger.exception(f"Could not record error status for simulation {simulation_id}")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @staticmethod
    def retry_simulation(user_id, simulation_id):
        """Move an ``error`` simulation back to ``running`` and re-enqueue it.

        Returns False (and does nothing) when the simulation is not in error.
        """
        user_get_or_404(Simulation, simulation_id, user_id)
        now = utcnow()

        # At most one running simulation per user
        cancelled = Simulation.query.filter(
            Simulation.user_id == user_id,
            Simulation.status == STATUS_RUNNING,
            Simulation.id != simulation_id,
        ).update({'status': STATUS_CANCELLED, 'cancelled_at': now}, synchronize_session=False)

        retried = Simulation.query.filter_by(
            id=simulation_id, user_id=user_id, status=STATUS_ERROR
        ).update({
            'status': STATUS_RUNNING,
            'started_at': now,
            'completed_at': None,
        }, synchronize_session=False)

        if not retried:
            db.session.rollback()
            return False

        db.session.commit()
        if cancelled:
            current_app.logger.info(
                f"Cancelled {cancelled} running simulation(s) for user {user_id} before retry"
            )
        current_app.logger.info(f"Retrying simulation {simulation_id} for user {user_id}")
        task_queue.enqueue(SimulationService.compute_and_persist, user_id, simulation_id)
        return True

    @staticmethod
    def activate_simulation(user_id, simulation_id):
        """Make a completed, non-stale simulation the user's active one.

        The previous active simulation (if any) is deactivated and, unless
        stale, returned to ``completed``.

        Raises:
            NotFoundError: no such simulation for the user.
            ConflictError: not completed, stale, or the unique-active index
                           rejected the change twice.
        """
        simulation = user_get_or_404(Simulation, simulation_id, user_id)
        if simulation.status == STATUS_ACTIVE and simulation.is_active:
            return simulation
        if simulation.status != STATUS_COMPLETED or simulation.stale:
            raise ConflictError(
                f"Simulation {simulation_id} must be completed and not stale to activate",
                code='SIMULATION_NOT_ACTIVATABLE',
                details={'status': simulation.status, 'stale': simulation.stale},
            )

        for attempt in range(2):
            try:
                Simulation.query.filter(
                    Simulation.user_id == user_id,
                    Simulation.is_active.is_(True),
                    Simulation.id != simulation_id,
                ).update({
                    'is_active': False,
                    'status': case(
                        (Simulation.status == STATUS_ACTIVE, STATUS_COMPLETED),
                        else_=Simulation.status,
                    ),
                }, synchronize_session=False)

                activated = Simulation.query.filter_by(
                    id=simulation_id, user_id=user_id, status=STATUS_COMPLETED, stale=False
                ).update({'status': STATUS_ACTIVE, 'is_active': True}, synchronize_session=False)

                if not activated:
                    db.session.rollback()
                    raise ConflictError(
                        f"Simulation {simulation_id} changed status before activation",
                        code='SIMULATION_NOT_ACTIVATABLE',
                    )

                db.session.commit()
                break
            except IntegrityError:
                db.session.rollback()
                current_app.logger.warning(
                    f"Unique-active conflict activating simulation {simulation_id} (attempt {attempt + 1})"
                )
        else:
            raise ConflictError(
                'Another simulation was activated concurrently',
                code='ACTIVE_SIMULATION_CONFLICT',
            )

        current_app.logger.info(f"Activated simulation {simulation_id} for user {user_id}")
        db.session.refresh(simulation)
        return simulation

    @staticmethod
    def cancel_simulation(user_id, simulation_id):
        """Cancel a running simulation.

        Raises:
            NotFoundError:     no such simulation for the user.
            PreconditionError: the simulation is not running.
        """
        simulation = user_get_or_404(Simulation, simulation_id, user_id)
        cancelled = Simulation.query.filter_by(
            id=simulation_id, user_id=user_id, status=STATUS_RUNNING
        ).update({'status': STATUS_CANCELLED, 'cancelled_at': utcnow()}, synchronize_session=False)
        db.session.commit()

        if not cancelled:
            db.session.refresh(simulation)
            raise PreconditionError(
                f"Simulation {simulation_id} is not running",
                code='SIMULATION_NOT_RUNNING',
                details={'status': simulation.status},
            )

        current_app.logger.info(f"Cancelled simulation {simulation_id} for user {user_id}")
        db.session.refresh(simulation)
        return simulation

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def get_simulation_detail(user_id, simulation_id):
        """Simulation with its loan snapshots and history metric."""
        simulation = user_get_or_404(Simulation, simulation_id, user_id)
        snapshots = SimulationLoanSnapshot.query.filter_by(simulation_id=simulation.id)\
            .order_by(SimulationLoanSnapshot.loan_id).all()
        metric = SimulationHistoryMetric.query.filter_by(simulation_id=simulation.id)\
            .order_by(SimulationHistoryMetric.captured_at.desc()).first()

        detail = simulation.to_dict()
        detail['loan_snapshots'] = [snapshot.to_dict() for snapshot in snapshots]
        detail['history_metric'] = metric.to_dict() if metric else None
        return detail

    @staticmethod
    def list_simulations(user_id, status=None, page=1, page_size=20):
        """Newest-first page of the user's simulations, optionally filtered by status."""
        if status is not None and status not in SIMULATION_STATUSES:
            raise ValidationError(f"Unknown status '{status}'", details={'field': 'status'})
        page, page_size = max(1, int(page)), min(100, max(1, int(page_size)))

        query = user_query(Simulation, user_id)
        if status:
            query = query.filter_by(status=status)
        total = query.count()
        items = query.order_by(Simulation.created_at.desc(), Simulation.id.desc())\
            .offset((page - 1) * page_size).limit(page_size).all()

        return {
            'items': [simulation.to_dict() for simulation in items],
            'page': page,
            'page_size': page_size,
            'total': total,
        }

    @staticmethod
    def get_active_simulation(user_id):
        """The user's active simulation (possibly stale), or None."""
        return user_query(Simulation, user_id).filter_by(is_active=True).first()

    @staticmethod
    def resume_running():
        """Re-enqueue every ``running`` simulation. Returns how many were queued."""
        pending = Simulation.query.filter_by(status=STATUS_RUNNING)\
            .order_by(Simulation.id).with_entities(Simulation.id, Simulation.user_id).all()
        for simulation_id, user_id in pending:
            task_queue.enqueue(SimulationService.compute_and_persist, user_id, simulation_id)
        current_app.logger.info(f"Resumed {len(pending)} running simulation(s)")
        return len(pending)


def _parse_amount(value, field):
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", details={'field': field})
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", details={'field': field})
    if not amount.is_finite():
        raise ValidationError(f"{field} must be finite", details={'field': field})
    return to_money(amount)
