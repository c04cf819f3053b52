from extensions import db
from utils.db_helpers import utcnow


# Simulation.status values
STATUS_RUNNING = 'running'
STATUS_COMPLETED = 'completed'
STATUS_ACTIVE = 'active'
STATUS_STALE = 'stale'
STATUS_CANCELLED = 'cancelled'
STATUS_ERROR = 'error'

SIMULATION_STATUSES = (
    STATUS_RUNNING,
    STATUS_COMPLETED,
    STATUS_ACTIVE,
    STATUS_STALE,
    STATUS_CANCELLED,
    STATUS_ERROR,
)

GOAL_FASTEST_PAYOFF = 'fastest_payoff'
GOAL_PAYMENT_REDUCTION = 'payment_reduction'
SIMULATION_GOALS = (GOAL_FASTEST_PAYOFF, GOAL_PAYMENT_REDUCTION)


def _money(value):
    return float(value) if value is not None else None


class Simulation(db.Model):
    """One overpayment-strategy run across a user's open loans"""
    __tablename__ = 'simulations'
    __table_args__ = (
        # At most one active simulation per user
        db.Index('ux_simulations_user_active', 'user_id', unique=True,
                 sqlite_where=db.text('is_active = 1'),
                 postgresql_where=db.text('is_active')),
        db.Index('idx_simulations_user_status', 'user_id', 'status'),
        db.CheckConstraint('monthly_overpayment_limit >= 0', name='ck_simulations_limit'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)

    strategy = db.Column(db.String(20), nullable=False)  # avalanche, snowball, equal, ratio
    goal = db.Column(db.String(20), nullable=False)      # fastest_payoff, payment_reduction
    payment_reduction_target = db.Column(db.Numeric(14, 2))
    monthly_overpayment_limit = db.Column(db.Numeric(14, 2), nullable=False)
    reinvest_reduced_payments = db.Column(db.Boolean, nullable=False, default=False)

    status = db.Column(db.String(20), nullable=False, default=STATUS_RUNNING)
    is_active = db.Column(db.Boolean, nullable=False, default=False)
    stale = db.Column(db.Boolean, nullable=False, default=False)

    # Results, filled in when the run completes
    baseline_interest = db.Column(db.Numeric(14, 2))
    total_interest_saved = db.Column(db.Numeric(14, 2))
    projected_months_to_payoff = db.Column(db.Integer)
    projected_payoff_month = db.Column(db.Date)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)

    # Relationships
    snapshots = db.relationship('SimulationLoanSnapshot', backref='simulation', lazy=True,
                                cascade='all, delete-orphan')
    history_metrics = db.relationship('SimulationHistoryMetric', backref='simulation', lazy=True,
                                      cascade='all, delete-orphan')

    @property
    def start_reference(self):
        """Timestamp the projection starts from"""
        return self.started_at or self.created_at

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'strategy': self.strategy,
            'goal': self.goal,
            'payment_reduction_target': _money(self.payment_reduction_target),
            'monthly_overpayment_limit': _money(self.monthly_overpayment_limit),
            'reinvest_reduced_payments': self.reinvest_reduced_payments,
            'status': self.status,
            'is_active': self.is_active,
            'stale': self.stale,
            'baseline_interest': _money(self.baseline_interest),
            'total_interest_saved': _money(self.total_interest_saved),
            'projected_months_to_payoff': self.projected_months_to_payoff,
            'projected_payoff_month': (self.projected_payoff_month.isoformat()
                                       if self.projected_payoff_month else None),
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'cancelled_at': self.cancelled_at.isoformat() if self.cancelled_at else None,
        }

    def __repr__(self):
        return f'<Simulation {self.id} {self.strategy} [{self.status}]>'


class SimulationLoanSnapshot(db.Model):
    """Loan state frozen when a simulation completes; basis for reconciliation"""
    __tablename__ = 'simulation_loan_snapshots'
    __table_args__ = (
        db.UniqueConstraint('simulation_id', 'loan_id', name='uix_snapshot_simulation_loan'),
    )

    id = db.Column(db.Integer, primary_key=True)
    simulation_id = db.Column(db.Integer, db.ForeignKey('simulations.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    loan_id = db.Column(db.Integer, db.ForeignKey('loans.id'), nullable=False)

    starting_balance = db.Column(db.Numeric(14, 2), nullable=False)
    starting_rate = db.Column(db.Numeric(7, 5), nullable=False)
    remaining_term_months = db.Column(db.Integer, nullable=False)
    starting_month = db.Column(db.Date, nullable=False)

    def to_dict(self):
        return {
            'loan_id': self.loan_id,
            'starting_balance': float(self.starting_balance),
            'starting_rate': float(self.starting_rate),
            'remaining_term_months': self.remaining_term_months,
            'starting_month': self.starting_month.isoformat(),
        }

    def __repr__(self):
        return f'<SimulationLoanSnapshot sim={self.simulation_id} loan={self.loan_id}>'


class SimulationHistoryMetric(db.Model):
    """Point-in-time capture of a simulation's headline numbers (one per simulation)"""
    __tablename__ = 'simulation_history_metrics'

    id = db.Column(db.Integer, primary_key=True)
    simulation_id = db.Column(db.Integer, db.ForeignKey('simulations.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)

    strategy = db.Column(db.String(20), nullable=False)
    goal = db.Column(db.String(20), nullable=False)
    baseline_interest = db.Column(db.Numeric(14, 2))
    total_interest_saved = db.Column(db.Numeric(14, 2))
    months_to_payoff = db.Column(db.Integer)
    payoff_month = db.Column(db.Date)
    monthly_payment_total = db.Column(db.Numeric(14, 2))
    captured_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'strategy': self.strategy,
            'goal': self.goal,
            'baseline_interest': _money(self.baseline_interest),
            'total_interest_saved': _money(self.total_interest_saved),
            'months_to_payoff': self.months_to_payoff,
            'payoff_month': self.payoff_month.isoformat() if self.payoff_month else None,
            'monthly_payment_total': _money(self.monthly_payment_total),
            'captured_at': self.captured_at.isoformat() if self.captured_at else None,
        }

    def __repr__(self):
        return f'<SimulationHistoryMetric sim={self.simulation_id}>'
