from extensions import db
from utils.db_helpers import utcnow


class Loan(db.Model):
    __tablename__ = 'loans'
    __table_args__ = (
        db.CheckConstraint('principal > 0', name='ck_loans_principal_positive'),
        db.CheckConstraint('remaining_balance >= 0 AND remaining_balance <= principal',
                           name='ck_loans_balance_range'),
        db.CheckConstraint('annual_rate > 0 AND annual_rate < 1', name='ck_loans_rate_range'),
        db.CheckConstraint('term_months > 0', name='ck_loans_term_positive'),
    )

    # Fields whose change invalidates the active simulation
    SIMULATION_FIELDS = (
        'principal',
        'remaining_balance',
        'annual_rate',
        'term_months',
        'original_term_months',
        'start_month',
        'is_closed',
        'closed_month',
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    name = db.Column(db.String(100))  # Optional label: "Car loan", "Student loan"
    principal = db.Column(db.Numeric(14, 2), nullable=False)          # Original amount borrowed
    remaining_balance = db.Column(db.Numeric(14, 2), nullable=False)
    annual_rate = db.Column(db.Numeric(7, 5), nullable=False)         # Decimal form: 0.065 = 6.5%
    term_months = db.Column(db.Integer, nullable=False)               # Used for standard payment math
    original_term_months = db.Column(db.Integer, nullable=False)
    start_month = db.Column(db.Date, nullable=False)                  # Always the 1st of a month

    is_closed = db.Column(db.Boolean, default=False, nullable=False)
    closed_month = db.Column(db.Date)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    change_events = db.relationship('LoanChangeEvent', backref='loan', lazy=True,
                                    cascade='all, delete-orphan')
    execution_logs = db.relationship('MonthlyExecutionLog', backref='loan', lazy=True,
                                     cascade='all, delete-orphan')
    snapshots = db.relationship('SimulationLoanSnapshot', backref='loan', lazy=True,
                                cascade='all, delete-orphan')

    def simulation_state(self):
        """Tuple of the simulation-relevant fields, for change detection."""
        return tuple(getattr(self, field) for field in self.SIMULATION_FIELDS)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'name': self.name,
            'principal': float(self.principal),
            'remaining_balance': float(self.remaining_balance),
            'annual_rate': float(self.annual_rate),
            'term_months': self.term_months,
            'original_term_months': self.original_term_months,
            'start_month': self.start_month.isoformat() if self.start_month else None,
            'is_closed': self.is_closed,
            'closed_month': self.closed_month.isoformat() if self.closed_month else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<Loan {self.id}: {self.remaining_balance} of {self.principal}>'


class LoanChangeEvent(db.Model):
    """Append-only audit trail of loan edits"""
    __tablename__ = 'loan_change_events'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    loan_id = db.Column(db.Integer, db.ForeignKey('loans.id'), nullable=False)
    change_type = db.Column(db.String(30), nullable=False)  # rate_change, balance_adjustment, ...
    effective_month = db.Column(db.Date, nullable=False)

    old_principal = db.Column(db.Numeric(14, 2))
    new_principal = db.Column(db.Numeric(14, 2))
    old_remaining_balance = db.Column(db.Numeric(14, 2))
    new_remaining_balance = db.Column(db.Numeric(14, 2))
    old_annual_rate = db.Column(db.Numeric(7, 5))
    new_annual_rate = db.Column(db.Numeric(7, 5))
    old_term_months = db.Column(db.Integer)
    new_term_months = db.Column(db.Integer)

    created_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.Index('idx_loan_change_events_loan_month', 'loan_id', 'effective_month'),
    )

    def __repr__(self):
        return f'<LoanChangeEvent {self.change_type} loan={self.loan_id}>'
