from extensions import db
from utils.db_helpers import utcnow


PAYMENT_PENDING = 'pending'
PAYMENT_PAID = 'paid'
PAYMENT_BACKFILLED = 'backfilled'
PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_PAID, PAYMENT_BACKFILLED)

OVERPAYMENT_SCHEDULED = 'scheduled'
OVERPAYMENT_EXECUTED = 'executed'
OVERPAYMENT_SKIPPED = 'skipped'
OVERPAYMENT_BACKFILLED = 'backfilled'
OVERPAYMENT_STATUSES = (
    OVERPAYMENT_SCHEDULED,
    OVERPAYMENT_EXECUTED,
    OVERPAYMENT_SKIPPED,
    OVERPAYMENT_BACKFILLED,
)


def _money(value):
    return float(value) if value is not None else None


class MonthlyExecutionLog(db.Model):
    """Per-loan, per-month ledger of regular payments and overpayments"""
    __tablename__ = 'monthly_execution_logs'
    __table_args__ = (
        db.UniqueConstraint('loan_id', 'month_start', name='uix_log_loan_month'),
        db.Index('idx_monthly_logs_user_month', 'user_id', 'month_start'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    loan_id = db.Column(db.Integer, db.ForeignKey('loans.id'), nullable=False)
    month_start = db.Column(db.Date, nullable=False)  # Always the 1st

    payment_status = db.Column(db.String(20), nullable=False, default=PAYMENT_PENDING)
    payment_executed_at = db.Column(db.DateTime)
    overpayment_status = db.Column(db.String(20), nullable=False, default=OVERPAYMENT_SCHEDULED)
    overpayment_executed_at = db.Column(db.DateTime)

    scheduled_overpayment_amount = db.Column(db.Numeric(14, 2))
    actual_overpayment_amount = db.Column(db.Numeric(14, 2))
    interest_portion = db.Column(db.Numeric(14, 2))
    principal_portion = db.Column(db.Numeric(14, 2))
    remaining_balance_after = db.Column(db.Numeric(14, 2))

    reason_code = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'user_id': self.user_id,
            'month_start': self.month_start.isoformat(),
            'payment_status': self.payment_status,
            'overpayment_status': self.overpayment_status,
            'scheduled_overpayment_amount': _money(self.scheduled_overpayment_amount),
            'actual_overpayment_amount': _money(self.actual_overpayment_amount),
            'interest_portion': _money(self.interest_portion),
            'principal_portion': _money(self.principal_portion),
            'remaining_balance_after': _money(self.remaining_balance_after),
            'payment_executed_at': (self.payment_executed_at.isoformat()
                                    if self.payment_executed_at else None),
            'overpayment_executed_at': (self.overpayment_executed_at.isoformat()
                                        if self.overpayment_executed_at else None),
            'reason_code': self.reason_code,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<MonthlyExecutionLog loan={self.loan_id} {self.month_start}>'
