from decimal import Decimal

from extensions import db
from utils.db_helpers import utcnow


class UserSettings(db.Model):
    """Per-user overpayment preferences, read by every projection"""
    __tablename__ = 'user_settings'
    __table_args__ = (
        db.CheckConstraint('monthly_overpayment_limit >= 0', name='ck_user_settings_limit'),
    )

    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), primary_key=True)
    monthly_overpayment_limit = db.Column(db.Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    reinvest_reduced_payments = db.Column(db.Boolean, nullable=False, default=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @staticmethod
    def get_for_user(user_id):
        """Settings row for *user_id*, or None if never saved"""
        return UserSettings.query.filter_by(user_id=user_id).first()

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'monthly_overpayment_limit': float(self.monthly_overpayment_limit),
            'reinvest_reduced_payments': self.reinvest_reduced_payments,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<UserSettings user={self.user_id} limit={self.monthly_overpayment_limit}>'
