"""
Login accounts. Every loan, setting, simulation and execution log hangs off
one user, and each user only ever sees their own rows.
"""
from flask import current_app
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

from extensions import db
from utils.db_helpers import utcnow


class User(UserMixin, db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    last_login = db.Column(db.DateTime)

    # Lockout after MAX_LOGIN_ATTEMPTS consecutive failures
    failed_login_attempts = db.Column(db.Integer, default=0, nullable=False)
    locked_until = db.Column(db.DateTime)

    loans = db.relationship('Loan', backref='user', lazy=True, cascade='all, delete-orphan')
    settings = db.relationship('UserSettings', backref='user', uselist=False, cascade='all, delete-orphan')

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def is_locked(self):
        return bool(self.locked_until and self.locked_until > utcnow())

    def lockout_minutes_remaining(self):
        """Whole minutes (rounded up) until the lockout expires; 0 when not locked."""
        if not self.is_locked():
            return 0
        return int((self.locked_until - utcnow()).total_seconds() // 60) + 1

    def register_failed_login(self):
        """Count a failed password and lock the account at the threshold.

        Returns:
            Attempts left before the account locks (0 once locked).
        """
        max_attempts = current_app.config.get('MAX_LOGIN_ATTEMPTS', 5)
        lockout_duration = current_app.config.get('LOCKOUT_DURATION')

        self.failed_login_attempts += 1
        if self.failed_login_attempts >= max_attempts and lockout_duration:
            self.locked_until = utcnow() + lockout_duration
        db.session.commit()
        return max(0, max_attempts - self.failed_login_attempts)

    def register_successful_login(self):
        """Stamp last_login and clear any failure count or lockout."""
        self.last_login = utcnow()
        self.failed_login_attempts = 0
        self.locked_until = None
        db.session.commit()

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'name': self.name,
            'last_login': self.last_login.isoformat() if self.last_login else None,
        }

    def __repr__(self):
        return f'<User {self.email}>'
