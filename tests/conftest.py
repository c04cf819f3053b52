"""
Shared pytest fixtures for the Payoff Planner test suite.

All tests run against an in-memory SQLite database (TestingConfig).
A single app context is pushed for the whole session so that SQLAlchemy
objects remain attached throughout.  After each test, clean_db wipes all
rows and the dashboard cache so tests are fully independent.

TestingConfig sets TASK_QUEUE_EAGER, so queued simulations are computed
inline before queue_simulation() returns.
"""
from datetime import date
from decimal import Decimal

import pytest
from flask import g
from app import create_app
from extensions import db as _db, dashboard_cache


# ---------------------------------------------------------------------------
# Application / database lifecycle
# ---------------------------------------------------------------------------

@pytest.fixture(scope='session')
def app():
    """Create a test Flask application with an in-memory SQLite database."""
    application = create_app('testing')
    ctx = application.app_context()
    ctx.push()
    _db.create_all()
    yield application
    _db.session.remove()
    _db.drop_all()
    ctx.pop()


@pytest.fixture(autouse=True)
def clean_db(app):
    """Wipe every table after each test so tests never share state."""
    yield
    _db.session.rollback()
    for table in reversed(_db.metadata.sorted_tables):
        _db.session.execute(table.delete())
    _db.session.commit()
    _db.session.expunge_all()
    dashboard_cache.clear()
    # The session-wide app context is reused by every request; drop
    # Flask-Login's per-context user cache so logins never leak across tests
    g.pop('_login_user', None)


# ---------------------------------------------------------------------------
# Common model helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def user(app):
    from models.users import User
    u = User(email='owner@example.com', name='Loan Owner')
    u.set_password('TestPass1!')
    _db.session.add(u)
    _db.session.commit()
    return u


@pytest.fixture
def other_user(app):
    from models.users import User
    u = User(email='someone.else@example.com', name='Someone Else')
    u.set_password('TestPass1!')
    _db.session.add(u)
    _db.session.commit()
    return u


@pytest.fixture
def make_loan(app):
    """Factory: make_loan(user, balance, rate, term, **overrides) -> Loan"""
    from models.loans import Loan

    def _make(owner, balance, rate, term, **overrides):
        values = dict(
            user_id=owner.id,
            principal=Decimal(str(overrides.pop('principal', balance))),
            remaining_balance=Decimal(str(balance)),
            annual_rate=Decimal(str(rate)),
            term_months=term,
            original_term_months=overrides.pop('original_term_months', term),
            start_month=overrides.pop('start_month', date(2025, 1, 1)),
        )
        values.update(overrides)
        loan = Loan(**values)
        _db.session.add(loan)
        _db.session.commit()
        return loan

    return _make


@pytest.fixture
def loan(user, make_loan):
    return make_loan(user, 10000, '0.12', 24, name='Car loan')


@pytest.fixture
def settings(user):
    from models.settings import UserSettings
    s = UserSettings(
        user_id=user.id,
        monthly_overpayment_limit=Decimal('200.00'),
        reinvest_reduced_payments=False,
    )
    _db.session.add(s)
    _db.session.commit()
    return s


@pytest.fixture
def active_simulation(user, loan, settings):
    """Completed and activated avalanche simulation over *loan*."""
    from services.simulation_service import SimulationService
    queued = SimulationService.queue_simulation(user.id, {'strategy': 'avalanche'})
    return SimulationService.activate_simulation(user.id, queued['simulation_id'])


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_client(client, user):
    """Test client with *user* logged in through the Flask-Login session."""
    with client.session_transaction() as session:
        session['_user_id'] = str(user.id)
        session['_fresh'] = True
    return client
