"""
Database query helpers for user-scoped data.

Every loan, setting, simulation and execution log belongs to one user.
Queries against those models go through these helpers so that one user can
never read or modify another user's rows.

Services take the owning ``user_id`` explicitly, because deferred tasks run
outside any request.  Blueprints pass ``get_user_id()``.

Usage
-----
::

    from utils.db_helpers import user_query, user_get_or_404, get_user_id

    loans = user_query(Loan, user_id).filter_by(is_closed=False).all()
    simulation = user_get_or_404(Simulation, simulation_id, user_id)
"""
from datetime import datetime, timezone

from flask_login import current_user

from utils.errors import NotFoundError


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_user_id():
    """Return ``current_user.id``, or ``None`` if not authenticated."""
    if current_user.is_authenticated:
        return current_user.id
    return None


def user_query(model, user_id):
    """Return a query pre-filtered to *user_id*'s rows.

    Examples::

        user_query(Loan, user_id).all()
        user_query(Simulation, user_id).filter_by(status='running').count()
    """
    if not hasattr(model, 'user_id'):
        raise AttributeError(
            f"user_query() called on {model.__name__} but it has no user_id column."
        )
    if user_id is None:
        # Return a query that always yields zero rows rather than leaking data
        return model.query.filter(model.user_id == -1)
    return model.query.filter_by(user_id=user_id)


def user_get(model, record_id, user_id):
    """Fetch a single record by *record_id*, scoped to *user_id*.

    Returns ``None`` if the record does not exist or belongs to another user.
    """
    if user_id is None:
        return None
    return model.query.filter_by(id=record_id, user_id=user_id).first()


def user_get_or_404(model, record_id, user_id):
    """Like ``user_get`` but raises NotFoundError if nothing is found."""
    record = user_get(model, record_id, user_id)
    if record is None:
        raise NotFoundError(f"{model.__name__} {record_id} not found")
    return record
