"""
Staleness Service
=================
Flags a user's active simulation as out of date when its inputs change.

The flag is one conditional UPDATE, so concurrent mutations cannot race:
only the first one to land changes a row, and every later call is a no-op
until a new simulation is activated.

Callers (loan, settings and execution-log mutations) also drop the user's
dashboard cache in the same call; ``invalidate_user`` does both.
"""
from flask import current_app

from extensions import db, dashboard_cache
from models.simulations import Simulation, STATUS_STALE


class StalenessService:

    @staticmethod
    def mark_active_simulation_stale(user_id, commit=True):
        """Mark the user's active, not-yet-stale simulation as stale.

        Returns True if a row changed, False if there was nothing to mark.
        """
        changed = Simulation.query.filter(
            Simulation.user_id == user_id,
            Simulation.is_active.is_(True),
            Simulation.stale.is_(False),
        ).update({'stale': True, 'status': STATUS_STALE}, synchronize_session=False)

        if commit:
            db.session.commit()

        if changed:
            current_app.logger.info(f"Marked active simulation stale for user {user_id}")
        return changed > 0

    @staticmethod
    def invalidate_user(user_id, mark_stale=True, commit=True):
        """Drop the user's cached dashboard and optionally mark the simulation stale."""
        changed = False
        if mark_stale:
            changed = StalenessService.mark_active_simulation_stale(user_id, commit=commit)
        dashboard_cache.invalidate(user_id)
        return changed
