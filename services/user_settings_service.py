"""
User settings: the monthly overpayment limit and the reinvest flag that new
simulations default to.

Changing either value marks the active simulation stale, because its plan
was computed with the old ones.
"""
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy.exc import IntegrityError

from extensions import db
from models.settings import UserSettings
from services.staleness_service import StalenessService
from utils.errors import ConflictError, NotFoundError, ValidationError
from utils.loan_math import to_money


class UserSettingsService:

    @staticmethod
    def get_settings(user_id):
        settings = UserSettings.get_for_user(user_id)
        if settings is None:
            raise NotFoundError('User settings not initialized', code='USER_SETTINGS_NOT_FOUND')
        return settings

    @staticmethod
    def upsert_settings(user_id, data, if_match=None):
        """Create or replace the user's settings.

        *if_match*, when given, must equal the stored ``updated_at`` (ISO
        string) or the update is refused with ConflictError.

        Returns:
            (settings, created, stale_marked)
        """
        limit, reinvest = _validate(data)
        settings = UserSettings.get_for_user(user_id)

        if settings is None:
            settings = UserSettings(
                user_id=user_id,
                monthly_overpayment_limit=limit,
                reinvest_reduced_payments=reinvest,
            )
            db.session.add(settings)
            try:
                db.session.flush()
            except IntegrityError:
                db.session.rollback()
                raise ConflictError('User settings were created by another request',
                                    code='USER_SETTINGS_VERSION_MISMATCH')
            # Unsaved settings behave as a zero limit without reinvesting
            changed = limit != 0 or reinvest
            stale = StalenessService.invalidate_user(user_id, mark_stale=changed, commit=False)
            db.session.commit()
            current_app.logger.info(f"Created settings for user {user_id}")
            return settings, True, stale

        if if_match and if_match != _version(settings):
            raise ConflictError('User settings were modified by another process',
                                code='USER_SETTINGS_VERSION_MISMATCH')

        changed = (settings.monthly_overpayment_limit != limit
                   or settings.reinvest_reduced_payments != reinvest)
        settings.monthly_overpayment_limit = limit
        settings.reinvest_reduced_payments = reinvest

        stale = StalenessService.invalidate_user(user_id, mark_stale=changed, commit=False)
        db.session.commit()
        current_app.logger.info(f"Updated settings for user {user_id} (stale_marked={stale})")
        return settings, False, stale


def _version(settings):
    return settings.updated_at.isoformat() if settings.updated_at else ''


def _validate(data):
    if 'monthly_overpayment_limit' not in data:
        raise ValidationError('monthly_overpayment_limit is required',
                              details={'field': 'monthly_overpayment_limit'})
    value = data['monthly_overpayment_limit']
    if isinstance(value, bool) or value is None:
        raise ValidationError('monthly_overpayment_limit must be a number',
                              details={'field': 'monthly_overpayment_limit'})
    try:
        limit = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError('monthly_overpayment_limit must be a number',
                              details={'field': 'monthly_overpayment_limit'})
    if not limit.is_finite() or limit < 0:
        raise ValidationError('monthly_overpayment_limit must be a non-negative number',
                              details={'field': 'monthly_overpayment_limit'})

    reinvest = data.get('reinvest_reduced_payments', False)
    if not isinstance(reinvest, bool):
        raise ValidationError('reinvest_reduced_payments must be a boolean',
                              details={'field': 'reinvest_reduced_payments'})
    return to_money(limit), reinvest
