"""
Session login for the JSON API.

Failures are reported with the same error envelope as the service layer.
Unknown emails and wrong passwords look identical to the caller.
"""
from flask import current_app, jsonify, request
from flask_login import login_user, logout_user, current_user, login_required
from . import auth_bp
from models.users import User
from extensions import limiter


def _error(code, message, status):
    return jsonify({'error': {'code': code, 'message': message}}), status


@auth_bp.route('/login', methods=['POST'])
@limiter.limit("10 per minute")
def login():
    """Log in with ``{"email", "password", "remember"}``"""
    if current_user.is_authenticated:
        return jsonify({'user': current_user.to_dict()})

    data = request.get_json(silent=True) or {}
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    if not email or not password:
        return _error('VALIDATION_ERROR', 'email and password are required', 400)

    user = User.query.filter_by(email=email).first()
    if user is None:
        return _error('INVALID_CREDENTIALS', 'Invalid email or password', 401)

    if user.is_locked():
        return _error('ACCOUNT_LOCKED',
                      f'Account temporarily locked. Try again in {user.lockout_minutes_remaining()} minutes.',
                      403)
    if not user.is_active:
        return _error('ACCOUNT_INACTIVE', 'This account has been deactivated', 403)

    if not user.check_password(password):
        remaining = user.register_failed_login()
        current_app.logger.warning(f'Failed login for user {user.id} ({remaining} attempt(s) left)')
        if remaining == 0:
            return _error('ACCOUNT_LOCKED', 'Account locked due to too many failed attempts', 403)
        return _error('INVALID_CREDENTIALS', 'Invalid email or password', 401)

    login_user(user, remember=bool(data.get('remember')))
    user.register_successful_login()
    current_app.logger.info(f'User {user.id} logged in')
    return jsonify({'user': user.to_dict()})


@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    current_app.logger.info(f'User {current_user.id} logged out')
    logout_user()
    return '', 204
