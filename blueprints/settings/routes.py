from flask import jsonify, request
from . import settings_bp
from services.user_settings_service import UserSettingsService
from utils.db_helpers import get_user_id
from utils.errors import ValidationError


@settings_bp.route('/user-settings', methods=['GET'])
def get_settings():
    settings = UserSettingsService.get_settings(get_user_id())
    response = jsonify(settings.to_dict())
    response.headers['ETag'] = settings.updated_at.isoformat()
    return response


@settings_bp.route('/user-settings', methods=['PUT'])
def put_settings():
    """Create or replace the overpayment limit and reinvest flag"""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')

    settings, created, stale = UserSettingsService.upsert_settings(
        get_user_id(), data, if_match=request.headers.get('If-Match')
    )
    body = settings.to_dict()
    body['stale_simulation'] = stale
    response = jsonify(body)
    response.status_code = 201 if created else 200
    response.headers['ETag'] = settings.updated_at.isoformat()
    return response
