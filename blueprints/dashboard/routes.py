from flask import jsonify, request
from . import dashboard_bp
from services.dashboard_service import DashboardService
from utils.db_helpers import get_user_id


@dashboard_bp.route('/overview', methods=['GET'])
def overview():
    """Dashboard overview; ``?include=monthly_trend,interest_breakdown,adherence``"""
    include = DashboardService.parse_include(request.args.get('include'))
    return jsonify(DashboardService.get_overview(get_user_id(), include=include))
