from flask import Blueprint
from flask_login import login_required

execution_logs_bp = Blueprint('execution_logs', __name__)

# Require authentication for all routes in this blueprint
@execution_logs_bp.before_request
@login_required
def require_login():
    pass

from . import routes
