from flask import Blueprint
from flask_login import login_required

simulations_bp = Blueprint('simulations', __name__)

# Require authentication for all routes in this blueprint
@simulations_bp.before_request
@login_required
def require_login():
    pass

from . import routes
