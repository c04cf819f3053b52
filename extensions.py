"""
Shared Flask extension instances.

Created unbound here and attached to the application in ``create_app()`` so
that models, services and blueprints can import them without circular
imports.
"""
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from utils.cache import DashboardCache
from utils.task_queue import TaskQueue


db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
limiter = Limiter(key_func=get_remote_address)

# Per-user read cache for the dashboard overview; invalidated on every
# loan, settings or execution-log mutation.
dashboard_cache = DashboardCache()

# Deferred simulation compute
task_queue = TaskQueue()
