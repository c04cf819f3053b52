import os
import logging
import click
from logging.handlers import RotatingFileHandler
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
from config import config
from extensions import db, migrate, login_manager, limiter, dashboard_cache, task_queue
from utils.errors import ServiceError


def configure_logging(app):
    """File logging in production, DEBUG to the console otherwise"""
    if app.debug or app.testing:
        app.logger.setLevel(logging.DEBUG)
        app.logger.info('Payoff Planner starting (debug logging)')
        return

    log_dir = app.config.get('LOG_DIR', 'logs')
    os.makedirs(log_dir, exist_ok=True)

    handler = RotatingFileHandler(
        os.path.join(log_dir, 'payoff_planner.log'),
        maxBytes=10 * 1024 * 1024,
        backupCount=10,
    )
    handler.setFormatter(logging.Formatter(
        '%(asctime)s %(levelname)s [%(name)s] %(message)s '
        '(%(pathname)s:%(lineno)d)'
    ))
    handler.setLevel(logging.INFO)
    app.logger.addHandler(handler)
    app.logger.setLevel(logging.INFO)
    app.logger.info('Payoff Planner starting')


def create_app(config_name=None):
    """Build the API application for *config_name* (defaults to $FLASK_ENV)"""
    config_name = config_name or os.environ.get('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])
    config[config_name].init_app(app)

    configure_logging(app)
    register_extensions(app)
    register_blueprints(app)
    register_error_handlers(app)
    register_commands(app)

    with app.app_context():
        import models  # registers every table on db.metadata
        db.create_all()

    return app


def register_extensions(app):
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    limiter.init_app(app)
    dashboard_cache.init_app(app)
    task_queue.init_app(app)

    @app.after_request
    def apply_security_headers(response):
        for header, value in app.config.get('SECURITY_HEADERS', {}).items():
            response.headers.setdefault(header, value)
        return response

    @login_manager.user_loader
    def load_user(user_id):
        from models.users import User
        return db.session.get(User, int(user_id))

    # JSON clients get a 401 instead of a redirect to a login page
    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': {'code': 'UNAUTHORIZED',
                                  'message': 'Authentication required'}}), 401


def register_blueprints(app):
    from blueprints.auth import auth_bp
    from blueprints.loans import loans_bp
    from blueprints.settings import settings_bp
    from blueprints.simulations import simulations_bp
    from blueprints.execution_logs import execution_logs_bp
    from blueprints.dashboard import dashboard_bp

    app.register_blueprint(auth_bp, url_prefix='/auth')
    app.register_blueprint(loans_bp, url_prefix='/api/loans')
    app.register_blueprint(settings_bp, url_prefix='/api')
    app.register_blueprint(simulations_bp, url_prefix='/api')
    app.register_blueprint(execution_logs_bp, url_prefix='/api/monthly-execution-logs')
    app.register_blueprint(dashboard_bp, url_prefix='/api/dashboard')


def register_error_handlers(app):
    """Render every error as ``{"error": {"code", "message", "details"}}``"""

    @app.errorhandler(ServiceError)
    def service_error(error):
        db.session.rollback()
        if error.status_code >= 500:
            app.logger.error(f'{error.__class__.__name__}: {error.message}')
        return jsonify({'error': error.to_dict()}), error.status_code

    @app.errorhandler(HTTPException)
    def http_error(error):
        code = (error.name or 'error').upper().replace(' ', '_')
        return jsonify({'error': {'code': code, 'message': error.description}}), error.code

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        app.logger.error(f'Unhandled error: {error}')
        return jsonify({'error': {'code': 'INTERNAL_ERROR',
                                  'message': 'Internal server error'}}), 500


def register_commands(app):
    """``flask simulations resume|reconcile`` and ``flask create-user``"""

    @app.cli.group()
    def simulations():
        """Background simulation maintenance."""

    @simulations.command('resume')
    def resume_simulations():
        """Re-enqueue every simulation left running by a previous process."""
        from services.simulation_service import SimulationService
        count = SimulationService.resume_running()
        # The CLI process exits next; let the pool drain first
        task_queue.shutdown(wait=True)
        click.echo(f'Resumed {count} running simulation(s).')

    @simulations.command('reconcile')
    @click.argument('email')
    def reconcile_logs(email):
        """Create missing monthly execution logs for the user with EMAIL."""
        from models.users import User
        from services.execution_log_service import ExecutionLogService
        user = User.query.filter_by(email=email.strip().lower()).first()
        if user is None:
            raise click.ClickException(f'No user found with email "{email}"')
        result = ExecutionLogService.ensure_monthly_execution_logs(user.id)
        dashboard_cache.invalidate(user.id)
        click.echo(f'Created {result["created"]} log(s) across {len(result["months"])} month(s) '
                   f'for {user.email}.')

    @app.cli.command('create-user')
    @click.argument('email')
    @click.argument('name')
    @click.password_option()
    def create_user(email, name, password):
        """Create a login for EMAIL with display NAME."""
        from models.users import User
        email = email.strip().lower()
        if User.query.filter_by(email=email).first():
            raise click.ClickException(f'A user with email "{email}" already exists')
        user = User(email=email, name=name)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        click.echo(f'Created user {name} <{email}>.')


if __name__ == '__main__':
    # Development server; bound to localhost so the debugger is never exposed
    create_app().run(host='127.0.0.1', port=5000, debug=True)
