# evfleet/routes/__init__.py
from flask import current_app, request
from sqlalchemy.exc import SQLAlchemyError

from evfleet.db_models import db
from .access import internal_error
from .deployments import deployments_bp
from .vehicles import vehicles_bp
from .maintenance import maintenance_bp
from .analytics import analytics_bp, init_cache
from .notifications import notifications_bp


def register_blueprints(app):
    app.register_blueprint(deployments_bp)
    app.register_blueprint(vehicles_bp)
    app.register_blueprint(maintenance_bp)
    app.register_blueprint(analytics_bp)
    app.register_blueprint(notifications_bp)
    init_cache(app)
    app.register_error_handler(SQLAlchemyError, _handle_db_error)


def _handle_db_error(e):
    db.session.rollback()
    current_app.logger.exception("Unhandled database error on %s %s", request.method, request.path)
    return internal_error()
