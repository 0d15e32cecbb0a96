# evfleet/__init__.py
import os
from flask import Flask
from flask_migrate import Migrate
from dotenv import load_dotenv

from evfleet.config import Config
from evfleet.db_models import db
from evfleet.routes import register_blueprints
from evfleet.utils.logger import setup_logging
from evfleet.cli import register_commands
from evfleet.services.locks import KeyedLockRegistry
from evfleet.services.tracking import TrackingDispatcher

load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), '.env'))
migrate = Migrate()


def create_app(config_class=Config, config_overrides=None):
    app = Flask(__name__)
    app.config.from_object(config_class)
    if config_overrides:
        app.config.update(config_overrides)
    app.secret_key = app.config["SECRET_KEY"]

    database_url = app.config.get("SQLALCHEMY_DATABASE_URI")
    if database_url and database_url.startswith("postgres://"):
        app.config['SQLALCHEMY_DATABASE_URI'] = database_url.replace("postgres://", "postgresql://", 1)

    db.init_app(app)
    migrate.init_app(app, db)
    setup_logging(app)
    app.extensions["evfleet_locks"] = KeyedLockRegistry(app.config["LOCK_TIMEOUT_SECONDS"])
    app.extensions["evfleet_tracking"] = TrackingDispatcher(app, app.config["TRACKING_WORKERS"])
    register_blueprints(app)
    register_commands(app)

    return app
