# backend/posync/__init__.py
import logging

from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides=None, *, transport=None) -> Flask:
    """
    config_overrides: mapping applied after Config (tests, embedding shells)
    transport: httpx transport for the remote API client (tests plug a fake server in)
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    logging.getLogger("posync").setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.offline import offline_bp
    from .routes.sync import sync_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(offline_bp)
    app.register_blueprint(sync_bp)

    # Sync scheduler (engines, locks, connectivity, triggers)
    from .services.scheduler import init_sync
    init_sync(app, transport=transport)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
