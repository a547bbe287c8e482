# backend/edition_ledger/__init__.py
import logging

from flask import Flask, request

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Module loggers (edition_ledger.services.*) propagate to the app logger
    logging.getLogger("edition_ledger").setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # One ledger store per app; holds the per-product lock registry
    from .services.ledger_store import MemoryLedgerStore, SqlLedgerStore
    if app.config.get("LEDGER_STORE") == "memory":
        app.extensions["edition_ledger"] = MemoryLedgerStore(lock_timeout=app.config.get("LEDGER_LOCK_TIMEOUT_SECONDS"))
    else:
        app.extensions["edition_ledger"] = SqlLedgerStore.from_config(app.config)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.editions import editions_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(editions_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if origin and origin in app.config.get("CORS_ALLOWED_ORIGINS", ()):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
