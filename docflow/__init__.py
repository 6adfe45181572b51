"""
docflow — document workflow engine.
Flask Application Factory.

Usage:
    from docflow import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from docflow.config import config
from docflow.models import db
from docflow.middleware.current_user import init_current_user
from docflow.middleware.logging_config import configure_logging
from docflow.middleware.rate_limiter import init_rate_limits
from docflow.middleware.timing import init_request_timing
from docflow.services.workflow_engine import init_workflow_engine

logger = logging.getLogger(__name__)

# Set to False to run SQLite without FK enforcement
_SQLITE_FK_ENFORCEMENT = True


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if _SQLITE_FK_ENFORCEMENT and "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    config_cls = config[config_name]
    # ProductionConfig validates required env vars on instantiation
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request middleware ───────────────────────────────────────────────
    init_request_timing(app)
    init_current_user(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from docflow.models import registry as _registry_models         # noqa: F401
    from docflow.models import workflow as _workflow_models         # noqa: F401
    from docflow.models import notification as _notification_models  # noqa: F401

    if config_name == "development":
        os.makedirs(app.instance_path, exist_ok=True)
        with app.app_context():
            db.create_all()

    # ── Workflow engine (event bus + services) ───────────────────────────
    init_workflow_engine(app)

    # ── Blueprints ───────────────────────────────────────────────────────
    from docflow.blueprints.health_bp import health_bp
    from docflow.blueprints.workflow_bp import workflow_bp
    from docflow.blueprints.workflow_definition_bp import workflow_definition_bp
    from docflow.blueprints.workflow_task_bp import workflow_task_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(workflow_bp)
    app.register_blueprint(workflow_task_bp)
    app.register_blueprint(workflow_definition_bp)

    init_rate_limits(app, limiter)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    return app
