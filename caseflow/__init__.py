"""
caseflow: case stage lifecycle and workflow engine.

    from caseflow import create_app
    app = create_app()           # APP_ENV, default "development"
    app = create_app("testing")
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from caseflow.config import config
from caseflow.middleware.logging_config import configure_logging
from caseflow.middleware.rate_limiter import init_rate_limits
from caseflow.middleware.tenant_context import init_tenant_context
from caseflow.middleware.timing import init_request_timing
from caseflow.models import db
from caseflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 2 * 1024 * 1024


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    # SQLite ships with FK enforcement off; stage rows rely on it
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],  # per-blueprint limits only
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def create_app(config_name=None):
    """Build the Flask app for ``config_name`` (development / testing / production)."""
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())
    app.config.setdefault("MAX_CONTENT_LENGTH", MAX_BODY_BYTES)

    configure_logging(app)
    _init_extensions(app)

    init_request_timing(app)
    init_tenant_context(app)
    app.before_request(_require_json_body)

    _init_schema(app)
    _register_blueprints(app)
    _register_error_handlers(app)
    init_rate_limits(app, limiter)

    logger.debug("caseflow app created (config=%s)", config_name)
    return app


def _init_extensions(app):
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    origins = app.config.get("CORS_ORIGINS", "*")
    if origins and origins != "*":
        CORS(app, origins=[o.strip() for o in origins.split(",") if o.strip()])
    else:
        CORS(app)


def _require_json_body():
    if request.method not in ("POST", "PUT", "PATCH") or not request.path.startswith("/api/"):
        return None
    if request.data and "json" not in (request.content_type or ""):
        return api_error(E.VALIDATION_INVALID, "Content-Type must be application/json", status=415)
    return None


def _init_schema(app):
    """Import every model, arm the ledger immutability guards, create missing tables."""
    from caseflow.models import audit, auth, case, lifecycle, stage_workflow  # noqa: F401
    from caseflow.models.immutability import register_immutability_listeners

    register_immutability_listeners()

    uri = app.config["SQLALCHEMY_DATABASE_URI"]
    if uri.startswith("sqlite:///") and ":memory:" not in uri:
        os.makedirs(os.path.dirname(uri.removeprefix("sqlite:///")), exist_ok=True)
    with app.app_context():
        db.create_all()


def _register_blueprints(app):
    from caseflow.blueprints.health_bp import health_bp
    from caseflow.blueprints.lifecycle_bp import lifecycle_bp
    from caseflow.blueprints.stage_notices_bp import stage_notices_bp
    from caseflow.blueprints.stage_workflow_bp import stage_workflow_bp
    from caseflow.blueprints.transition_approval_bp import transition_approval_bp

    for bp in (health_bp, lifecycle_bp, stage_workflow_bp, stage_notices_bp, transition_approval_bp):
        app.register_blueprint(bp)


def _register_error_handlers(app):
    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found", path=request.path)

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(413)
    def too_large(e):
        return api_error(E.VALIDATION_INVALID, "Request body too large", status=413)

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", retry_after=e.description)

    @app.errorhandler(500)
    def server_error(e):
        logger.error("Unhandled error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")
