"""
TraceWell
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_migrate import Migrate

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from app.config import config
from app.core.exceptions import (
    AcknowledgmentRequiredError,
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    SegregationOfDutiesError,
    StaleStateError,
    UnknownRoleError,
    ValidationError,
)
from app.middleware.identity import init_identity
from app.middleware.logging_config import configure_logging
from app.middleware.rate_limiter import init_rate_limits, rate_limit_key
from app.middleware.timing import init_request_timing
from app.models import db
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=rate_limit_key,
    default_limits=[],                     # limits are applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def register_error_handlers(app):
    """Map the service-layer exception hierarchy to JSON error responses."""

    def _log_rejection(exc, code):
        # Discard anything a failed service call may have flushed
        db.session.rollback()
        logger.warning(
            "Request rejected: %s", exc,
            extra={"event_type": "request_rejected", "error_code": code,
                   "path": request.path, "method": request.method},
        )

    @app.errorhandler(NotFoundError)
    def _not_found(exc):
        db.session.rollback()
        return api_error(E.NOT_FOUND, f"{exc.resource} not found")

    @app.errorhandler(ValidationError)
    def _validation(exc):
        code = exc.code or E.VALIDATION_INVALID
        _log_rejection(exc, code)
        return api_error(code, str(exc), status=422, details=exc.details)

    @app.errorhandler(UnknownRoleError)
    def _unknown_role(exc):
        _log_rejection(exc, E.UNKNOWN_ROLE)
        return api_error(E.UNKNOWN_ROLE, str(exc))

    @app.errorhandler(SegregationOfDutiesError)
    def _segregation(exc):
        _log_rejection(exc, E.SEGREGATION_OF_DUTIES)
        return api_error(E.SEGREGATION_OF_DUTIES, str(exc))

    @app.errorhandler(AcknowledgmentRequiredError)
    def _acknowledgment_required(exc):
        _log_rejection(exc, E.ACKNOWLEDGMENT_REQUIRED)
        return api_error(E.ACKNOWLEDGMENT_REQUIRED, str(exc), details={"cycle_id": exc.cycle_id})

    @app.errorhandler(PermissionDeniedError)
    def _forbidden(exc):
        _log_rejection(exc, E.FORBIDDEN)
        return api_error(E.FORBIDDEN, str(exc))

    @app.errorhandler(AuthenticationError)
    def _unauthenticated(exc):
        return api_error(E.UNAUTHENTICATED, str(exc) or "Authentication required")

    @app.errorhandler(StaleStateError)
    def _stale(exc):
        _log_rejection(exc, E.CONFLICT_STATE)
        return api_error(E.CONFLICT_STATE, str(exc), details={
            "expected_status": exc.expected_status,
            "expected_version": exc.expected_version,
        })

    @app.errorhandler(ConflictError)
    def _conflict(exc):
        _log_rejection(exc, E.CONFLICT_DUPLICATE)
        return api_error(E.CONFLICT_DUPLICATE, str(exc), details={"field": exc.field})

    @app.errorhandler(404)
    def _route_not_found(e):
        return {"error": "Not found", "code": E.NOT_FOUND, "path": request.path}, 404

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def _rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


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
    # Instantiated so ProductionConfig can refuse to start without secrets
    app.config.from_object(config[config_name]())

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

    # ── Request timing + identity ────────────────────────────────────────
    init_request_timing(app)
    init_identity(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import audit as _audit_models      # noqa: F401
    from app.models import auth as _auth_models        # noqa: F401
    from app.models import cycle as _cycle_models      # noqa: F401
    from app.models import program as _program_models  # noqa: F401
    from app.models import story as _story_models      # noqa: F401
    from app.models import testing as _testing_models  # noqa: F401

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.audit_bp import audit_bp
    from app.blueprints.cycle_bp import cycle_bp
    from app.blueprints.health_bp import health_bp
    from app.blueprints.story_bp import story_bp
    from app.blueprints.uat_bp import uat_bp

    app.register_blueprint(story_bp)
    app.register_blueprint(uat_bp)
    app.register_blueprint(cycle_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(health_bp)

    register_error_handlers(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("create-db")
    def create_db_cmd():
        """Create all tables on a fresh database (development only)."""
        db.create_all()
        logger.info("Database tables created.")

    return app
