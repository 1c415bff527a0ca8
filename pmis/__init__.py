"""
PMMIS work-approval core.
Flask Application Factory.

Usage:
    from pmis import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_migrate import Migrate

from pmis.config import config as config_by_name
from pmis.models import db
from pmis.middleware.logging_config import configure_logging

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


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
    app.config.from_object(config_by_name[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from pmis.models import auth as _auth_models                  # noqa: F401
    from pmis.models import contract as _contract_models          # noqa: F401
    from pmis.models import progress_report as _report_models     # noqa: F401
    from pmis.models import task as _task_models                  # noqa: F401
    from pmis.models import notification as _notification_models  # noqa: F401
    from pmis.models import scheduling as _scheduling_models      # noqa: F401
    from pmis.models import audit as _audit_models                # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        db.create_all()
        app.logger.info("db.create_all() completed successfully")

    # ── Blueprints ───────────────────────────────────────────────────────
    from pmis.blueprints.approval_bp import approval_bp
    from pmis.blueprints.task_bp import task_bp
    from pmis.blueprints.notification_bp import notification_bp

    app.register_blueprint(approval_bp)
    app.register_blueprint(task_bp)
    app.register_blueprint(notification_bp)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "PMMIS"}

    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("run-scheduler")
    def run_scheduler_cmd():
        """Run the deadline scan and notification dispatch loops in this process."""
        from pmis.services.scheduler_service import SchedulerService
        SchedulerService.run_forever()

    # ── Background scheduler (deadline scan, notification dispatch) ──────
    importlib.import_module("pmis.services.scheduled_jobs")
    from pmis.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    logger.info("PMMIS app created (config=%s)", config_name)
    return app
