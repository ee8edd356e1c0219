"""
Integration hub Flask application.

``create_app`` selects configuration from ``FLASK_ENV``, initialises the
database, logging and the integrations package, and returns the app.
"""

from __future__ import annotations

import logging
import os
from http import HTTPStatus
from typing import Any, Mapping

from flask import Flask, Response, jsonify
from sqlalchemy import event

from config import DevelopmentConfig, ProductionConfig, TestingConfig
from config.monitoring import (
    DevelopmentMonitoringConfig,
    ProductionMonitoringConfig,
    TestingMonitoringConfig,
)
from config.validation import validate_and_exit
from hub_app.models import db
from hub_app.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

_CONFIGS = {
    "production": (ProductionConfig, ProductionMonitoringConfig),
    "testing": (TestingConfig, TestingMonitoringConfig),
    "development": (DevelopmentConfig, DevelopmentMonitoringConfig),
}


def _configure_sqlite_connection_factory(*, enable_foreign_keys: bool):
    """Return a connection hook applying concurrency-friendly pragmas."""

    def _configure_sqlite_connection(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
        try:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            if enable_foreign_keys:
                cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
        except Exception as exc:
            logger.warning("Failed to apply SQLite PRAGMAs: %s", exc)

    return _configure_sqlite_connection


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({"error": "Not found."}), HTTPStatus.NOT_FOUND

    @app.errorhandler(405)
    def method_not_allowed_error(error):
        return jsonify({"error": "Method not allowed."}), HTTPStatus.METHOD_NOT_ALLOWED

    @app.errorhandler(413)
    def payload_too_large_error(error):
        return jsonify({"error": "Upload exceeds INTEGRATIONS_MAX_UPLOAD_MB."}), HTTPStatus.REQUEST_ENTITY_TOO_LARGE

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return jsonify({"error": "Internal server error."}), HTTPStatus.INTERNAL_SERVER_ERROR


def create_app(config_object: Any = None, overrides: Mapping[str, Any] | None = None) -> Flask:
    """
    Build a configured Flask application.

    ``config_object`` replaces the ``FLASK_ENV`` based selection; ``overrides``
    are applied last, before any extension reads the config.
    """
    from hub_app.integrations import init_integrations

    app = Flask(__name__)

    flask_env = os.environ.get("FLASK_ENV", "development")
    if config_object is None and flask_env == "production":
        validate_and_exit(flask_env)

    base_config, monitoring_config = _CONFIGS.get(flask_env, _CONFIGS["development"])
    app.config.from_object(config_object or base_config)
    app.config.from_object(monitoring_config)
    if overrides:
        app.config.update(overrides)

    db.init_app(app)
    setup_logging(app)
    _register_error_handlers(app)

    with app.app_context():
        engine = db.engine
        if engine.url.drivername.startswith("sqlite"):
            if not getattr(engine, "_sqlite_pragmas_configured", False):
                pragma_hook = _configure_sqlite_connection_factory(
                    enable_foreign_keys=not app.config.get("TESTING", False)
                )
                event.listen(engine, "connect", pragma_hook)
                engine._sqlite_pragmas_configured = True  # type: ignore[attr-defined]
        # Create the database tables only if not in testing mode
        if not app.config.get("TESTING", False):
            db.create_all()

    init_integrations(app)
    if app.config.get("MONITORING_ENABLED"):
        _register_metrics_endpoint(app)
    return app


def _register_metrics_endpoint(app: Flask) -> None:
    from hub_app.integrations.metrics import render_metrics

    def metrics():
        body, content_type = render_metrics()
        return Response(body, content_type=content_type)

    app.add_url_rule(app.config.get("METRICS_ENDPOINT", "/metrics"), "metrics", metrics)
