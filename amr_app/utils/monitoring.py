# amr_app/utils/monitoring.py

"""
Health endpoints and the Prometheus scrape endpoint.
"""

from datetime import datetime, timezone

from flask import Response, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from amr_app.models import db


class HealthChecker:
    """Database-backed health, readiness and liveness checks"""

    def __init__(self, app=None):
        self.app = app
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.app = app
        app.add_url_rule("/health", "health_check", self.basic_health_check)
        app.add_url_rule("/health/ready", "readiness_check", self.readiness_check)
        app.add_url_rule("/health/live", "liveness_check", self.liveness_check)

    def _check_database(self):
        db.session.execute(text("SELECT 1"))

    def basic_health_check(self):
        try:
            self._check_database()
        except SQLAlchemyError as exc:
            return jsonify({"status": "unhealthy", "error": f"database: {exc}"}), 503
        except Exception as exc:
            return jsonify({"status": "unhealthy", "error": str(exc)}), 503
        return jsonify({"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}), 200

    def readiness_check(self):
        try:
            self._check_database()
        except Exception as exc:
            return jsonify({"status": "not_ready", "error": str(exc)}), 503
        return jsonify({"status": "ready"}), 200

    def liveness_check(self):
        return jsonify({"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}), 200


def metrics_endpoint():
    return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)


def init_monitoring(app):
    """Register health routes and, when MONITORING_ENABLED, the metrics endpoint"""
    health_checker = HealthChecker(app)
    app.extensions["health_checker"] = health_checker
    if app.config.get("MONITORING_ENABLED"):
        app.add_url_rule(app.config.get("METRICS_ENDPOINT", "/metrics"), "metrics", metrics_endpoint)
    return health_checker
