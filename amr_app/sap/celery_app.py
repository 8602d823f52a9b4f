"""
Celery configuration for the SAP worker and beat scheduler.

Defaults to a SQLite transport under the Flask instance folder so local runs
do not need Redis; set ``CELERY_BROKER_URL``/``CELERY_RESULT_BACKEND`` to use
a real broker.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from celery.schedules import crontab
from flask import Flask
from kombu import Queue

from config.sap import SapSettings

from .state import SAP_EXTENSION_KEY, get_sap_settings

DEFAULT_QUEUE_NAME = "sap"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
IMPORT_INTERVAL_MINUTES = 5


def _configure_quiet_loggers(app: Flask) -> None:
    """Keep SQLAlchemy and Celery worker-state chatter out of the job logs."""
    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)


def _normalize_sqlite_path(app: Flask) -> Path:
    configured = app.config.get("CELERY_SQLITE_PATH")
    if configured:
        sqlite_path = Path(configured)
        if not sqlite_path.is_absolute():
            sqlite_path = Path(app.instance_path) / sqlite_path
    else:
        sqlite_path = Path(app.instance_path) / DEFAULT_SQLITE_FILENAME

    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite_path


def _determine_connection_urls(app: Flask) -> tuple[str, str]:
    """
    Resolve broker/result backend URLs, defaulting to SQLite transports.

    Returns:
        tuple[str, str]: (broker_url, result_backend)
    """
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if broker_url and result_backend:
        return broker_url, result_backend

    # Celery expects forward slashes even on Windows.
    normalized = _normalize_sqlite_path(app).as_posix()
    return broker_url or f"sqla+sqlite:///{normalized}", result_backend or f"db+sqlite:///{normalized}"


def build_beat_schedule(settings: SapSettings) -> dict[str, dict[str, Any]]:
    """
    Periodic jobs: the three imports every few minutes, the export once a
    day at ``SAP_EXPORT_SCHEDULE``, log retention nightly and the optional
    daily digest.
    """
    schedule: dict[str, dict[str, Any]] = {}
    for import_type in ("meters", "sites", "users"):
        if settings.entity(import_type).enabled:
            schedule[f"sap-import-{import_type}"] = {
                "task": f"sap.import_{import_type}",
                "schedule": crontab(minute=f"*/{IMPORT_INTERVAL_MINUTES}"),
                "kwargs": {"trigger": "schedule"},
            }
    if settings.export_enabled:
        schedule["sap-export-readings"] = {
            "task": "sap.export_readings",
            "schedule": crontab(hour=settings.export_schedule.hour, minute=settings.export_schedule.minute),
            "kwargs": {"trigger": "schedule"},
        }
    schedule["sap-purge-logs"] = {
        "task": "sap.purge_logs",
        "schedule": crontab(hour=3, minute=30),
    }
    if settings.daily_summary:
        schedule["sap-daily-summary"] = {
            "task": "sap.daily_summary",
            "schedule": crontab(hour=settings.daily_summary_hour, minute=0),
        }
    return schedule


def create_celery_app(app: Flask) -> Celery:
    """Create a Celery instance bound to ``app``, with tasks run inside its app context."""
    broker_url, result_backend = _determine_connection_urls(app)
    settings = get_sap_settings(app)
    celery_app = Celery(
        app.import_name,
        broker=broker_url,
        backend=result_backend,
        include=("amr_app.sap.tasks",),
    )

    celery_app.conf.update(
        task_default_queue=DEFAULT_QUEUE_NAME,
        task_queues=[Queue(DEFAULT_QUEUE_NAME)],
        task_default_exchange=DEFAULT_QUEUE_NAME,
        task_default_routing_key=DEFAULT_QUEUE_NAME,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_track_started=True,
        result_extended=True,
        broker_connection_retry_on_startup=True,
        task_time_limit=app.config.get("SAP_TASK_TIME_LIMIT", 30 * 60),
        task_soft_time_limit=app.config.get("SAP_TASK_SOFT_TIME_LIMIT", 25 * 60),
        timezone=settings.timezone,
        enable_utc=True,
        beat_schedule=build_beat_schedule(settings),
        worker_log_format="[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
        worker_task_log_format="[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s",
        worker_hijack_root_logger=False,
    )

    extra_conf: Mapping[str, Any] | str | None = app.config.get("CELERY_CONFIG")
    if isinstance(extra_conf, str):
        try:
            extra_conf = json.loads(extra_conf)
        except json.JSONDecodeError:
            app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
            extra_conf = None

    app.logger.info(
        "SAP Celery configuration resolved",
        extra={
            "sap_celery_extra_conf": extra_conf,
            "sap_celery_broker_url": broker_url,
            "sap_celery_result_backend": result_backend,
            "sap_worker_enabled": app.config.get("SAP_WORKER_ENABLED"),
        },
    )

    if extra_conf:
        celery_app.conf.update(extra_conf)

    _configure_quiet_loggers(app)

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None:
        celery_app = create_celery_app(app)
        state["celery_app"] = celery_app
    return celery_app


def get_celery_app(app: Flask) -> Celery | None:
    """Fetch the Celery instance, creating it on demand when SAP is enabled."""
    state: dict[str, Any] | None = app.extensions.get(SAP_EXTENSION_KEY)  # type: ignore[arg-type]
    if not state:
        return None
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None and state.get("enabled"):
        celery_app = ensure_celery_app(app, state)
    return celery_app
