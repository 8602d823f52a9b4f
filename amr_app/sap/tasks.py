"""
Celery tasks for the SAP exchange.

Each task runs the matching job inside the Flask app context supplied by
``FlaskContextTask`` and returns the job result as a plain dict.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from . import jobs


@shared_task(name="sap.healthcheck", bind=True)
def sap_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by ``flask sap worker ping`` and the worker health endpoint."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
    }


def _log_result(payload: dict[str, Any]) -> dict[str, Any]:
    current_app.logger.info(
        "SAP task finished",
        extra={"sap_job": payload["job"], "sap_status": payload["status"], "sap_counts": payload["counts"]},
    )
    return payload


@shared_task(name="sap.import_meters")
def import_meters_task(trigger: str = "worker") -> dict[str, Any]:
    return _log_result(jobs.import_meters(trigger=trigger).to_dict())


@shared_task(name="sap.import_sites")
def import_sites_task(trigger: str = "worker") -> dict[str, Any]:
    return _log_result(jobs.import_sites(trigger=trigger).to_dict())


@shared_task(name="sap.import_users")
def import_users_task(trigger: str = "worker") -> dict[str, Any]:
    return _log_result(jobs.import_users(trigger=trigger).to_dict())


@shared_task(name="sap.export_readings")
def export_readings_task(
    cutoff_date: str | None = None, cutoff_day: int | None = None, trigger: str = "worker"
) -> dict[str, Any]:
    parsed_date = date.fromisoformat(cutoff_date) if cutoff_date else None
    result = jobs.export_readings(cutoff_date=parsed_date, cutoff_day=cutoff_day, trigger=trigger)
    return _log_result(result.to_dict())


@shared_task(name="sap.archive_exports")
def archive_exports_task() -> dict[str, Any]:
    return _log_result(jobs.archive_exports().to_dict())


@shared_task(name="sap.purge_logs")
def purge_logs_task(retention_days: int | None = None) -> dict[str, Any]:
    return _log_result(jobs.purge_sap_logs(retention_days=retention_days).to_dict())


@shared_task(name="sap.daily_summary")
def daily_summary_task() -> dict[str, Any]:
    return _log_result(jobs.send_daily_summary_job().to_dict())
