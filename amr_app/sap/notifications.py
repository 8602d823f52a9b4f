"""
E-mail notifications for SAP jobs.

Sent through the application's ``ErrorAlertingSystem`` SMTP transport to
``SAP_NOTIFICATION_EMAILS``. Delivery problems are logged, never raised.
"""

from __future__ import annotations

import logging
from datetime import datetime

from config.sap import SapSettings

from amr_app.utils.error_handler import error_alerter

from .results import JobResult, JobStatus

logger = logging.getLogger(__name__)


def _format_result(result: JobResult) -> str:
    lines = [
        f"Job: {result.job}",
        f"Status: {result.status.value}",
    ]
    if result.source:
        lines.append(f"Source: {result.source}")
    if result.run_id is not None:
        lines.append(f"Run: {result.run_id}")
    if result.files:
        lines.append("Files: " + ", ".join(result.files))
    if result.counts:
        lines.append("Counts: " + ", ".join(f"{key}={value}" for key, value in sorted(result.counts.items())))
    if result.errors:
        lines.append("")
        lines.append("Errors:")
        lines.extend(f"  - {error}" for error in result.errors[:50])
        if len(result.errors) > 50:
            lines.append(f"  ... {len(result.errors) - 50} more")
    return "\n".join(lines)


def should_notify(result: JobResult) -> bool:
    if result.status in (JobStatus.ALREADY_RUNNING, JobStatus.DISABLED):
        return False
    return bool(result.errors) or result.status == JobStatus.FAILED


def notify_job_result(settings: SapSettings, result: JobResult) -> bool:
    """Send an error e-mail for ``result`` when enabled and it carries errors."""
    if not settings.notify_on_error or not should_notify(result):
        return False
    if not settings.notification_emails:
        logger.warning("SAP_NOTIFY_ON_ERROR is set but SAP_NOTIFICATION_EMAILS is empty")
        return False
    subject = f"[SAP] {result.job} {result.status.value}"
    sent = error_alerter.send_email(subject, _format_result(result), list(settings.notification_emails))
    if sent:
        logger.info("Sent SAP error notification for %s", result.job, extra={"sap_job": result.job})
    return sent


def send_daily_summary(settings: SapSettings, summary: dict, *, day: datetime | None = None) -> bool:
    """E-mail a per-job digest produced by ``SapRunService.daily_summary``."""
    if not settings.daily_summary or not settings.notification_emails:
        return False
    label = (day or datetime.now()).strftime("%Y-%m-%d")
    lines = [f"SAP exchange summary for {label}", ""]
    for job, stats in sorted(summary.get("imports", {}).items()):
        counts = ", ".join(f"{key}={value}" for key, value in sorted(stats.items()))
        lines.append(f"{job}: {counts or 'no runs'}")
    exports = summary.get("exports", {})
    lines.append(
        f"export: files={exports.get('files', 0)}, exported={exports.get('exported_meters', 0)}, "
        f"skipped={exports.get('skipped_meters', 0)}, failed={exports.get('failed', 0)}"
    )
    return error_alerter.send_email(
        f"[SAP] Daily summary {label}", "\n".join(lines), list(settings.notification_emails)
    )
