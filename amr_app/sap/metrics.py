"""Prometheus metrics for the SAP exchange jobs."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

_job_runs = Counter(
    "sap_job_runs_total",
    "SAP job executions by job and final status.",
    ["job", "status"],
)
_job_duration = Histogram(
    "sap_job_duration_seconds",
    "Duration of SAP job executions in seconds.",
    ["job"],
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 900),
)
_files_processed = Counter(
    "sap_files_processed_total",
    "SAP files processed by job and outcome.",
    ["job", "status"],
)
_rows_reconciled = Counter(
    "sap_rows_reconciled_total",
    "Rows reconciled from SAP master-data files by outcome.",
    ["job", "outcome"],
)
_export_candidates = Counter(
    "sap_export_candidates_total",
    "Export candidates by decision (exported or exclusion reason).",
    ["decision"],
)
_last_success = Gauge(
    "sap_job_last_success_timestamp_seconds",
    "Unix timestamp of the last successful run per SAP job.",
    ["job"],
)

ROW_OUTCOMES = ("created", "updated", "unchanged", "skipped", "deactivated", "row_errors")


def record_job(job: str, status: str, duration_seconds: float | None, *, success: bool) -> None:
    _job_runs.labels(job=job, status=status).inc()
    if duration_seconds is not None:
        _job_duration.labels(job=job).observe(duration_seconds)
    if success:
        _last_success.labels(job=job).set_to_current_time()


def record_file(job: str, status: str, counts: dict[str, int] | None = None) -> None:
    _files_processed.labels(job=job, status=status).inc()
    record_rows(job, counts)


def record_rows(job: str, counts: dict[str, int] | None) -> None:
    for outcome in ROW_OUTCOMES:
        value = (counts or {}).get(outcome, 0)
        if value:
            _rows_reconciled.labels(job=job, outcome=outcome).inc(value)


def record_export_decisions(exported: int, exclusions: dict[str, int]) -> None:
    if exported:
        _export_candidates.labels(decision="exported").inc(exported)
    for reason, count in exclusions.items():
        if count:
            _export_candidates.labels(decision=reason).inc(count)
