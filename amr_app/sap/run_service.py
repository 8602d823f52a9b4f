"""
Query helpers for SAP import runs and export logs.

The JSON endpoints and CLI share these helpers for paginated listings,
detail payloads, the daily digest and log retention.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable

from sqlalchemy import and_, delete, func, select
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from amr_app.models import SapExportLog, SapImportLog, SapImportRun, SapRunStatus, db

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
DEFAULT_SORT = "-started_at"

VALID_SORT_FIELDS = {
    "id": SapImportRun.id,
    "job": SapImportRun.job,
    "status": SapImportRun.status,
    "started_at": SapImportRun.started_at,
    "finished_at": SapImportRun.finished_at,
}
VALID_JOBS = ("meters", "sites", "users")


@dataclass(frozen=True)
class RunFilters:
    """Filter options applied to SAP import run queries."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    jobs: tuple[str, ...] = field(default_factory=tuple)
    statuses: tuple[SapRunStatus, ...] = field(default_factory=tuple)
    started_from: datetime | None = None
    started_to: datetime | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        jobs: Iterable[str] | None = None,
        statuses: Iterable[str] | None = None,
        started_from: str | datetime | None = None,
        started_to: str | datetime | None = None,
        default_page_size: int = DEFAULT_PAGE_SIZE,
    ) -> "RunFilters":
        """
        Coerce request arguments into a validated ``RunFilters``.

        Raises:
            ValueError: on unknown sort fields, jobs or statuses, or bad dates.
        """
        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=default_page_size), MAX_PAGE_SIZE)

        resolved_sort = sort or DEFAULT_SORT
        if resolved_sort.lstrip("-") not in VALID_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{resolved_sort.lstrip('-')}'.")

        resolved_jobs = []
        for job in jobs or ():
            if not job:
                continue
            normalized = job.strip().lower()
            if normalized not in VALID_JOBS:
                raise ValueError(f"Unsupported job filter '{job}'.")
            resolved_jobs.append(normalized)

        resolved_statuses = [_coerce_status(value) for value in (statuses or ()) if value]

        resolved_from = _coerce_datetime(started_from)
        resolved_to = _coerce_datetime(started_to, end_of_day=True)
        if resolved_from and resolved_to and resolved_from > resolved_to:
            raise ValueError("started_from must be before started_to.")

        return cls(
            page=resolved_page,
            page_size=resolved_size,
            sort=resolved_sort,
            jobs=tuple(sorted(set(resolved_jobs))),
            statuses=tuple(resolved_statuses),
            started_from=resolved_from,
            started_to=resolved_to,
        )


@dataclass(slots=True)
class RunListResult:
    items: list[dict[str, Any]]
    total: int
    page: int
    page_size: int
    total_pages: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": self.items,
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


@dataclass(slots=True)
class PurgeResult:
    runs: int
    file_logs: int
    export_logs: int

    @property
    def total(self) -> int:
        return self.runs + self.file_logs + self.export_logs


class SapRunService:
    """Facade over the SAP audit tables."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def list_runs(self, filters: RunFilters) -> RunListResult:
        predicates = self._predicates(filters)
        count_stmt = select(func.count(SapImportRun.id))
        if predicates:
            count_stmt = count_stmt.where(and_(*predicates))
        total = self.session.scalar(count_stmt) or 0
        if total == 0:
            return RunListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        stmt = select(SapImportRun)
        if predicates:
            stmt = stmt.where(and_(*predicates))
        stmt = (
            stmt.order_by(_resolve_sort_expression(filters.sort), SapImportRun.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
        )
        items = [run.to_dict() for run in self.session.scalars(stmt)]
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return RunListResult(
            items=items, total=total, page=filters.page, page_size=filters.page_size, total_pages=total_pages
        )

    def get_run(self, run_id: int) -> SapImportRun:
        run = self.session.get(SapImportRun, run_id)
        if run is None:
            raise NoResultFound(f"SAP import run {run_id} not found.")
        return run

    def get_run_detail(self, run_id: int) -> dict[str, Any]:
        run = self.get_run(run_id)
        payload = run.to_dict()
        payload["files"] = [log.to_dict() for log in run.files]
        return payload

    def list_exports(self, *, cut_off_date: date | None = None, limit: int = 50) -> list[dict[str, Any]]:
        stmt = select(SapExportLog)
        if cut_off_date is not None:
            stmt = stmt.where(SapExportLog.cut_off_date == cut_off_date)
        stmt = stmt.order_by(SapExportLog.id.desc()).limit(max(1, min(limit, MAX_PAGE_SIZE)))
        return [log.to_dict() for log in self.session.scalars(stmt)]

    def latest_runs(self) -> dict[str, dict[str, Any] | None]:
        latest: dict[str, dict[str, Any] | None] = {}
        for job in VALID_JOBS:
            run = self.session.scalars(
                select(SapImportRun).where(SapImportRun.job == job).order_by(SapImportRun.id.desc()).limit(1)
            ).first()
            latest[job] = run.to_dict() if run else None
        return latest

    def daily_summary(self, day: date) -> dict[str, Any]:
        """Aggregate the runs and exports that started on ``day`` (UTC)."""
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)

        imports: dict[str, dict[str, int]] = {job: {} for job in VALID_JOBS}
        runs = self.session.scalars(
            select(SapImportRun).where(SapImportRun.started_at >= start, SapImportRun.started_at < end)
        )
        for run in runs:
            stats = imports.setdefault(run.job, {})
            stats["runs"] = stats.get("runs", 0) + 1
            status_key = run.status.value if run.status else "unknown"
            stats[status_key] = stats.get(status_key, 0) + 1
            for key, value in (run.counts_json or {}).items():
                stats[key] = stats.get(key, 0) + int(value or 0)

        exports = {"files": 0, "exported_meters": 0, "skipped_meters": 0, "failed": 0}
        export_logs = self.session.scalars(
            select(SapExportLog).where(SapExportLog.started_at >= start, SapExportLog.started_at < end)
        )
        for log in export_logs:
            if log.status == "success":
                exports["files"] += 1
            else:
                exports["failed"] += 1
            exports["exported_meters"] += log.exported_meters or 0
            exports["skipped_meters"] += log.skipped_meters or 0

        return {"day": day.isoformat(), "imports": imports, "exports": exports}

    def purge(self, *, retention_days: int, now: datetime | None = None) -> PurgeResult:
        """Delete audit rows older than ``retention_days``. The caller commits."""
        now = now or datetime.now(timezone.utc)
        threshold = now - timedelta(days=retention_days)

        old_run_ids = select(SapImportRun.id).where(SapImportRun.started_at < threshold)
        file_logs = self.session.execute(
            delete(SapImportLog)
            .where(
                (SapImportLog.run_id.in_(old_run_ids))
                | (SapImportLog.run_id.is_(None) & (SapImportLog.started_at < threshold))
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        runs = self.session.execute(
            delete(SapImportRun)
            .where(SapImportRun.started_at < threshold)
            .execution_options(synchronize_session=False)
        ).rowcount
        export_logs = self.session.execute(
            delete(SapExportLog)
            .where(SapExportLog.started_at < threshold)
            .execution_options(synchronize_session=False)
        ).rowcount
        return PurgeResult(runs=runs or 0, file_logs=file_logs or 0, export_logs=export_logs or 0)

    def _predicates(self, filters: RunFilters) -> list:
        predicates = []
        if filters.jobs:
            predicates.append(SapImportRun.job.in_(filters.jobs))
        if filters.statuses:
            predicates.append(SapImportRun.status.in_(filters.statuses))
        if filters.started_from:
            predicates.append(SapImportRun.started_at >= filters.started_from)
        if filters.started_to:
            predicates.append(SapImportRun.started_at <= filters.started_to)
        return predicates


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def _coerce_status(value: str | SapRunStatus) -> SapRunStatus:
    if isinstance(value, SapRunStatus):
        return value
    try:
        return SapRunStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported status filter '{value}'.") from None


def _coerce_datetime(candidate: str | datetime | None, *, end_of_day: bool = False) -> datetime | None:
    if candidate in (None, ""):
        return None
    if isinstance(candidate, datetime):
        return candidate if candidate.tzinfo else candidate.replace(tzinfo=timezone.utc)
    text = str(candidate).strip()
    for fmt in ("%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S"):
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if fmt == "%Y-%m-%d":
            parsed = datetime.combine(parsed.date(), time.max if end_of_day else time.min)
        return parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unable to parse datetime value '{candidate}'. Expected ISO-like formats.")


def _resolve_sort_expression(sort: str):
    expression = VALID_SORT_FIELDS[sort.lstrip("-")]
    return expression.desc() if sort.startswith("-") else expression.asc()
