"""
SAP job orchestration.

Every entry point takes the job lock first, does its work and always returns
a :class:`JobResult`; expected failures (disabled job, lock held, no files,
bad file, archive problems) are reported in the result instead of raised.
The CLI, the Celery tasks and the beat schedule all call into
:class:`SapJobRunner`.
"""

from __future__ import annotations

import csv
import logging
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Callable
from zoneinfo import ZoneInfo

from flask import Flask, current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.sap import LOCK_NAMES, SapSettings

from amr_app.models import SapExportLog, SapFileStatus, SapImportLog, SapImportRun, SapRunStatus, db

from . import metrics
from .archive import Archiver, archive_export_files
from .contracts import get_schema
from .directories import DirectoryResolver, DirectoryTier
from .errors import AlreadyRunning, ArchiveError, ExportFileExists, LockError, MalformedFile, NoFilesFound
from .export import (
    ExportCandidate,
    ExportGroup,
    ExportValidator,
    ExportWriter,
    cutoff_timestamp,
    group_sites,
    load_candidates,
    sites_due,
    target_cutoff_days,
)
from .locks import LockManager
from .mapping import MappingTables
from .notifications import notify_job_result, send_daily_summary
from .reader import SapFileReader
from .reconcile import MeterReconciler, Reconciler, SiteReconciler, UserReconciler
from .reconcile.base import utcnow
from .results import FileOutcome, JobResult, JobStatus
from .run_service import SapRunService
from .state import get_sap_settings

logger = logging.getLogger(__name__)

EXPORT_JOB = "export"
ARCHIVE_JOB = "archive_exports"
PURGE_JOB = "purge_logs"
SUMMARY_JOB = "daily_summary"

_RUN_STATUS = {
    JobStatus.SUCCEEDED: SapRunStatus.SUCCEEDED,
    JobStatus.PARTIALLY_FAILED: SapRunStatus.PARTIALLY_FAILED,
    JobStatus.FAILED: SapRunStatus.FAILED,
}


def _overall_status(outcomes: list[FileOutcome]) -> JobStatus:
    if not outcomes:
        return JobStatus.SUCCEEDED
    failed = sum(1 for outcome in outcomes if outcome.status == SapFileStatus.FAILED.value)
    if failed == len(outcomes):
        return JobStatus.FAILED
    if failed or any(outcome.status == SapFileStatus.PARTIAL.value for outcome in outcomes):
        return JobStatus.PARTIALLY_FAILED
    return JobStatus.SUCCEEDED


class SapJobRunner:
    """Run SAP imports, exports and housekeeping against one settings snapshot."""

    def __init__(
        self,
        settings: SapSettings,
        *,
        session: Session | None = None,
        clock: Callable[[], datetime] = utcnow,
        lock_manager: LockManager | None = None,
        archiver: Archiver | None = None,
    ) -> None:
        self.settings = settings
        self.session: Session = session or db.session
        self.clock = clock
        self.locks = lock_manager or LockManager(
            settings.lock_path,
            stale_after=timedelta(minutes=settings.lock_stale_after_minutes),
            clock=clock,
        )
        self.archiver = archiver or Archiver(clock)
        self.resolver = DirectoryResolver(settings)
        self.mappings = MappingTables.from_settings(settings)

    # Imports

    def build_reconciler(self, import_type: str) -> Reconciler:
        settings = self.settings
        if import_type == "meters":
            return MeterReconciler(
                self.session,
                self.mappings,
                self.clock,
                deactivate_absent=settings.meters_deactivate_absent,
                cleanup_unassigned_inactive=settings.cleanup_unassigned_inactive,
            )
        if import_type == "sites":
            return SiteReconciler(self.session, self.mappings, self.clock)
        if import_type == "users":
            return UserReconciler(
                self.session,
                self.mappings,
                self.clock,
                email_domain=settings.user_email_domain,
                default_password=settings.default_user_password,
                deactivate_absent=settings.users_deactivate_absent,
            )
        raise ValueError(f"Unknown SAP import type '{import_type}'.")

    def run_import(self, import_type: str, *, trigger: str = "manual") -> JobResult:
        """
        Import every pending file of one type from the first non-empty tier.

        Returns a result with status ``disabled`` or ``already_running``
        without touching the filesystem when the job cannot start.
        """
        entity = self.settings.entity(import_type)
        if not entity.enabled:
            result = JobResult.disabled(import_type, f"Import for {import_type} is disabled")
            logger.info(result.message, extra={"sap_job": import_type})
            return result

        started = self.clock()
        try:
            lock = self.locks.acquire(entity.lock_name)
        except AlreadyRunning as exc:
            logger.info("Skipping %s import: %s", import_type, exc, extra={"sap_job": import_type})
            return self._finish(JobResult.already_running(import_type, str(exc)), started)
        except LockError as exc:
            logger.error("Could not lock %s import: %s", import_type, exc, extra={"sap_job": import_type})
            return self._finish(JobResult(job=import_type, status=JobStatus.FAILED, errors=[str(exc)]), started)

        try:
            result = self._import_files(import_type, started=started, trigger=trigger)
        finally:
            self._release(lock)
        return self._finish(result, started)

    def _import_files(self, import_type: str, *, started: datetime, trigger: str) -> JobResult:
        result = JobResult(job=import_type, started_at=started)
        try:
            discovered = self.resolver.discover(import_type)
        except NoFilesFound as exc:
            logger.info(str(exc), extra={"sap_job": import_type})
            result.message = str(exc)
            result.counts = {"files": 0, "created": 0, "updated": 0, "deactivated": 0}
            return result

        tier = discovered.tier
        result.source = tier.source
        result.files = discovered.names
        logger.info(
            "Found %d %s file(s) in %s",
            len(discovered.files),
            import_type,
            tier.path,
            extra={"sap_job": import_type, "sap_source": tier.source},
        )

        run = None
        try:
            if self.settings.log_to_database:
                run = SapImportRun(
                    job=import_type,
                    source=tier.source,
                    status=SapRunStatus.RUNNING,
                    file_names=discovered.names,
                    trigger=trigger,
                    started_at=started,
                )
                self.session.add(run)
                self.session.commit()
                result.run_id = run.id

            reconciler = self.build_reconciler(import_type)
            for path in discovered.files:
                outcome = self._import_file(import_type, path, tier, reconciler, run)
                result.outcomes.append(outcome)
                result.add_counts(outcome.counts)
                result.errors.extend(outcome.errors)
                metrics.record_file(import_type, outcome.status, outcome.counts)

            result.counts["deactivated"] = self._deactivate_missing(import_type, tier, reconciler, result.outcomes)
            deleted = reconciler.cleanup()
            if deleted:
                self.session.commit()
            result.counts["deleted"] = deleted
            result.status = _overall_status(result.outcomes)
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("Database error during %s import", import_type, extra={"sap_job": import_type})
            result.status = JobStatus.FAILED
            result.errors.append(f"Database error: {exc}")

        result.counts["files"] = len(result.outcomes)
        result.counts["files_failed"] = sum(
            1 for outcome in result.outcomes if outcome.status == SapFileStatus.FAILED.value
        )
        if run is not None:
            self._finalize_run(run.id, result)
        return result

    def _import_file(
        self,
        import_type: str,
        path: Path,
        tier: DirectoryTier,
        reconciler: Reconciler,
        run: SapImportRun | None,
    ) -> FileOutcome:
        entity = self.settings.entity(import_type)
        started = self.clock()
        outcome = FileOutcome(name=path.name, path=str(path), status=SapFileStatus.PROCESSING.value)
        file_log = None
        if self.settings.log_to_database:
            file_log = SapImportLog(
                run_id=run.id if run is not None else None,
                import_type=import_type,
                file_name=path.name,
                file_path=str(path),
                source=tier.source,
                status=SapFileStatus.PROCESSING,
                started_at=started,
            )
            self.session.add(file_log)
            self.session.commit()

        reader = SapFileReader(path, get_schema(import_type))
        try:
            summary = reconciler.reconcile(reader.iter_rows(), path.name, tier.source)
            self.session.commit()
        except MalformedFile as exc:
            self.session.rollback()
            logger.error("Rejected %s: %s", path.name, exc, extra={"sap_job": import_type, "sap_file": path.name})
            outcome.status = SapFileStatus.FAILED.value
            outcome.parsed = False
            outcome.errors.append(str(exc))
            self._update_file_log(file_log, outcome, started)
            return outcome

        outcome.counts = summary.as_counts()
        outcome.errors.extend(str(error) for error in summary.row_errors)
        outcome.status = SapFileStatus.PARTIAL.value if summary.row_errors else SapFileStatus.SUCCESS.value

        try:
            archived = self.archiver.archive(path, entity.archive_path)
            outcome.archived_to = str(archived)
        except ArchiveError as exc:
            logger.error(str(exc), extra={"sap_job": import_type, "sap_file": path.name})
            outcome.status = SapFileStatus.FAILED.value
            outcome.errors.append(str(exc))

        logger.info(
            "Processed %s: %d created, %d updated, %d unchanged, %d skipped, %d errors",
            path.name,
            summary.created,
            summary.updated,
            summary.unchanged,
            summary.skipped,
            summary.error_count,
            extra={"sap_job": import_type, "sap_file": path.name, "sap_source": tier.source},
        )
        self._update_file_log(file_log, outcome, started)
        return outcome

    def _deactivate_missing(
        self, import_type: str, tier: DirectoryTier, reconciler: Reconciler, outcomes: list[FileOutcome]
    ) -> int:
        """Deactivate records absent from the whole run, unless a file could not be read."""
        rejected = [outcome.name for outcome in outcomes if not outcome.parsed]
        if rejected:
            logger.warning(
                "Skipping deactivation for %s: %s could not be read",
                import_type,
                ", ".join(rejected),
                extra={"sap_job": import_type, "sap_source": tier.source},
            )
            return 0
        deactivated = reconciler.deactivate_missing(tier.source)
        if deactivated:
            self.session.commit()
            metrics.record_rows(import_type, {"deactivated": deactivated})
        return deactivated

    def _update_file_log(self, file_log: SapImportLog | None, outcome: FileOutcome, started: datetime) -> None:
        if file_log is None:
            return
        counts = outcome.counts
        finished = self.clock()
        file_log.status = SapFileStatus(outcome.status)
        file_log.total_rows = counts.get("total_rows", 0)
        file_log.processed_rows = counts.get("total_rows", 0) - counts.get("row_errors", 0)
        file_log.inserted_rows = counts.get("created", 0)
        file_log.updated_rows = counts.get("updated", 0)
        file_log.unchanged_rows = counts.get("unchanged", 0)
        file_log.skipped_rows = counts.get("skipped", 0)
        file_log.deactivated_rows = counts.get("deactivated", 0)
        file_log.error_rows = counts.get("row_errors", 0)
        file_log.errors = list(outcome.errors)
        file_log.archived_to = outcome.archived_to
        file_log.completed_at = finished
        file_log.duration_seconds = round((finished - started).total_seconds(), 3)
        self.session.commit()

    def _finalize_run(self, run_id: int, result: JobResult) -> None:
        finished = self.clock()
        try:
            run = self.session.get(SapImportRun, run_id)
            if run is None:
                return
            run.status = _RUN_STATUS.get(result.status, SapRunStatus.FAILED)
            run.counts_json = dict(result.counts)
            run.errors_json = list(result.errors)
            run.finished_at = finished
            if result.started_at is not None:
                run.duration_seconds = round((finished - result.started_at).total_seconds(), 3)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("Could not finalize SAP import run %s", run_id, extra={"sap_job": result.job})

    # Export

    def local_today(self) -> date:
        return self.clock().astimezone(ZoneInfo(self.settings.timezone)).date()

    def export_readings(
        self,
        *,
        cutoff_date: date | None = None,
        cutoff_day: int | None = None,
        trigger: str = "manual",
    ) -> JobResult:
        """Write one reading file per business entity and company due on ``cutoff_date``."""
        if not self.settings.export_enabled:
            result = JobResult.disabled(EXPORT_JOB, "SAP export is disabled")
            logger.info(result.message, extra={"sap_job": EXPORT_JOB})
            return result

        started = self.clock()
        try:
            lock = self.locks.acquire(LOCK_NAMES[EXPORT_JOB])
        except AlreadyRunning as exc:
            logger.info("Skipping export: %s", exc, extra={"sap_job": EXPORT_JOB})
            return self._finish(JobResult.already_running(EXPORT_JOB, str(exc)), started)
        except LockError as exc:
            logger.error("Could not lock export: %s", exc, extra={"sap_job": EXPORT_JOB})
            return self._finish(JobResult(job=EXPORT_JOB, status=JobStatus.FAILED, errors=[str(exc)]), started)

        try:
            result = self._export(cutoff_date or self.local_today(), cutoff_day, started=started, trigger=trigger)
        finally:
            self._release(lock)
        return self._finish(result, started)

    def _export(self, cutoff_date: date, cutoff_day: int | None, *, started: datetime, trigger: str) -> JobResult:
        cutoff_at = cutoff_timestamp(cutoff_date, self.settings.export_cutoff_time)
        days = target_cutoff_days(cutoff_date, cutoff_day)
        result = JobResult(job=EXPORT_JOB, started_at=started)
        result.details = {
            "cutoff_date": cutoff_date.isoformat(),
            "cutoff_at": cutoff_at.isoformat(),
            "cutoff_days": list(days),
            "trigger": trigger,
        }
        result.counts = {"sites": 0, "groups": 0, "candidates": 0, "exported": 0, "skipped": 0}

        try:
            sites = sites_due(self.session, days)
            if not sites:
                result.message = f"No sites with cut-off day {', '.join(str(day) for day in days)}"
                logger.info(result.message, extra={"sap_job": EXPORT_JOB})
                return result

            groups = group_sites(sites)
            result.counts["sites"] = len(sites)
            result.counts["groups"] = len(groups)
            validator = ExportValidator(self.settings.export_rules, cutoff_at=cutoff_at)
            writer = ExportWriter(self.settings.export_path, self.settings.export_filename_format, self.settings.csv)
            validation_totals: dict[str, int] = {}

            for group in groups:
                outcome = self._export_group(group, cutoff_date, cutoff_at, validator, writer)
                result.outcomes.append(outcome)
                result.errors.extend(outcome.errors)
                if outcome.status == SapFileStatus.SUCCESS.value:
                    result.files.append(outcome.name)
                for key in ("candidates", "exported", "skipped"):
                    result.counts[key] += outcome.counts.get(key, 0)
                for reason, count in outcome.counts.items():
                    if reason.startswith("rule:"):
                        validation_totals[reason[5:]] = validation_totals.get(reason[5:], 0) + count
                metrics.record_file(EXPORT_JOB, outcome.status)

            result.details["validation_summary"] = dict(sorted(validation_totals.items()))
            metrics.record_export_decisions(result.counts["exported"], validation_totals)
            result.status = _overall_status(result.outcomes)
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("Database error during export", extra={"sap_job": EXPORT_JOB})
            result.status = JobStatus.FAILED
            result.errors.append(f"Database error: {exc}")
        return result

    def _export_group(
        self,
        group: ExportGroup,
        cutoff_date: date,
        cutoff_at: datetime,
        validator: ExportValidator,
        writer: ExportWriter,
    ) -> FileOutcome:
        started = self.clock()
        file_name = writer.filename(group.business_entity, group.company_code, cutoff_date)
        target = writer.export_dir / file_name
        outcome = FileOutcome(name=file_name, path=str(target), status=SapFileStatus.PROCESSING.value)

        export_log = None
        if self.settings.log_to_database:
            export_log = SapExportLog(
                business_entity=group.business_entity,
                company_code=group.company_code,
                site_codes=list(group.site_codes),
                cut_off_date=cutoff_date,
                cut_off_at=cutoff_at,
                file_name=file_name,
                status=SapFileStatus.PROCESSING.value,
                started_at=started,
            )
            self.session.add(export_log)
            self.session.commit()

        group.candidates = load_candidates(self.session, group, cutoff_at)
        eligible: list[ExportCandidate] = []
        exclusions: list[dict] = []
        rule_counts: dict[str, int] = {}
        for candidate in group.candidates:
            failure = validator.evaluate(candidate)
            if failure is None:
                eligible.append(candidate)
                continue
            rule_counts[failure.code] = rule_counts.get(failure.code, 0) + 1
            exclusions.append({"meter_id": candidate.meter_id, "meter": candidate.meter_name, "reason": failure.code})

        outcome.counts = {
            "candidates": len(group.candidates),
            "exported": len(eligible),
            "skipped": len(exclusions),
        }
        outcome.counts.update({f"rule:{code}": count for code, count in rule_counts.items()})

        try:
            written = writer.write(group, cutoff_date, eligible)
            outcome.path = str(written)
            outcome.status = SapFileStatus.SUCCESS.value
        except ExportFileExists as exc:
            logger.warning(str(exc), extra={"sap_job": EXPORT_JOB, "sap_file": file_name})
            outcome.status = SapFileStatus.FAILED.value
            outcome.errors.append(str(exc))
        except OSError as exc:
            logger.error(
                "Could not write %s: %s", file_name, exc, extra={"sap_job": EXPORT_JOB, "sap_file": file_name}
            )
            outcome.status = SapFileStatus.FAILED.value
            outcome.errors.append(f"Could not write {file_name}: {exc}")
        except csv.Error as exc:
            logger.error(
                "Could not render %s: %s", file_name, exc, extra={"sap_job": EXPORT_JOB, "sap_file": file_name}
            )
            outcome.status = SapFileStatus.FAILED.value
            outcome.errors.append(f"Could not render {file_name}: {exc}")

        if export_log is not None:
            finished = self.clock()
            export_log.file_path = outcome.path if outcome.status == SapFileStatus.SUCCESS.value else None
            export_log.status = outcome.status
            export_log.total_meters = len(group.candidates)
            export_log.exported_meters = len(eligible)
            export_log.skipped_meters = len(exclusions)
            export_log.validation_summary = dict(sorted(rule_counts.items()))
            export_log.exclusions = exclusions
            export_log.errors = list(outcome.errors)
            export_log.completed_at = finished
            export_log.duration_seconds = round((finished - started).total_seconds(), 3)
            self.session.commit()
        return outcome

    # Housekeeping

    def archive_exports(self) -> JobResult:
        """Move export files already picked up by SAP into the export archive."""
        started = self.clock()
        result = JobResult(job=ARCHIVE_JOB, started_at=started)
        try:
            moved = archive_export_files(
                self.settings.export_path, self.settings.export_archive_path, archiver=self.archiver
            )
        except ArchiveError as exc:
            logger.error(str(exc), extra={"sap_job": ARCHIVE_JOB})
            result.status = JobStatus.FAILED
            result.errors.append(str(exc))
            moved = []
        result.files = [path.name for path in moved]
        result.counts = {"archived": len(moved)}
        return self._finish(result, started, notify=result.status == JobStatus.FAILED)

    def purge_logs(self, *, retention_days: int | None = None) -> JobResult:
        started = self.clock()
        days = retention_days if retention_days is not None else self.settings.log_retention_days
        result = JobResult(job=PURGE_JOB, started_at=started, details={"retention_days": days})
        try:
            purged = SapRunService(self.session).purge(retention_days=days, now=started)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("Could not purge SAP logs", extra={"sap_job": PURGE_JOB})
            result.status = JobStatus.FAILED
            result.errors.append(f"Database error: {exc}")
        else:
            result.counts = {"runs": purged.runs, "file_logs": purged.file_logs, "export_logs": purged.export_logs}
            logger.info(
                "Purged %d SAP log rows older than %d days", purged.total, days, extra={"sap_job": PURGE_JOB}
            )
        return self._finish(result, started)

    def daily_summary(self, *, day: date | None = None) -> JobResult:
        started = self.clock()
        target = day or (self.local_today() - timedelta(days=1))
        summary = SapRunService(self.session).daily_summary(target)
        sent = send_daily_summary(self.settings, summary, day=datetime.combine(target, datetime.min.time()))
        result = JobResult(job=SUMMARY_JOB, started_at=started, details={"summary": summary, "sent": sent})
        return self._finish(result, started, notify=False)

    # Shared

    def _release(self, lock) -> None:
        try:
            self.locks.release(lock)
        except LockError:
            logger.exception("Could not release lock %s", lock.job_key, extra={"sap_job": lock.job_key})

    def _finish(self, result: JobResult, started: datetime, *, notify: bool = True) -> JobResult:
        result.started_at = result.started_at or started
        result.finished_at = self.clock()
        metrics.record_job(result.job, result.status.value, result.duration_seconds, success=result.success)
        if notify:
            notify_job_result(self.settings, result)
        return result


def build_runner(app: Flask | None = None, **kwargs) -> SapJobRunner:
    app = app or current_app._get_current_object()
    return SapJobRunner(get_sap_settings(app), **kwargs)


def import_meters(app: Flask | None = None, *, trigger: str = "manual") -> JobResult:
    return build_runner(app).run_import("meters", trigger=trigger)


def import_sites(app: Flask | None = None, *, trigger: str = "manual") -> JobResult:
    return build_runner(app).run_import("sites", trigger=trigger)


def import_users(app: Flask | None = None, *, trigger: str = "manual") -> JobResult:
    return build_runner(app).run_import("users", trigger=trigger)


def export_readings(
    app: Flask | None = None,
    *,
    cutoff_date: date | None = None,
    cutoff_day: int | None = None,
    trigger: str = "manual",
) -> JobResult:
    return build_runner(app).export_readings(cutoff_date=cutoff_date, cutoff_day=cutoff_day, trigger=trigger)


def archive_exports(app: Flask | None = None) -> JobResult:
    return build_runner(app).archive_exports()


def purge_sap_logs(app: Flask | None = None, *, retention_days: int | None = None) -> JobResult:
    return build_runner(app).purge_logs(retention_days=retention_days)


def send_daily_summary_job(app: Flask | None = None, *, day: date | None = None) -> JobResult:
    return build_runner(app).daily_summary(day=day)
