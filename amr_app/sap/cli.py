"""
``flask sap`` commands.

Jobs run inline by default; ``--async`` hands them to the Celery worker
instead. Commands exit non-zero when a job fails or is disabled.
"""

from __future__ import annotations

import json
from datetime import date, datetime, timedelta
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from config.sap import IMPORT_TYPES, LOCK_NAMES

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .jobs import build_runner
from .locks import LockManager
from .results import JobResult
from .run_service import RunFilters, SapRunService
from .state import get_sap_settings, is_sap_enabled


def _load_app(ctx: click.Context):
    info = ctx.ensure_object(ScriptInfo)
    return info.load_app()


@click.group(name="sap", invoke_without_command=True)
@click.pass_context
def sap_cli(ctx):
    """SAP import/export commands. Shows the exchange status when run bare."""
    app = _load_app(ctx)
    if not is_sap_enabled(app):
        raise click.ClickException("SAP exchange is disabled via SAP_ENABLED=false.")
    if ctx.invoked_subcommand is None:
        ctx.invoke(sap_status)


def get_disabled_sap_group() -> click.Group:
    """Stand-in group registered when SAP_ENABLED is false."""

    @click.group(name="sap", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("SAP commands are unavailable because SAP_ENABLED=false.")

    return disabled_group


def _format_result(result: JobResult) -> str:
    lines = [f"{result.job}: {result.status.value}"]
    if result.message:
        lines.append(f"  message : {result.message}")
    if result.source:
        lines.append(f"  source  : {result.source}")
    if result.run_id is not None:
        lines.append(f"  run     : {result.run_id}")
    for name in result.files:
        lines.append(f"  file    : {name}")
    for key, value in sorted(result.counts.items()):
        lines.append(f"  {key:<12}: {value}")
    for error in result.errors:
        lines.append(f"  error   : {error}")
    return "\n".join(lines)


def _emit(ctx: click.Context, result: JobResult, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, sort_keys=True, default=str))
    else:
        click.echo(_format_result(result))
    if not result.success:
        ctx.exit(1)


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException("SAP Celery app is unavailable. Ensure SAP_ENABLED=true.")
    return celery_app


def _lock_manager(app) -> LockManager:
    settings = get_sap_settings(app)
    return LockManager(settings.lock_path, stale_after=timedelta(minutes=settings.lock_stale_after_minutes))


def _enqueue(app, task_name: str, **kwargs) -> None:
    async_result = _resolve_celery(app).send_task(task_name, kwargs=kwargs)
    app.logger.info(
        "SAP task queued via CLI", extra={"sap_task": task_name, "sap_task_id": async_result.id}
    )
    click.echo(json.dumps({"task": task_name, "task_id": async_result.id, "status": "queued"}))


@sap_cli.command("status")
@click.option("--json", "as_json", is_flag=True, help="Emit JSON instead of text.")
@click.pass_context
def sap_status(ctx, as_json: bool = False):
    """Show enable flags, lock state and the latest run per import."""
    app = _load_app(ctx)
    with app.app_context():
        settings = get_sap_settings(app)
        locks = _lock_manager(app)
        payload = {
            "enabled": settings.enabled,
            "export_enabled": settings.export_enabled,
            "imports": {name: settings.entity(name).enabled for name in IMPORT_TYPES},
            "locks": {job: locks.status(lock).to_dict() for job, lock in LOCK_NAMES.items()},
            "latest_runs": SapRunService().latest_runs(),
        }
    if as_json:
        click.echo(json.dumps(payload, indent=2, sort_keys=True))
        return
    click.echo(f"SAP exchange enabled: {payload['enabled']}")
    click.echo(f"Export enabled      : {payload['export_enabled']}")
    for name, enabled in payload["imports"].items():
        latest = payload["latest_runs"].get(name)
        last = f"{latest['status']} at {latest['started_at']}" if latest else "never"
        click.echo(f"  {name:<7} enabled={enabled} last run: {last}")
    for job, lock in payload["locks"].items():
        state = "held" if lock["held"] else "free"
        if lock["stale"]:
            state += " (stale)"
        click.echo(f"  lock {job:<7}: {state}")


def _import_command(import_type: str):
    @click.option("--async", "run_async", is_flag=True, help="Queue the job on the SAP worker.")
    @click.option("--json", "as_json", is_flag=True, help="Emit the job result as JSON.")
    @click.pass_context
    def command(ctx, run_async: bool, as_json: bool):
        app = _load_app(ctx)
        if run_async:
            _enqueue(app, f"sap.import_{import_type}", trigger="cli")
            return
        with app.app_context():
            result = build_runner(app).run_import(import_type, trigger="cli")
        _emit(ctx, result, as_json)

    command.__doc__ = f"Import pending SAP {import_type} files."
    command.__name__ = f"import_{import_type}"
    return command


for _import_type in IMPORT_TYPES:
    sap_cli.command(f"import-{_import_type}")(_import_command(_import_type))


@sap_cli.command("export-readings")
@click.option(
    "--cutoff-date",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="Cut-off date to export (defaults to today in SAP_TIMEZONE).",
)
@click.option("--cutoff-day", type=click.IntRange(1, 31), help="Export sites with this cut-off day only.")
@click.option("--async", "run_async", is_flag=True, help="Queue the job on the SAP worker.")
@click.option("--json", "as_json", is_flag=True, help="Emit the job result as JSON.")
@click.pass_context
def sap_export_readings(
    ctx, cutoff_date: Optional[datetime], cutoff_day: Optional[int], run_async: bool, as_json: bool
):
    """Write meter reading files for the sites due on the cut-off date."""
    app = _load_app(ctx)
    target: Optional[date] = cutoff_date.date() if cutoff_date else None
    if run_async:
        _enqueue(
            app,
            "sap.export_readings",
            cutoff_date=target.isoformat() if target else None,
            cutoff_day=cutoff_day,
            trigger="cli",
        )
        return
    with app.app_context():
        result = build_runner(app).export_readings(cutoff_date=target, cutoff_day=cutoff_day, trigger="cli")
    _emit(ctx, result, as_json)


@sap_cli.command("archive-exports")
@click.option("--json", "as_json", is_flag=True, help="Emit the job result as JSON.")
@click.pass_context
def sap_archive_exports(ctx, as_json: bool):
    """Move export files into SAP_EXPORT_ARCHIVE_PATH."""
    app = _load_app(ctx)
    with app.app_context():
        result = build_runner(app).archive_exports()
    _emit(ctx, result, as_json)


@sap_cli.command("purge-logs")
@click.option("--days", type=click.IntRange(min=1), help="Retention in days (defaults to SAP_LOG_RETENTION_DAYS).")
@click.option("--json", "as_json", is_flag=True, help="Emit the job result as JSON.")
@click.pass_context
def sap_purge_logs(ctx, days: Optional[int], as_json: bool):
    """Delete SAP run, file and export logs past the retention window."""
    app = _load_app(ctx)
    with app.app_context():
        result = build_runner(app).purge_logs(retention_days=days)
    _emit(ctx, result, as_json)


@sap_cli.command("daily-summary")
@click.option("--day", type=click.DateTime(formats=["%Y-%m-%d"]), help="Day to summarize (defaults to yesterday).")
@click.pass_context
def sap_daily_summary(ctx, day: Optional[datetime]):
    """Print the daily digest and e-mail it when SAP_DAILY_SUMMARY is on."""
    app = _load_app(ctx)
    with app.app_context():
        result = build_runner(app).daily_summary(day=day.date() if day else None)
    click.echo(json.dumps(result.details, indent=2, sort_keys=True, default=str))


@sap_cli.command("locks")
@click.pass_context
def sap_locks(ctx):
    """List the job lock files and whether they are held or stale."""
    app = _load_app(ctx)
    locks = _lock_manager(app)
    for job, lock_name in LOCK_NAMES.items():
        status = locks.status(lock_name)
        if not status.held:
            click.echo(f"{job:<7} free")
            continue
        holder = status.holder or {}
        age = f"{status.age_seconds:.0f}s" if status.age_seconds is not None else "unknown age"
        stale = " stale" if status.stale else ""
        click.echo(f"{job:<7} held{stale} by pid {holder.get('pid', '?')} on {holder.get('host', '?')} ({age})")


@sap_cli.command("release-lock")
@click.argument("job", type=click.Choice(sorted(LOCK_NAMES)))
@click.option("--force", is_flag=True, help="Release even when the lock is not stale.")
@click.pass_context
def sap_release_lock(ctx, job: str, force: bool):
    """Remove a lock file left behind by a crashed run."""
    app = _load_app(ctx)
    locks = _lock_manager(app)
    lock_name = LOCK_NAMES[job]
    status = locks.status(lock_name)
    if not status.held:
        click.echo(f"Lock for {job} is not held.")
        return
    if not status.stale and not force:
        raise click.ClickException(f"Lock for {job} is still fresh; pass --force to release it anyway.")
    locks.force_release(lock_name)
    app.logger.warning("SAP lock released via CLI", extra={"sap_job": job, "sap_lock_forced": force})
    click.echo(f"Released lock for {job}.")


@sap_cli.command("runs")
@click.option("--job", "jobs", multiple=True, type=click.Choice(IMPORT_TYPES), help="Filter by import type.")
@click.option("--status", "statuses", multiple=True, help="Filter by run status.")
@click.option("--limit", default=20, show_default=True, type=click.IntRange(1, 100))
@click.pass_context
def sap_runs(ctx, jobs: tuple[str, ...], statuses: tuple[str, ...], limit: int):
    """List recent import runs."""
    app = _load_app(ctx)
    try:
        filters = RunFilters.coerce(page_size=limit, jobs=jobs, statuses=statuses)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    with app.app_context():
        listing = SapRunService().list_runs(filters)
    if not listing.items:
        click.echo("No SAP import runs recorded.")
        return
    for run in listing.items:
        counts = ", ".join(f"{key}={value}" for key, value in sorted(run["counts"].items()))
        click.echo(f"#{run['id']} {run['job']:<7} {run['status']:<16} {run['started_at']} {counts}")


@sap_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the SAP background worker and scheduler."""
    app = _load_app(ctx)
    if not app.config.get("SAP_WORKER_ENABLED"):
        click.echo(
            "Warning: SAP_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--beat", "with_beat", is_flag=True, help="Embed the beat scheduler in the worker.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], with_beat: bool):
    """Start the Celery worker in the current process."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    app.extensions.get("sap", {})["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", DEFAULT_QUEUE_NAME]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])
    if with_beat:
        argv.append("--beat")

    click.echo(f"Starting SAP worker (queue: {DEFAULT_QUEUE_NAME}, loglevel: {loglevel})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("beat")
@click.option("--loglevel", default="info", show_default=True)
@click.pass_context
def worker_beat(ctx, loglevel: str):
    """Start the beat scheduler that triggers the periodic SAP jobs."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    for name, entry in sorted(celery_app.conf.beat_schedule.items()):
        click.echo(f"  {name}: {entry['task']} ({entry['schedule']})")
    try:
        celery_app.start(argv=["beat", "--loglevel", loglevel])
    except KeyboardInterrupt:
        click.echo("Scheduler shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Validate worker connectivity by executing the heartbeat task."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("sap.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'sap.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    click.echo(json.dumps(payload))
