"""
SAP master-data import and meter reading export.

``init_sap`` mounts the blueprint and CLI when ``SAP_ENABLED`` is set and
records the frozen settings in ``app.extensions['sap']``.
"""

from __future__ import annotations

from flask import Flask

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_sap_group, sap_cli
from .jobs import (
    SapJobRunner,
    archive_exports,
    export_readings,
    import_meters,
    import_sites,
    import_users,
    purge_sap_logs,
    send_daily_summary_job,
)
from .results import JobResult, JobStatus
from .run_service import RunFilters, SapRunService
from .state import SAP_EXTENSION_KEY, ensure_extension_state, get_sap_settings, is_sap_enabled
from .views import sap_blueprint

__all__ = [
    "init_sap",
    "SAP_EXTENSION_KEY",
    "SapJobRunner",
    "JobResult",
    "JobStatus",
    "RunFilters",
    "SapRunService",
    "get_celery_app",
    "get_sap_settings",
    "import_meters",
    "import_sites",
    "import_users",
    "export_readings",
    "archive_exports",
    "purge_sap_logs",
    "send_daily_summary_job",
]


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the real or the stand-in ``sap`` command group."""
    if sap_cli.name in app.cli.commands:
        app.cli.commands.pop(sap_cli.name)
    app.cli.add_command(sap_cli if enabled else get_disabled_sap_group())


def init_sap(app: Flask) -> None:
    """
    Freeze SAP settings, then mount the blueprint, CLI and Celery app when enabled.

    Raises:
        ValueError: a time setting such as ``SAP_EXPORT_CUTOFF_TIME`` is malformed.
    """
    enabled = is_sap_enabled(app)
    state = ensure_extension_state(app)
    state["settings"] = None
    state.update(
        {
            "enabled": enabled,
            "settings": get_sap_settings(app),
            "worker_enabled": bool(app.config.get("SAP_WORKER_ENABLED", False)),
        }
    )

    if not enabled:
        _set_cli(app, enabled=False)
        app.logger.info("SAP exchange disabled via SAP_ENABLED flag; skipping registration.")
        return

    ensure_celery_app(app, state)
    if sap_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(sap_blueprint)
    elif sap_blueprint.name not in app.blueprints:
        app.logger.warning("SAP blueprint registration skipped because the app has already handled its first request.")
    _set_cli(app, enabled=True)

    settings = state["settings"]
    app.logger.info(
        "SAP exchange enabled",
        extra={
            "sap_base_path": str(settings.base_path),
            "sap_imports": [name for name, entity in settings.entities.items() if entity.enabled],
            "sap_export_enabled": settings.export_enabled,
        },
    )
