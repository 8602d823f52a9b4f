"""
SAP blueprint: health plus read-only JSON views over the audit tables.
"""

from __future__ import annotations

import time
from datetime import date
from http import HTTPStatus

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user
from sqlalchemy.exc import NoResultFound

from config.sap import LOCK_NAMES

from .celery_app import DEFAULT_QUEUE_NAME
from .locks import LockManager
from .run_service import RunFilters, SapRunService
from .state import SAP_EXTENSION_KEY, get_sap_settings, is_sap_enabled

sap_blueprint = Blueprint("sap", __name__, url_prefix="/sap")

_run_service = SapRunService()


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _ensure_enabled_api():
    if not is_sap_enabled(current_app):
        return _json_error("SAP exchange is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _ensure_admin_api():
    if not current_user.is_authenticated:
        return _json_error("Authentication required.", HTTPStatus.UNAUTHORIZED)
    if not getattr(current_user, "is_admin", False):
        return _json_error("Administrator access required.", HTTPStatus.FORBIDDEN)
    return None


def _split_csv(value: str | None):
    if not value:
        return ()
    return tuple(token.strip() for token in value.split(",") if token.strip())


@sap_blueprint.get("/health")
def sap_healthcheck():
    """Enable flags and lock state; no authentication so health checks can reach it."""
    state = current_app.extensions.get(SAP_EXTENSION_KEY, {})
    settings = get_sap_settings(current_app)
    locks = LockManager(settings.lock_path)
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": state.get("enabled", False),
                "worker_enabled": state.get("worker_enabled", False),
                "queue": DEFAULT_QUEUE_NAME,
                "imports": {name: entity.enabled for name, entity in settings.entities.items()},
                "export_enabled": settings.export_enabled,
                "locks": {job: locks.status(lock_name).held for job, lock_name in LOCK_NAMES.items()},
            }
        ),
        HTTPStatus.OK,
    )


@sap_blueprint.get("/runs")
def sap_runs_list():
    for guard in (_ensure_enabled_api, _ensure_admin_api):
        response = guard()
        if response:
            return response

    raw = request.args
    try:
        filters = RunFilters.coerce(
            page=raw.get("page"),
            page_size=raw.get("per_page") or raw.get("page_size"),
            sort=raw.get("sort"),
            jobs=_split_csv(raw.get("job")),
            statuses=_split_csv(raw.get("status")),
            started_from=raw.get("started_from"),
            started_to=raw.get("started_to"),
            default_page_size=current_app.config.get("SAP_RUNS_PAGE_SIZE_DEFAULT", 25),
        )
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    result = _run_service.list_runs(filters)
    payload = result.to_dict()
    payload["runs"] = payload.pop("items")
    payload["filters"] = {
        "page": filters.page,
        "page_size": filters.page_size,
        "sort": filters.sort,
        "jobs": list(filters.jobs),
        "statuses": [status.value for status in filters.statuses],
        "started_from": filters.started_from.isoformat() if filters.started_from else None,
        "started_to": filters.started_to.isoformat() if filters.started_to else None,
    }
    current_app.logger.info(
        "SAP runs list retrieved",
        extra={
            "sap_run_count": len(payload["runs"]),
            "sap_total_runs": result.total,
            "sap_response_time_ms": round((time.perf_counter() - start_time) * 1000, 2),
            "user_id": current_user.id,
        },
    )
    return jsonify(payload), HTTPStatus.OK


@sap_blueprint.get("/runs/<int:run_id>")
def sap_run_detail(run_id: int):
    for guard in (_ensure_enabled_api, _ensure_admin_api):
        response = guard()
        if response:
            return response
    try:
        payload = _run_service.get_run_detail(run_id)
    except NoResultFound:
        return _json_error(f"SAP import run {run_id} not found.", HTTPStatus.NOT_FOUND)
    return jsonify(payload), HTTPStatus.OK


@sap_blueprint.get("/exports")
def sap_exports_list():
    for guard in (_ensure_enabled_api, _ensure_admin_api):
        response = guard()
        if response:
            return response

    cut_off_date = None
    if request.args.get("cut_off_date"):
        try:
            cut_off_date = date.fromisoformat(request.args["cut_off_date"])
        except ValueError:
            return _json_error("cut_off_date must be YYYY-MM-DD.", HTTPStatus.BAD_REQUEST)
    try:
        limit = int(request.args.get("limit", 50))
    except ValueError:
        return _json_error("limit must be an integer.", HTTPStatus.BAD_REQUEST)

    exports = _run_service.list_exports(cut_off_date=cut_off_date, limit=limit)
    return jsonify({"exports": exports, "count": len(exports)}), HTTPStatus.OK
