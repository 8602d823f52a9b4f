"""Access to the SAP extension state stored on the Flask app."""

from __future__ import annotations

from typing import Any

from flask import Flask

from config.sap import SapSettings, load_sap_settings

SAP_EXTENSION_KEY = "sap"


def ensure_extension_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(
        SAP_EXTENSION_KEY,
        {
            "enabled": False,
            "settings": None,
            "worker_enabled": False,
            "celery_app": None,
        },
    )


def get_sap_settings(app: Flask) -> SapSettings:
    """Return the frozen settings, building them from ``app.config`` on first use."""
    state = ensure_extension_state(app)
    settings = state.get("settings")
    if settings is None:
        settings = load_sap_settings(app.config, instance_path=app.instance_path)
        state["settings"] = settings
    return settings


def is_sap_enabled(app: Flask) -> bool:
    return bool(app.config.get("SAP_ENABLED", False))
