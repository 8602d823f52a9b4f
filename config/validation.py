# config/validation.py

"""
Environment variable validation for the AMR admin application.
Validates required environment variables at startup.
"""

import os
import sys
from typing import List, Tuple

from .base import _coerce_bool
from .sap import parse_clock_time


def _validate_sap_environment(errors: List[str]) -> None:
    if not _coerce_bool(os.environ.get("SAP_ENABLED"), default=False):
        return

    base_path = os.environ.get("SAP_BASE_PATH")
    if not base_path:
        errors.append("SAP_BASE_PATH is required when SAP_ENABLED=true (e.g. /AMR).")
    elif not os.path.isabs(base_path):
        errors.append("SAP_BASE_PATH must be an absolute path.")

    password = os.environ.get("SAP_DEFAULT_USER_PASSWORD", "123")
    if password == "123":
        errors.append("SAP_DEFAULT_USER_PASSWORD must be changed from the built-in default in production.")

    for key, default in (("SAP_EXPORT_CUTOFF_TIME", "00:14:59"), ("SAP_EXPORT_SCHEDULE", "00:15")):
        try:
            parse_clock_time(os.environ.get(key, default), setting=key)
        except ValueError as exc:
            errors.append(str(exc))

    if _coerce_bool(os.environ.get("SAP_NOTIFY_ON_ERROR"), default=True):
        if not os.environ.get("SAP_NOTIFICATION_EMAILS"):
            errors.append("SAP_NOTIFICATION_EMAILS is required when SAP_NOTIFY_ON_ERROR=true")


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing)
                  If None, reads from FLASK_ENV environment variable

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    errors = []

    # Only validate in production
    if flask_env != "production":
        return True, []

    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key == "your-secret-key" or secret_key == "your_secret_key":
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        errors.append(
            "DATABASE_URL is required in production. "
            "Set it to your PostgreSQL connection string."
        )

    if os.environ.get("ERROR_ALERTING_ENABLED", "false").lower() == "true":
        if not os.environ.get("ADMIN_EMAILS", "").strip():
            errors.append("ADMIN_EMAILS is required when ERROR_ALERTING_ENABLED=true")

    if os.environ.get("ENABLE_EMAIL_ALERTS", "false").lower() == "true":
        if not os.environ.get("MAIL_SERVER"):
            errors.append("MAIL_SERVER is required when ENABLE_EMAIL_ALERTS=true")
        if not os.environ.get("MAIL_USERNAME"):
            errors.append("MAIL_USERNAME is required when ENABLE_EMAIL_ALERTS=true")
        if not os.environ.get("MAIL_PASSWORD"):
            errors.append("MAIL_PASSWORD is required when ENABLE_EMAIL_ALERTS=true")

    if os.environ.get("ENABLE_SLACK_ALERTS", "false").lower() == "true":
        if not os.environ.get("SLACK_WEBHOOK_URL"):
            errors.append("SLACK_WEBHOOK_URL is required when ENABLE_SLACK_ALERTS=true")

    if os.environ.get("ENABLE_WEBHOOK_ALERTS", "false").lower() == "true":
        if not os.environ.get("WEBHOOK_URL"):
            errors.append("WEBHOOK_URL is required when ENABLE_WEBHOOK_ALERTS=true")

    _validate_sap_environment(errors)

    is_valid = len(errors) == 0
    return is_valid, errors


def validate_and_exit(flask_env: str = None) -> None:
    """
    Validate environment variables and exit with error if validation fails.
    Intended to be called at application startup.

    Args:
        flask_env: Flask environment (development, production, testing)
    """
    is_valid, errors = validate_environment(flask_env)

    if not is_valid:
        print("=" * 80, file=sys.stderr)
        print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        print("\nThe following environment variables are missing or invalid:\n", file=sys.stderr)

        for i, error in enumerate(errors, 1):
            print(f"{i}. {error}", file=sys.stderr)

        print("\n" + "=" * 80, file=sys.stderr)
        print("Please check your .env file or environment variables.", file=sys.stderr)
        print("=" * 80, file=sys.stderr)

        sys.exit(1)
