# config/monitoring.py

import os

from .base import _coerce_bool, _parse_int, _parse_json_mapping, _parse_list


class MonitoringConfig:
    """Logging, metrics endpoint and error alert settings read by amr_app.utils"""

    MONITORING_ENABLED = _coerce_bool(os.environ.get("MONITORING_ENABLED"), default=False)
    METRICS_ENDPOINT = os.environ.get("METRICS_ENDPOINT", "/metrics")

    # Logging (amr_app.utils.logging_config)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # 'json' or 'text'
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = _parse_int(os.environ.get("LOG_FILE_MAX_BYTES"), 10 * 1024 * 1024, minimum=1024)
    LOG_FILE_BACKUP_COUNT = _parse_int(os.environ.get("LOG_FILE_BACKUP_COUNT"), 10, minimum=0)
    ENABLE_FILE_LOGGING = _coerce_bool(os.environ.get("ENABLE_FILE_LOGGING"), default=True)
    ENABLE_CONSOLE_LOGGING = _coerce_bool(os.environ.get("ENABLE_CONSOLE_LOGGING"), default=True)

    # Request error alerts (amr_app.utils.error_handler); SAP job mail reuses the SMTP settings
    ERROR_ALERTING_ENABLED = _coerce_bool(os.environ.get("ERROR_ALERTING_ENABLED"), default=False)
    ENABLE_EMAIL_ALERTS = _coerce_bool(os.environ.get("ENABLE_EMAIL_ALERTS"), default=False)
    ENABLE_SLACK_ALERTS = _coerce_bool(os.environ.get("ENABLE_SLACK_ALERTS"), default=False)
    ENABLE_WEBHOOK_ALERTS = _coerce_bool(os.environ.get("ENABLE_WEBHOOK_ALERTS"), default=False)
    ADMIN_EMAILS = list(_parse_list(os.environ.get("ADMIN_EMAILS")))

    MAIL_SERVER = os.environ.get("MAIL_SERVER")
    MAIL_PORT = _parse_int(os.environ.get("MAIL_PORT"), 587, minimum=1)
    MAIL_USE_TLS = _coerce_bool(os.environ.get("MAIL_USE_TLS"), default=True)
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_FROM = os.environ.get("MAIL_FROM", "noreply@example.com")

    SLACK_WEBHOOK_URL = os.environ.get("SLACK_WEBHOOK_URL")
    WEBHOOK_URL = os.environ.get("WEBHOOK_URL")
    WEBHOOK_HEADERS = _parse_json_mapping(os.environ.get("WEBHOOK_HEADERS"))

    # Alerts per key per hour
    EMAIL_ALERT_RATE_LIMIT = _parse_int(os.environ.get("EMAIL_ALERT_RATE_LIMIT"), 5, minimum=1)
    SLACK_ALERT_RATE_LIMIT = _parse_int(os.environ.get("SLACK_ALERT_RATE_LIMIT"), 10, minimum=1)
    WEBHOOK_ALERT_RATE_LIMIT = _parse_int(os.environ.get("WEBHOOK_ALERT_RATE_LIMIT"), 20, minimum=1)

    APP_NAME = os.environ.get("APP_NAME", "AMR Admin")
    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"
    ENABLE_EMAIL_ALERTS = False
    ENABLE_SLACK_ALERTS = False
    ENABLE_WEBHOOK_ALERTS = False


class ProductionMonitoringConfig(MonitoringConfig):
    LOG_FORMAT = "json"
    ENABLE_CONSOLE_LOGGING = False
    ENABLE_EMAIL_ALERTS = True
    EMAIL_ALERT_RATE_LIMIT = 3


class TestingMonitoringConfig(MonitoringConfig):
    """Keeps test runs quiet and offline"""

    MONITORING_ENABLED = False
    ERROR_ALERTING_ENABLED = False
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False
    ENABLE_EMAIL_ALERTS = False
    ENABLE_SLACK_ALERTS = False
    ENABLE_WEBHOOK_ALERTS = False
