# amr_app/utils/logging_config.py

"""
Application logging setup.

Console and rotating-file handlers are attached to the Flask app logger and
to the ``amr_app`` package logger so background jobs (CLI, Celery) log the
same way as requests. ``LOG_FORMAT=json`` switches to python-json-logger.
SAP jobs additionally get a dedicated ``sap.log`` when ``SAP_LOG_TO_FILE``
is enabled.
"""

import logging
import os
from logging.handlers import RotatingFileHandler

from pythonjsonlogger import jsonlogger

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
SAP_LOGGER_NAME = "amr_app.sap"

_HANDLER_MARKER = "_amr_handler"


class AppJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter stamping the application name and version on every record."""

    def __init__(self, *args, app_name=None, app_version=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.app_name = app_name
        self.app_version = app_version

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        if self.app_name:
            log_record["service"] = self.app_name
        if self.app_version:
            log_record["version"] = self.app_version


def _build_formatter(app):
    if str(app.config.get("LOG_FORMAT", "text")).lower() == "json":
        return AppJsonFormatter(
            JSON_FORMAT,
            app_name=app.config.get("APP_NAME"),
            app_version=app.config.get("APP_VERSION"),
        )
    return logging.Formatter(TEXT_FORMAT)


def _resolve_log_dir(app):
    log_dir = app.config.get("LOG_DIR", "logs")
    if not os.path.isabs(log_dir):
        log_dir = os.path.join(app.root_path, log_dir)
    os.makedirs(log_dir, exist_ok=True)
    return log_dir


def _remove_managed_handlers(logger):
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()


def _mark(handler):
    setattr(handler, _HANDLER_MARKER, True)
    return handler


def setup_logging(app):
    """
    Configure handlers for the Flask app logger and the ``amr_app`` logger.

    Safe to call repeatedly (tests re-run it after changing LOG_LEVEL); handlers
    installed by a previous call are replaced.
    """
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    formatter = _build_formatter(app)
    package_logger = logging.getLogger("amr_app")

    for logger in (app.logger, package_logger):
        _remove_managed_handlers(logger)
        logger.setLevel(level)

    handlers = []
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console = _mark(logging.StreamHandler())
        console.setFormatter(formatter)
        handlers.append(console)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        try:
            log_dir = _resolve_log_dir(app)
            file_handler = _mark(
                RotatingFileHandler(
                    os.path.join(log_dir, "app.log"),
                    maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
                    backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
                )
            )
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as exc:
            app.logger.warning("File logging disabled; could not open log directory: %s", exc)

    for handler in handlers:
        handler.setLevel(level)
        app.logger.addHandler(handler)
        package_logger.addHandler(handler)
    package_logger.propagate = not handlers

    _setup_sap_logging(app, formatter)
    app.logger.debug("Logging configured (level=%s, handlers=%d)", logging.getLevelName(level), len(handlers))


def _setup_sap_logging(app, formatter):
    sap_logger = logging.getLogger(SAP_LOGGER_NAME)
    _remove_managed_handlers(sap_logger)
    sap_level = getattr(logging, str(app.config.get("SAP_LOG_LEVEL", "INFO")).upper(), logging.INFO)
    sap_logger.setLevel(sap_level)

    if not app.config.get("SAP_LOG_TO_FILE", False):
        return
    try:
        log_dir = _resolve_log_dir(app)
    except OSError as exc:
        app.logger.warning("SAP file logging disabled; could not open log directory: %s", exc)
        return
    handler = _mark(
        RotatingFileHandler(
            os.path.join(log_dir, "sap.log"),
            maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
            backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
        )
    )
    handler.setFormatter(formatter)
    handler.setLevel(sap_level)
    sap_logger.addHandler(handler)
