# config.py
import json
import os
from datetime import timedelta


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_list(value, *, lower=False):
    """
    Parse a comma-separated list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized items.
    """
    if not value:
        return ()

    seen = set()
    items = []
    for raw_item in value.split(","):
        item = raw_item.strip()
        if lower:
            item = item.lower()
        if not item or item in seen:
            continue
        seen.add(item)
        items.append(item)
    return tuple(items)


def _parse_int(value, default, *, minimum=None):
    try:
        number = int(value) if value is not None else default
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        return default
    return number


def _parse_float(value, default):
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


def _parse_json_mapping(value):
    """Parse an optional JSON object (vocabulary overrides, webhook headers)."""
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return {str(key): str(item) for key, item in parsed.items()}


class Config:
    # SECRET_KEY must be set via environment variable for security
    # Generate with: python -c "import secrets; print(secrets.token_hex(32))"
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    # For development, use a default but it's not secure
    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "This is insecure and should not be used in production.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # SAP exchange configuration
    SAP_ENABLED = _coerce_bool(os.environ.get("SAP_ENABLED"), default=False)
    SAP_BASE_PATH = os.environ.get("SAP_BASE_PATH", "/AMR")
    SAP_CHECK_SEP_FIRST = _coerce_bool(os.environ.get("SAP_CHECK_SEP_FIRST"), default=True)
    SAP_LOCK_PATH = os.environ.get("SAP_LOCK_PATH", "sap/locks")
    SAP_LOCK_STALE_AFTER_MINUTES = _parse_int(
        os.environ.get("SAP_LOCK_STALE_AFTER_MINUTES"), 60, minimum=1
    )
    SAP_FILE_PATTERNS = _parse_list(os.environ.get("SAP_FILE_PATTERNS", "*.csv,*.txt"), lower=True) or (
        "*.csv",
        "*.txt",
    )

    SAP_METERS_ENABLED = _coerce_bool(os.environ.get("SAP_METERS_ENABLED"), default=True)
    SAP_METERS_PATH = os.environ.get("SAP_METERS_PATH", "DOWNLOAD/METER_LIST")
    SAP_METERS_SEP_PATH = os.environ.get("SAP_METERS_SEP_PATH", "SEP_DOWNLOAD/METER_LIST")
    SAP_METERS_ARCHIVE_PATH = os.environ.get("SAP_METERS_ARCHIVE_PATH", "DOWNLOAD/METER_LIST_OLD")
    SAP_SITES_ENABLED = _coerce_bool(os.environ.get("SAP_SITES_ENABLED"), default=True)
    SAP_SITES_PATH = os.environ.get("SAP_SITES_PATH", "DOWNLOAD/SITE_LIST")
    SAP_SITES_SEP_PATH = os.environ.get("SAP_SITES_SEP_PATH", "SEP_DOWNLOAD/SITE_LIST")
    SAP_SITES_ARCHIVE_PATH = os.environ.get("SAP_SITES_ARCHIVE_PATH", "DOWNLOAD/SITE_LIST_OLD")
    SAP_USERS_ENABLED = _coerce_bool(os.environ.get("SAP_USERS_ENABLED"), default=True)
    SAP_USERS_PATH = os.environ.get("SAP_USERS_PATH", "DOWNLOAD/USER_LIST")
    SAP_USERS_SEP_PATH = os.environ.get("SAP_USERS_SEP_PATH", "SEP_DOWNLOAD/USER_LIST")
    SAP_USERS_ARCHIVE_PATH = os.environ.get("SAP_USERS_ARCHIVE_PATH", "DOWNLOAD/USER_LIST_OLD")

    SAP_CLEANUP_UNASSIGNED_INACTIVE = _coerce_bool(
        os.environ.get("SAP_CLEANUP_UNASSIGNED_INACTIVE"), default=True
    )
    SAP_METERS_DEACTIVATE_ABSENT = _coerce_bool(os.environ.get("SAP_METERS_DEACTIVATE_ABSENT"), default=True)
    SAP_USERS_DEACTIVATE_ABSENT = _coerce_bool(os.environ.get("SAP_USERS_DEACTIVATE_ABSENT"), default=False)
    SAP_USER_EMAIL_DOMAIN = os.environ.get("SAP_USER_EMAIL_DOMAIN", "example.com")
    SAP_DEFAULT_USER_PASSWORD = os.environ.get("SAP_DEFAULT_USER_PASSWORD", "123")

    # Vocabulary overrides (JSON objects); None keeps the built-in tables
    SAP_USER_ROLE_MAP = _parse_json_mapping(os.environ.get("SAP_USER_ROLE_MAP"))
    SAP_METER_ROLE_MAP = _parse_json_mapping(os.environ.get("SAP_METER_ROLE_MAP"))
    SAP_METER_STATUS_MAP = _parse_json_mapping(os.environ.get("SAP_METER_STATUS_MAP"))

    SAP_EXPORT_ENABLED = _coerce_bool(os.environ.get("SAP_EXPORT_ENABLED"), default=True)
    SAP_EXPORT_PATH = os.environ.get("SAP_EXPORT_PATH", "UPLOAD")
    SAP_EXPORT_ARCHIVE_PATH = os.environ.get("SAP_EXPORT_ARCHIVE_PATH", "UPLOAD/ARCHIVE")
    SAP_EXPORT_FILENAME_FORMAT = os.environ.get(
        "SAP_EXPORT_FILENAME_FORMAT", "{business_entity}_{company}_{day}_{month}_{year}.csv"
    )
    SAP_CSV_DELIMITER = os.environ.get("SAP_CSV_DELIMITER", ",")
    SAP_CSV_ENCLOSURE = os.environ.get("SAP_CSV_ENCLOSURE", "")
    SAP_CSV_ESCAPE = os.environ.get("SAP_CSV_ESCAPE", "\\")
    SAP_EXPORT_CUTOFF_TIME = os.environ.get("SAP_EXPORT_CUTOFF_TIME", "00:14:59")
    SAP_EXPORT_SCHEDULE = os.environ.get("SAP_EXPORT_SCHEDULE", "00:15")
    SAP_EXPORT_MAX_OFFLINE_DAYS = _parse_int(os.environ.get("SAP_EXPORT_MAX_OFFLINE_DAYS"), 4, minimum=0)
    SAP_EXPORT_MIN_READING_VALUE = _parse_float(os.environ.get("SAP_EXPORT_MIN_READING_VALUE"), 1.0)
    SAP_EXPORT_REQUIRE_MIN_READING = _coerce_bool(os.environ.get("SAP_EXPORT_REQUIRE_MIN_READING"), default=True)
    SAP_EXPORT_REQUIRE_ONLINE = _coerce_bool(os.environ.get("SAP_EXPORT_REQUIRE_ONLINE"), default=True)
    SAP_EXPORT_REQUIRE_ACTIVE_STATUS = _coerce_bool(
        os.environ.get("SAP_EXPORT_REQUIRE_ACTIVE_STATUS"), default=True
    )
    SAP_EXPORT_REQUIRE_CLIENT_ROLE = _coerce_bool(os.environ.get("SAP_EXPORT_REQUIRE_CLIENT_ROLE"), default=True)
    SAP_EXPORT_REQUIRE_CUSTOMER_NAME = _coerce_bool(
        os.environ.get("SAP_EXPORT_REQUIRE_CUSTOMER_NAME"), default=True
    )
    SAP_EXPORT_REQUIRE_CONTRACT_NUMBER = _coerce_bool(
        os.environ.get("SAP_EXPORT_REQUIRE_CONTRACT_NUMBER"), default=True
    )
    SAP_EXPORT_REQUIRE_MEASURING_POINT = _coerce_bool(
        os.environ.get("SAP_EXPORT_REQUIRE_MEASURING_POINT"), default=True
    )
    SAP_EXPORT_REQUIRE_VALID_RO = _coerce_bool(os.environ.get("SAP_EXPORT_REQUIRE_VALID_RO"), default=True)

    SAP_LOG_TO_DATABASE = _coerce_bool(os.environ.get("SAP_LOG_TO_DATABASE"), default=True)
    SAP_LOG_TO_FILE = _coerce_bool(os.environ.get("SAP_LOG_TO_FILE"), default=True)
    SAP_LOG_LEVEL = os.environ.get("SAP_LOG_LEVEL", "INFO").upper()
    SAP_LOG_RETENTION_DAYS = _parse_int(os.environ.get("SAP_LOG_RETENTION_DAYS"), 90, minimum=1)
    SAP_NOTIFY_ON_ERROR = _coerce_bool(os.environ.get("SAP_NOTIFY_ON_ERROR"), default=True)
    SAP_NOTIFICATION_EMAILS = _parse_list(os.environ.get("SAP_NOTIFICATION_EMAILS", ""), lower=True)
    SAP_DAILY_SUMMARY = _coerce_bool(os.environ.get("SAP_DAILY_SUMMARY"), default=False)
    SAP_DAILY_SUMMARY_HOUR = _parse_int(os.environ.get("SAP_DAILY_SUMMARY_HOUR"), 7, minimum=0)
    SAP_TIMEZONE = os.environ.get("SAP_TIMEZONE", "Asia/Manila")

    # Worker configuration
    SAP_WORKER_ENABLED = _coerce_bool(os.environ.get("SAP_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")

    # Runs API paging
    SAP_RUNS_PAGE_SIZE_DEFAULT = _parse_int(os.environ.get("SAP_RUNS_PAGE_SIZE_DEFAULT"), 25, minimum=5)

    # Session configuration
    PERMANENT_SESSION_LIFETIME = timedelta(days=7)
    SESSION_COOKIE_SECURE = False  # Set to True in production with HTTPS
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"


class DevelopmentConfig(Config):
    DEBUG = True
    # Use instance folder for database to avoid conflicts
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI format: sqlite:///absolute/path (3 slashes for absolute path)
    db_path_normalized = os.path.join(instance_path, "amr_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"  # In-memory database for testing
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    SAP_NOTIFY_ON_ERROR = False
    SAP_LOG_TO_FILE = False


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
    SESSION_COOKIE_SECURE = True  # Secure cookies in production
