"""
Immutable SAP exchange settings.

``config/base.py`` reads the ``SAP_*`` environment variables into the Flask
config; :func:`load_sap_settings` freezes them into a single
:class:`SapSettings` value at startup. Job code receives that value through
its constructor and never reads ``current_app.config`` directly.

Relative directory settings resolve against ``SAP_BASE_PATH`` (import and
export trees) or the Flask instance folder (lock directory).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import time
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

IMPORT_TYPES: tuple[str, ...] = ("meters", "sites", "users")

DEFAULT_USER_ROLES: Mapping[str, str] = MappingProxyType(
    {
        "Z>PH-BLDG-ADMIN-SUPERVISOR": "building_admin",
        "Z>PH-BLDG-ADMIN-MANAGER": "building_admin",
        "Z>PH-BLDG-ADMIN-OFFICER": "building_admin",
        "Z>PH-ML-BLDG-ADMIN-SUPERVISOR": "building_admin",
        "Z>PH-ML-BLDG-ADMIN-MANAGER": "building_admin",
        "Z>PH-ML-BLDG-ADMIN-OFFICER": "building_admin",
    }
)

DEFAULT_METER_ROLES: Mapping[str, str] = MappingProxyType(
    {
        "client": "Client Meter",
        "spare": "Spare Meter",
        "main": "Main",
        "sub": "Sub",
        "check": "Check",
    }
)

DEFAULT_METER_STATUSES: Mapping[str, str] = MappingProxyType(
    {
        "ACTIVE": "Active",
        "INACTIVE": "Inactive",
    }
)


@dataclass(frozen=True)
class EntitySettings:
    """Directory layout and enable flag for one import type."""

    name: str
    enabled: bool
    path: Path
    sep_path: Path
    archive_path: Path
    lock_name: str


@dataclass(frozen=True)
class CsvDialectSettings:
    delimiter: str = ","
    enclosure: str = ""
    escape: str = "\\"


@dataclass(frozen=True)
class ExportRuleSettings:
    """Enable flags and thresholds for the export eligibility rules."""

    require_min_reading: bool = True
    min_reading_value: float = 1.0
    require_online: bool = True
    max_offline_days: int = 4
    require_active_status: bool = True
    require_client_role: bool = True
    require_customer_name: bool = True
    require_contract_number: bool = True
    require_measuring_point: bool = True
    require_valid_ro: bool = True


@dataclass(frozen=True)
class SapSettings:
    enabled: bool
    base_path: Path
    check_sep_first: bool
    lock_path: Path
    lock_stale_after_minutes: int
    file_patterns: tuple[str, ...]
    entities: Mapping[str, EntitySettings]
    cleanup_unassigned_inactive: bool
    meters_deactivate_absent: bool
    users_deactivate_absent: bool
    user_email_domain: str
    default_user_password: str
    user_roles: Mapping[str, str]
    meter_roles: Mapping[str, str]
    meter_statuses: Mapping[str, str]
    export_enabled: bool
    export_path: Path
    export_archive_path: Path
    export_filename_format: str
    export_cutoff_time: time
    export_schedule: time
    export_rules: ExportRuleSettings
    csv: CsvDialectSettings
    log_to_database: bool = True
    log_to_file: bool = True
    log_level: str = "INFO"
    log_retention_days: int = 90
    notify_on_error: bool = True
    notification_emails: tuple[str, ...] = ()
    daily_summary: bool = False
    daily_summary_hour: int = 7
    timezone: str = "Asia/Manila"

    def entity(self, import_type: str) -> EntitySettings:
        try:
            return self.entities[import_type]
        except KeyError as exc:
            raise ValueError(f"Unknown SAP import type '{import_type}'.") from exc


def parse_clock_time(value: str | time, *, setting: str) -> time:
    """Parse ``HH:MM`` or ``HH:MM:SS`` strings."""
    if isinstance(value, time):
        return value
    parts = str(value).strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"{setting} must look like HH:MM or HH:MM:SS, got '{value}'.")
    try:
        numbers = [int(part) for part in parts]
        return time(*numbers)
    except ValueError as exc:
        raise ValueError(f"{setting} must look like HH:MM or HH:MM:SS, got '{value}'.") from exc


def _resolve(base: Path, value: str | Path) -> Path:
    candidate = Path(value)
    if candidate.is_absolute():
        return candidate
    return base / candidate


def _entity(config: Mapping[str, Any], base: Path, import_type: str, lock_name: str) -> EntitySettings:
    prefix = f"SAP_{import_type.upper()}"
    return EntitySettings(
        name=import_type,
        enabled=bool(config.get(f"{prefix}_ENABLED", True)),
        path=_resolve(base, config.get(f"{prefix}_PATH", "")),
        sep_path=_resolve(base, config.get(f"{prefix}_SEP_PATH", "")),
        archive_path=_resolve(base, config.get(f"{prefix}_ARCHIVE_PATH", "")),
        lock_name=lock_name,
    )


LOCK_NAMES: Mapping[str, str] = MappingProxyType(
    {
        "meters": "importmetermaster",
        "sites": "importsitelist",
        "users": "importuserlist",
        "export": "exportmeterreadings",
    }
)


def load_sap_settings(config: Mapping[str, Any], *, instance_path: str | Path = "instance") -> SapSettings:
    """
    Build :class:`SapSettings` from a Flask config mapping.

    Raises:
        ValueError: when a time setting cannot be parsed.
    """
    base = Path(config.get("SAP_BASE_PATH", "/AMR"))
    rules = ExportRuleSettings(
        require_min_reading=bool(config.get("SAP_EXPORT_REQUIRE_MIN_READING", True)),
        min_reading_value=float(config.get("SAP_EXPORT_MIN_READING_VALUE", 1.0)),
        require_online=bool(config.get("SAP_EXPORT_REQUIRE_ONLINE", True)),
        max_offline_days=int(config.get("SAP_EXPORT_MAX_OFFLINE_DAYS", 4)),
        require_active_status=bool(config.get("SAP_EXPORT_REQUIRE_ACTIVE_STATUS", True)),
        require_client_role=bool(config.get("SAP_EXPORT_REQUIRE_CLIENT_ROLE", True)),
        require_customer_name=bool(config.get("SAP_EXPORT_REQUIRE_CUSTOMER_NAME", True)),
        require_contract_number=bool(config.get("SAP_EXPORT_REQUIRE_CONTRACT_NUMBER", True)),
        require_measuring_point=bool(config.get("SAP_EXPORT_REQUIRE_MEASURING_POINT", True)),
        require_valid_ro=bool(config.get("SAP_EXPORT_REQUIRE_VALID_RO", True)),
    )
    entities = {
        import_type: _entity(config, base, import_type, LOCK_NAMES[import_type]) for import_type in IMPORT_TYPES
    }
    patterns = tuple(pattern.lower() for pattern in config.get("SAP_FILE_PATTERNS", ("*.csv", "*.txt")))

    return SapSettings(
        enabled=bool(config.get("SAP_ENABLED", False)),
        base_path=base,
        check_sep_first=bool(config.get("SAP_CHECK_SEP_FIRST", True)),
        lock_path=_resolve(Path(instance_path), config.get("SAP_LOCK_PATH", "sap/locks")),
        lock_stale_after_minutes=int(config.get("SAP_LOCK_STALE_AFTER_MINUTES", 60)),
        file_patterns=patterns or ("*.csv", "*.txt"),
        entities=MappingProxyType(entities),
        cleanup_unassigned_inactive=bool(config.get("SAP_CLEANUP_UNASSIGNED_INACTIVE", True)),
        meters_deactivate_absent=bool(config.get("SAP_METERS_DEACTIVATE_ABSENT", True)),
        users_deactivate_absent=bool(config.get("SAP_USERS_DEACTIVATE_ABSENT", False)),
        user_email_domain=str(config.get("SAP_USER_EMAIL_DOMAIN", "example.com")),
        default_user_password=str(config.get("SAP_DEFAULT_USER_PASSWORD", "123")),
        user_roles=MappingProxyType(dict(config.get("SAP_USER_ROLE_MAP") or DEFAULT_USER_ROLES)),
        meter_roles=MappingProxyType(dict(config.get("SAP_METER_ROLE_MAP") or DEFAULT_METER_ROLES)),
        meter_statuses=MappingProxyType(dict(config.get("SAP_METER_STATUS_MAP") or DEFAULT_METER_STATUSES)),
        export_enabled=bool(config.get("SAP_EXPORT_ENABLED", True)),
        export_path=_resolve(base, config.get("SAP_EXPORT_PATH", "UPLOAD")),
        export_archive_path=_resolve(base, config.get("SAP_EXPORT_ARCHIVE_PATH", "UPLOAD/ARCHIVE")),
        export_filename_format=str(
            config.get("SAP_EXPORT_FILENAME_FORMAT", "{business_entity}_{company}_{day}_{month}_{year}.csv")
        ),
        export_cutoff_time=parse_clock_time(
            config.get("SAP_EXPORT_CUTOFF_TIME", "00:14:59"), setting="SAP_EXPORT_CUTOFF_TIME"
        ),
        export_schedule=parse_clock_time(config.get("SAP_EXPORT_SCHEDULE", "00:15"), setting="SAP_EXPORT_SCHEDULE"),
        export_rules=rules,
        csv=CsvDialectSettings(
            delimiter=str(config.get("SAP_CSV_DELIMITER", ",")),
            enclosure=str(config.get("SAP_CSV_ENCLOSURE", "")),
            escape=str(config.get("SAP_CSV_ESCAPE", "\\")),
        ),
        log_to_database=bool(config.get("SAP_LOG_TO_DATABASE", True)),
        log_to_file=bool(config.get("SAP_LOG_TO_FILE", True)),
        log_level=str(config.get("SAP_LOG_LEVEL", "INFO")).upper(),
        log_retention_days=int(config.get("SAP_LOG_RETENTION_DAYS", 90)),
        notify_on_error=bool(config.get("SAP_NOTIFY_ON_ERROR", True)),
        notification_emails=tuple(config.get("SAP_NOTIFICATION_EMAILS", ()) or ()),
        daily_summary=bool(config.get("SAP_DAILY_SUMMARY", False)),
        daily_summary_hour=int(config.get("SAP_DAILY_SUMMARY_HOUR", 7)),
        timezone=str(config.get("SAP_TIMEZONE", "Asia/Manila")),
    )
