# amr_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .gateway import Gateway
from .meter import (
    METER_ROLE_CLIENT,
    METER_ROLE_SPARE,
    METER_STATUS_ACTIVE,
    METER_STATUS_INACTIVE,
    UNASSIGNED_SITE_CODE,
    Meter,
    MeterReading,
)
from .sap_log import FinalizedRunError, SapExportLog, SapFileStatus, SapImportLog, SapImportRun, SapRunStatus
from .site import Site
from .user import User

__all__ = [
    "db",
    "BaseModel",
    "User",
    "Site",
    "Gateway",
    "Meter",
    "MeterReading",
    "METER_STATUS_ACTIVE",
    "METER_STATUS_INACTIVE",
    "METER_ROLE_CLIENT",
    "METER_ROLE_SPARE",
    "UNASSIGNED_SITE_CODE",
    # SAP audit logs
    "SapImportRun",
    "SapImportLog",
    "SapExportLog",
    "SapRunStatus",
    "SapFileStatus",
    "FinalizedRunError",
]
