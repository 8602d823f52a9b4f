"""
Record reconcilers for the SAP master-data feeds.
"""

from .base import Reconciler, ReconcileSummary, parse_sap_date
from .meters import MeterReconciler
from .sites import SiteReconciler
from .users import UserReconciler, derive_email

__all__ = [
    "Reconciler",
    "ReconcileSummary",
    "MeterReconciler",
    "SiteReconciler",
    "UserReconciler",
    "derive_email",
    "parse_sap_date",
]
