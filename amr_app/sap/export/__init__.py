"""
Meter reading export to SAP billing files.
"""

from .candidates import (
    ExportCandidate,
    ExportGroup,
    cutoff_timestamp,
    group_sites,
    load_candidates,
    sites_due,
    target_cutoff_days,
)
from .validation import ExportRule, ExportValidator, ValidationRuleFailure
from .writer import ExportWriter, format_reading

__all__ = [
    "ExportCandidate",
    "ExportGroup",
    "ExportRule",
    "ExportValidator",
    "ExportWriter",
    "ValidationRuleFailure",
    "cutoff_timestamp",
    "format_reading",
    "group_sites",
    "load_candidates",
    "sites_due",
    "target_cutoff_days",
]
