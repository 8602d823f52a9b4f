"""
Shared reconciliation machinery.

A reconciler walks ``SapRow`` records for one file, creates records for new
natural keys, updates existing records only when a mapped field differs, and
collects per-row failures without aborting the batch. Committing is left to
the caller so a file is applied as one transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy.orm import Session

from ..errors import RowError
from ..mapping import MappingTables
from ..reader import SapRow

logger = logging.getLogger("amr_app.sap.reconcile")

NO_DATE_VALUES = frozenset({"", "00000000"})

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_sap_date(value: str | None) -> date | None:
    """Parse ``YYYYMMDD``; blank, ``00000000`` and unparseable values give None."""
    text = (value or "").strip()
    if text in NO_DATE_VALUES:
        return None
    try:
        return datetime.strptime(text, "%Y%m%d").date()
    except ValueError:
        logger.warning("Ignoring unparseable SAP date '%s'", text)
        return None


def parse_number(value: str | None) -> float | None:
    text = (value or "").strip().replace(",", "")
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def blank_to_none(value: str | None) -> str | None:
    text = (value or "").strip()
    return text or None


@dataclass
class ReconcileSummary:
    """Counters for one reconciled file."""

    total_rows: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    deactivated: int = 0
    row_errors: list[RowError] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.unchanged

    @property
    def error_count(self) -> int:
        return len(self.row_errors)

    def as_counts(self) -> dict[str, int]:
        return {
            "total_rows": self.total_rows,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "deactivated": self.deactivated,
            "row_errors": self.error_count,
        }


def apply_changes(record: Any, fields: Mapping[str, Any]) -> dict[str, tuple[Any, Any]]:
    """Assign differing values onto ``record`` and return ``{name: (old, new)}``."""
    changes: dict[str, tuple[Any, Any]] = {}
    for name, new_value in fields.items():
        old_value = getattr(record, name)
        if old_value != new_value:
            changes[name] = (old_value, new_value)
            setattr(record, name, new_value)
    return changes


class Reconciler:
    """Base class; subclasses implement :meth:`reconcile_row`."""

    entity: str = ""

    def __init__(self, session: Session, mappings: MappingTables, clock: Clock = utcnow) -> None:
        self.session = session
        self.mappings = mappings
        self.clock = clock

    def reconcile(self, rows: Iterable[SapRow], source_file: str, tier: str) -> ReconcileSummary:
        summary = ReconcileSummary()
        self.begin(source_file, tier)
        for row in rows:
            summary.total_rows += 1
            try:
                if row.error:
                    raise RowError(source_file, row.line_number, row.error)
                self.reconcile_row(row, summary, source_file=source_file, tier=tier)
            except RowError as exc:
                summary.row_errors.append(exc)
                logger.warning(
                    "SAP %s row rejected: %s",
                    self.entity,
                    exc,
                    extra={"sap_job": self.entity, "sap_file": source_file, "sap_line": row.line_number},
                )
        return summary

    def begin(self, source_file: str, tier: str) -> None:
        """Reset per-file state. Identifiers seen across the run are kept for :meth:`deactivate_missing`."""

    def reconcile_row(self, row: SapRow, summary: ReconcileSummary, *, source_file: str, tier: str) -> None:
        raise NotImplementedError

    def deactivate_missing(self, tier: str) -> int:
        """Run-level pass over records absent from every file of the run; returns the number deactivated."""
        return 0

    def cleanup(self) -> int:
        """Explicit cleanup pass run once per job; returns the number of deleted records."""
        return 0

    def today(self) -> date:
        return self.clock().date()
