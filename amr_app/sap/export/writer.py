"""
Billing file writer.

Layout (no header, one meter per line)::

    measuring point description, customer name, reading, dd.mm.YYYY, HH:MM:SS, measuring point

Rows are joined with ``\\n`` and the file has no trailing newline. Readings
carry two decimals rounded half-up with no thousands separator.
"""

from __future__ import annotations

import csv
import io
import logging
import os
import tempfile
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Iterable

from config.sap import CsvDialectSettings

from ..errors import ExportFileExists
from .candidates import ExportCandidate, ExportGroup

logger = logging.getLogger(__name__)

DEFAULT_FILENAME_TEMPLATE = "{business_entity}_{company}_{day}_{month}_{year}.csv"
MISSING_MEASURING_POINT = "000000000000"
TWO_PLACES = Decimal("0.01")


def format_reading(value: float) -> str:
    return f"{Decimal(repr(float(value))).quantize(TWO_PLACES, rounding=ROUND_HALF_UP):f}"


def sort_key(candidate: ExportCandidate) -> tuple[str, int]:
    return (candidate.measuring_point_desc or candidate.meter_name or "", candidate.meter_id)


def format_row(candidate: ExportCandidate) -> list[str]:
    reading_at = candidate.reading_at
    return [
        candidate.measuring_point_desc or candidate.meter_name,
        candidate.customer_name or "",
        format_reading(candidate.reading),
        reading_at.strftime("%d.%m.%Y"),
        reading_at.strftime("%H:%M:%S"),
        candidate.measuring_point or MISSING_MEASURING_POINT,
    ]


class ExportWriter:
    def __init__(
        self,
        export_dir: Path | str,
        filename_template: str = DEFAULT_FILENAME_TEMPLATE,
        dialect: CsvDialectSettings | None = None,
    ) -> None:
        self.export_dir = Path(export_dir)
        self.filename_template = filename_template
        self.dialect = dialect or CsvDialectSettings()

    def filename(self, business_entity: str, company_code: str, cutoff_date: date) -> str:
        return self.filename_template.format(
            business_entity=business_entity,
            company=company_code,
            day=cutoff_date.day,
            month=cutoff_date.month,
            year=cutoff_date.year,
        )

    def render(self, candidates: Iterable[ExportCandidate]) -> str:
        buffer = io.StringIO()
        options = {
            "delimiter": self.dialect.delimiter,
            "lineterminator": "\n",
            "escapechar": self.dialect.escape or None,
        }
        if self.dialect.enclosure:
            options.update(quoting=csv.QUOTE_ALL, quotechar=self.dialect.enclosure)
        else:
            options.update(quoting=csv.QUOTE_NONE, quotechar=None)
        writer = csv.writer(buffer, **options)
        for candidate in sorted(candidates, key=sort_key):
            writer.writerow(format_row(candidate))
        return buffer.getvalue().rstrip("\n")

    def write(self, group: ExportGroup, cutoff_date: date, candidates: Iterable[ExportCandidate] | None = None) -> Path:
        """
        Write the group's file atomically.

        Raises:
            ExportFileExists: the target file is already present.
            OSError: the export directory or file cannot be written.
            csv.Error: a value cannot be rendered with the configured dialect.
        """
        rows = group.candidates if candidates is None else list(candidates)
        target = self.export_dir / self.filename(group.business_entity, group.company_code, cutoff_date)
        if target.exists():
            raise ExportFileExists(target)

        self.export_dir.mkdir(parents=True, exist_ok=True)
        content = self.render(rows)
        fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=self.export_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
            if target.exists():
                raise ExportFileExists(target)
            os.replace(temp_name, target)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
        logger.info(
            "Wrote %s with %d rows",
            target.name,
            len(rows),
            extra={"sap_job": "export", "sap_file": target.name},
        )
        return target
