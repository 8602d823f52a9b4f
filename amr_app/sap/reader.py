"""
Reader for SAP master-data drops.

Streams rows as ``SapRow`` records keyed by canonical column name. Each call
to :meth:`SapFileReader.iter_rows` re-reads the file, so the sequence is
restartable and deterministic.
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from .contracts import HEADER_ALIASES, FileSchema, normalize_header
from .errors import MalformedFile

logger = logging.getLogger(__name__)

FALLBACK_ENCODING = "cp1252"


@dataclass(frozen=True)
class SapRow:
    """One data row. ``error`` is set when the row is too short to map."""

    line_number: int
    values: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    def get(self, column: str, default: str = "") -> str:
        return self.values.get(column, default)


def detect_delimiter(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return "\t" if "\t" in line else ","
    return ","


class SapFileReader:
    def __init__(self, path: Path | str, schema: FileSchema) -> None:
        self.path = Path(path)
        self.schema = schema
        self.encoding: str | None = None
        self.delimiter: str | None = None
        self.has_header = False
        self.blank_lines = 0

    def read_text(self) -> str:
        """
        Load the file as text.

        Raises:
            MalformedFile: unreadable, binary or undecodable content.
        """
        try:
            raw = self.path.read_bytes()
        except OSError as exc:
            raise MalformedFile(self.path, f"cannot open file ({exc.strerror or exc})") from exc
        if b"\x00" in raw:
            raise MalformedFile(self.path, "file contains NUL bytes")
        try:
            self.encoding = "utf-8"
            return raw.decode("utf-8-sig")
        except UnicodeDecodeError:
            pass
        try:
            self.encoding = FALLBACK_ENCODING
            text = raw.decode(FALLBACK_ENCODING)
        except UnicodeDecodeError as exc:
            raise MalformedFile(self.path, f"cannot decode file as UTF-8 or {FALLBACK_ENCODING}") from exc
        logger.info("Decoded %s using %s fallback", self.path.name, FALLBACK_ENCODING)
        return text

    def _header_positions(self, cells: list[str]) -> dict[str, int]:
        positions: dict[str, int] = {}
        for index, cell in enumerate(cells):
            name = normalize_header(cell)
            name = HEADER_ALIASES.get(name, name)
            positions.setdefault(name, index)
        missing = [column for column in self.schema.columns if column not in positions]
        if missing:
            raise MalformedFile(self.path, f"header is missing columns: {', '.join(missing)}")
        return positions

    def iter_rows(self) -> Iterator[SapRow]:
        text = self.read_text()
        self.delimiter = detect_delimiter(text)
        self.has_header = False
        self.blank_lines = 0

        reader = csv.reader(io.StringIO(text, newline=""), delimiter=self.delimiter, quoting=csv.QUOTE_NONE)
        positions: dict[str, int] | None = None
        seen_data = False
        try:
            for cells in reader:
                line_number = reader.line_num
                cells = [cell.strip() for cell in cells]
                if not any(cells):
                    self.blank_lines += 1
                    continue

                if not seen_data:
                    seen_data = True
                    if normalize_header(cells[0]) == self.schema.first_column:
                        positions = self._header_positions(cells)
                        self.has_header = True
                        continue

                yield self._build_row(line_number, cells, positions)
        except csv.Error as exc:
            raise MalformedFile(self.path, f"line {reader.line_num}: {exc}") from exc

    def _build_row(self, line_number: int, cells: list[str], positions: dict[str, int] | None) -> SapRow:
        if positions is None:
            if len(cells) < self.schema.width:
                return SapRow(
                    line_number=line_number,
                    error=f"expected {self.schema.width} columns, found {len(cells)}",
                )
            return SapRow(line_number=line_number, values=dict(zip(self.schema.columns, cells)))

        required = max(positions[column] for column in self.schema.columns) + 1
        if len(cells) < required:
            return SapRow(line_number=line_number, error=f"expected {required} columns, found {len(cells)}")
        return SapRow(
            line_number=line_number,
            values={column: cells[positions[column]] for column in self.schema.columns},
        )
