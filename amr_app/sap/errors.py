"""
Exception taxonomy for the SAP exchange jobs.

Only lock-infrastructure and database failures abort a whole job; every other
error here is caught by the job entry points and reported through
``JobResult``.
"""

from __future__ import annotations

from pathlib import Path


class SapError(Exception):
    """Base exception for SAP exchange failures."""


class LockError(SapError):
    """Raised when the lock directory cannot be used at all."""


class AlreadyRunning(SapError):
    """Raised when another run of the same job still holds its lock."""

    def __init__(self, job_key: str, holder: dict | None = None) -> None:
        super().__init__(f"SAP job '{job_key}' is already running.")
        self.job_key = job_key
        self.holder = dict(holder or {})


class NoFilesFound(SapError):
    """Raised when no directory tier holds a matching file."""

    def __init__(self, import_type: str, searched: tuple[Path, ...] = ()) -> None:
        locations = ", ".join(str(path) for path in searched) or "no directories"
        super().__init__(f"No files found for {import_type} import (searched {locations}).")
        self.import_type = import_type
        self.searched = searched


class MalformedFile(SapError):
    """Raised when a file cannot be read as a whole."""

    def __init__(self, path: Path | str, reason: str) -> None:
        super().__init__(f"{Path(path).name}: {reason}")
        self.path = Path(path)
        self.reason = reason


class RowError(SapError):
    """A single row could not be reconciled; the batch continues."""

    def __init__(self, source_file: str, line_number: int, reason: str) -> None:
        super().__init__(f"{source_file} line {line_number}: {reason}")
        self.source_file = source_file
        self.line_number = line_number
        self.reason = reason


class MappingNotFound(RowError):
    """A required value has no entry in its mapping table."""

    def __init__(self, source_file: str, line_number: int, table: str, value: str) -> None:
        super().__init__(source_file, line_number, f"unmapped {table} value '{value}'")
        self.table = table
        self.value = value


class ArchiveError(SapError, OSError):
    """Raised when a processed file cannot be moved into its archive directory."""

    def __init__(self, path: Path | str, reason: str) -> None:
        SapError.__init__(self, f"Could not archive {Path(path).name}: {reason}")
        self.path = Path(path)
        self.reason = reason


class ExportFileExists(SapError):
    """Raised when an export target file is already present."""

    def __init__(self, path: Path | str) -> None:
        super().__init__(f"Export file already exists: {Path(path).name}")
        self.path = Path(path)
