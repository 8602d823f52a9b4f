"""Structured results returned by every SAP job entry point."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class JobStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    ALREADY_RUNNING = "already_running"
    DISABLED = "disabled"


SUCCESS_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.PARTIALLY_FAILED, JobStatus.ALREADY_RUNNING})


@dataclass
class FileOutcome:
    """What happened to one imported or exported file."""

    name: str
    path: str
    status: str
    counts: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    archived_to: str | None = None
    parsed: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "status": self.status,
            "counts": dict(self.counts),
            "errors": list(self.errors),
            "archived_to": self.archived_to,
        }


@dataclass
class JobResult:
    job: str
    status: JobStatus = JobStatus.SUCCEEDED
    counts: dict[str, int] = field(default_factory=dict)
    files: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    outcomes: list[FileOutcome] = field(default_factory=list)
    source: str | None = None
    run_id: int | None = None
    message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def success(self) -> bool:
        return self.status in SUCCESS_STATUSES

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return round((self.finished_at - self.started_at).total_seconds(), 3)

    def add_counts(self, counts: dict[str, int]) -> None:
        for key, value in counts.items():
            self.counts[key] = self.counts.get(key, 0) + int(value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "status": self.status.value,
            "success": self.success,
            "source": self.source,
            "run_id": self.run_id,
            "message": self.message,
            "counts": dict(self.counts),
            "files": list(self.files),
            "errors": list(self.errors),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "details": dict(self.details),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def disabled(cls, job: str, message: str) -> "JobResult":
        return cls(job=job, status=JobStatus.DISABLED, errors=[message], message=message)

    @classmethod
    def already_running(cls, job: str, message: str) -> "JobResult":
        return cls(job=job, status=JobStatus.ALREADY_RUNNING, message=message)
