"""
Audit tables for the SAP exchange jobs.

One ``SapImportRun`` row is written per import job that found files, with a
``SapImportLog`` child per processed file. Exports write one ``SapExportLog``
per business entity/company file. Runs become read-only once finalized.
"""

from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import Enum, ForeignKey, Index, event, select
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


class SapRunStatus(str, enum.Enum):
    """Lifecycle states for an SAP import run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"


class SapFileStatus(str, enum.Enum):
    """Outcome of a single processed file."""

    PROCESSING = "processing"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class FinalizedRunError(RuntimeError):
    """Raised when code attempts to mutate a finalized import run."""


class SapImportRun(BaseModel):
    """A single scheduled or manual import job execution."""

    __tablename__ = "sap_import_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    job: Mapped[str] = mapped_column(db.String(20), nullable=False, index=True)
    source: Mapped[str | None] = mapped_column(db.String(10), nullable=True)
    status: Mapped[SapRunStatus] = mapped_column(
        Enum(SapRunStatus, name="sap_run_status_enum"),
        nullable=False,
        default=SapRunStatus.RUNNING,
        index=True,
    )
    file_names: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    counts_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    errors_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    trigger: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    duration_seconds: Mapped[float | None] = mapped_column(db.Float, nullable=True)

    files = relationship(
        "SapImportLog",
        back_populates="run",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SapImportLog.id",
    )

    __table_args__ = (Index("idx_sap_run_job_started", "job", "started_at"),)

    def __repr__(self):
        return f"<SapImportRun {self.id} {self.job} {self.status}>"

    @property
    def is_finalized(self) -> bool:
        return self.finished_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job": self.job,
            "source": self.source,
            "status": self.status.value if self.status else None,
            "file_names": list(self.file_names or []),
            "counts": dict(self.counts_json or {}),
            "errors": list(self.errors_json or []),
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
        }


@event.listens_for(SapImportRun, "before_update")
def _reject_finalized_run_updates(mapper, connection, target):
    table = SapImportRun.__table__
    persisted = connection.scalar(select(table.c.finished_at).where(table.c.id == target.id))
    if persisted is not None:
        raise FinalizedRunError(f"Import run {target.id} is finalized and cannot be modified.")


class SapImportLog(BaseModel):
    """Processing record for one SAP file."""

    __tablename__ = "sap_import_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[int | None] = mapped_column(
        ForeignKey("sap_import_runs.id", ondelete="CASCADE"), nullable=True, index=True
    )
    import_type: Mapped[str] = mapped_column(db.String(20), nullable=False, index=True)
    file_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(db.String(1024), nullable=False)
    source: Mapped[str] = mapped_column(db.String(10), nullable=False)
    status: Mapped[SapFileStatus] = mapped_column(
        Enum(SapFileStatus, name="sap_file_status_enum"),
        nullable=False,
        default=SapFileStatus.PROCESSING,
    )
    total_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    processed_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    inserted_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    updated_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    unchanged_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    skipped_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    deactivated_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    errors: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    archived_to: Mapped[str | None] = mapped_column(db.String(1024), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    duration_seconds: Mapped[float | None] = mapped_column(db.Float, nullable=True)

    run = relationship("SapImportRun", back_populates="files")

    def __repr__(self):
        return f"<SapImportLog {self.file_name} {self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "import_type": self.import_type,
            "file_name": self.file_name,
            "file_path": self.file_path,
            "source": self.source,
            "status": self.status.value if self.status else None,
            "total_rows": self.total_rows,
            "processed_rows": self.processed_rows,
            "inserted_rows": self.inserted_rows,
            "updated_rows": self.updated_rows,
            "unchanged_rows": self.unchanged_rows,
            "skipped_rows": self.skipped_rows,
            "deactivated_rows": self.deactivated_rows,
            "error_rows": self.error_rows,
            "errors": list(self.errors or []),
            "archived_to": self.archived_to,
            "duration_seconds": self.duration_seconds,
        }


class SapExportLog(BaseModel):
    """One exported (or failed) meter reading file."""

    __tablename__ = "sap_export_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    business_entity: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    company_code: Mapped[str] = mapped_column(db.String(20), nullable=False)
    site_codes: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    cut_off_date: Mapped[date] = mapped_column(db.Date, nullable=False, index=True)
    cut_off_at: Mapped[datetime | None] = mapped_column(db.DateTime, nullable=True)
    file_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    file_path: Mapped[str | None] = mapped_column(db.String(1024), nullable=True)
    status: Mapped[str] = mapped_column(db.String(20), nullable=False, default="processing")
    total_meters: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    exported_meters: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    skipped_meters: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    validation_summary: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    exclusions: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    errors: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    duration_seconds: Mapped[float | None] = mapped_column(db.Float, nullable=True)

    def __repr__(self):
        return f"<SapExportLog {self.file_name} {self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_entity": self.business_entity,
            "company_code": self.company_code,
            "site_codes": list(self.site_codes or []),
            "cut_off_date": self.cut_off_date.isoformat() if self.cut_off_date else None,
            "file_name": self.file_name,
            "file_path": self.file_path,
            "status": self.status,
            "total_meters": self.total_meters,
            "exported_meters": self.exported_meters,
            "skipped_meters": self.skipped_meters,
            "validation_summary": dict(self.validation_summary or {}),
            "errors": list(self.errors or []),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "duration_seconds": self.duration_seconds,
        }
