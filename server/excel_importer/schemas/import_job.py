"""Pydantic schemas describing import job payloads."""
from __future__ import annotations

from datetime import datetime, timezone
import re
from typing import TYPE_CHECKING, Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from excel_importer.models.import_job import JobStatus

if TYPE_CHECKING:
    from excel_importer.models.import_job import ImportJob

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_]\w*$")
TABLE_NAME_PATTERN = re.compile(r"^(?:[A-Za-z_]\w*\.)?[A-Za-z_]\w*$")


class ImportJobCreate(BaseModel):
    """Submission payload for a new import (or a validate-only request)."""

    file_path: str = Field(description="Resolved path of the uploaded spreadsheet")
    file_name: str | None = Field(default=None, description="Original filename supplied during upload")
    table_name: str = Field(max_length=128, description="Target table, optionally schema-qualified")
    sheet_name: str | None = Field(default=None, max_length=31)
    column_mapping: dict[str, str] | None = Field(
        default=None, description="Spreadsheet header -> destination column renames"
    )
    required_columns: list[str] | None = Field(
        default=None,
        description="Destination columns the headers must cover; defaults to every table column",
    )
    skip_rows: int = Field(default=0, ge=0, description="Leading rows to skip before the header row")
    validate_only: bool = False
    correlation_id: str | None = Field(default=None, max_length=64)

    @field_validator("file_path")
    @classmethod
    def ensure_file_path(cls, value: str) -> str:
        value = value.strip()
        if not value:
            msg = "file_path cannot be empty"
            raise ValueError(msg)
        return value

    @field_validator("table_name")
    @classmethod
    def ensure_table_identifier(cls, value: str) -> str:
        value = value.strip()
        if not TABLE_NAME_PATTERN.match(value):
            msg = "Table name must be a valid SQL identifier"
            raise ValueError(msg)
        return value

    @field_validator("column_mapping")
    @classmethod
    def ensure_mapping_targets(cls, value: dict[str, str] | None) -> dict[str, str] | None:
        if not value:
            return None
        for source, target in value.items():
            if not IDENTIFIER_PATTERN.match(target):
                msg = f"Invalid column mapping target for '{source}': {target!r}"
                raise ValueError(msg)
        return value


class JobDescriptor(BaseModel):
    """Immutable description of the work a worker performs for one job."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    job_id: UUID = Field(validation_alias=AliasChoices("job_id", "id"))
    file_path: str
    file_name: str
    table_name: str
    sheet_name: str | None = None
    column_mapping: dict[str, str] | None = None
    required_columns: list[str] | None = None
    skip_rows: int = 0
    correlation_id: str


class JobProgress(BaseModel):
    """Progress snapshot persisted on the job and pushed to live listeners."""

    total: int = Field(ge=0)
    processed: int = Field(ge=0)
    failed: int = Field(ge=0)
    percentage: int = Field(ge=0, le=100)
    current_batch: int | None = None
    total_batches: int | None = None
    records_per_second: float | None = None
    estimated_time_remaining_ms: int | None = None
    last_updated: datetime | None = None

    @classmethod
    def compute(
        cls,
        *,
        total: int,
        processed: int,
        failed: int,
        current_batch: int | None = None,
        total_batches: int | None = None,
        elapsed_seconds: float | None = None,
    ) -> "JobProgress":
        """Build a snapshot; the percentage saturates at 100 when ``total`` undercounts."""

        if total > 0:
            percentage = min(100, round(processed / total * 100))
        else:
            percentage = 100 if processed else 0

        records_per_second = None
        eta_ms = None
        if elapsed_seconds and elapsed_seconds > 0:
            records_per_second = round(processed / elapsed_seconds, 2)
            if records_per_second > 0:
                remaining = max(0, total - processed)
                eta_ms = int(remaining / records_per_second * 1000)

        return cls(
            total=total,
            processed=processed,
            failed=failed,
            percentage=percentage,
            current_batch=current_batch,
            total_batches=total_batches,
            records_per_second=records_per_second,
            estimated_time_remaining_ms=eta_ms,
            last_updated=datetime.now(timezone.utc),
        )

    @property
    def inserted(self) -> int:
        return self.processed - self.failed


class FailedRecord(BaseModel):
    """One row that did not make it into the target table."""

    row_number: int = Field(description="Row number in the source sheet")
    error: str
    data: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class JobCompletionResult(BaseModel):
    """Detailed outcome stored on a job once the orchestrator returns."""

    success_count: int = Field(ge=0)
    failed_count: int = Field(ge=0)
    duration_ms: int = Field(ge=0)
    records_per_second: float | None = None
    failed_records: list[FailedRecord] = Field(default_factory=list)
    table_name: str
    file_name: str
    warnings: list[str] = Field(default_factory=list)


class JobResult(BaseModel):
    """Caller-facing view of a job, as returned by status queries."""

    job_id: UUID
    status: JobStatus
    progress: JobProgress
    correlation_id: str | None = None
    table_name: str | None = None
    file_name: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    error_stack: str | None = None
    result: JobCompletionResult | None = None
    attempts: int = 0
    max_attempts: int = 1

    @classmethod
    def from_job(cls, job: ImportJob) -> "JobResult":
        progress = JobProgress(
            total=job.total_rows or 0,
            processed=job.processed_rows,
            failed=job.failed_rows,
            percentage=job.percentage,
            current_batch=job.current_batch,
            total_batches=job.total_batches,
            records_per_second=job.records_per_second,
            estimated_time_remaining_ms=job.estimated_time_remaining_ms,
            last_updated=job.progress_updated_at,
        )
        return cls(
            job_id=job.id,
            status=job.status,
            progress=progress,
            correlation_id=job.correlation_id,
            table_name=job.table_name,
            file_name=job.file_name,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            error=job.error_message,
            error_stack=job.error_stack,
            result=JobCompletionResult.model_validate(job.result) if job.result else None,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
        )
