"""Service layer for managing the spreadsheet import job lifecycle."""
from __future__ import annotations

from datetime import datetime, timedelta
import logging
from pathlib import Path
from typing import Sequence
from uuid import UUID, uuid4

from kombu.exceptions import OperationalError
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from excel_importer.core.config import Settings, get_settings
from excel_importer.core.errors import ImportIOError, NotFoundError
from excel_importer.models.import_job import (
    CANCELLABLE_STATUSES,
    TERMINAL_STATUSES,
    ImportJob,
    JobStatus,
    utcnow,
)
from excel_importer.schemas.import_job import (
    ImportJobCreate,
    JobCompletionResult,
    JobProgress,
    JobResult,
)
from excel_importer.services.import_validator import ImportValidator, ValidationResult

logger = logging.getLogger(__name__)

COMPLETED_LIKE_STATUSES = (JobStatus.COMPLETED, JobStatus.CANCELLED)


def _as_uuid(job_id: UUID | str) -> UUID | None:
    """Parse a job id; malformed ids match no job."""
    if isinstance(job_id, UUID):
        return job_id
    try:
        return UUID(str(job_id))
    except ValueError:
        return None


def _progress_values(progress: JobProgress) -> dict:
    return {
        "total_rows": progress.total,
        "processed_rows": progress.processed,
        "failed_rows": progress.failed,
        "percentage": progress.percentage,
        "current_batch": progress.current_batch,
        "total_batches": progress.total_batches,
        "records_per_second": progress.records_per_second,
        "estimated_time_remaining_ms": progress.estimated_time_remaining_ms,
        "progress_updated_at": progress.last_updated or utcnow(),
    }


class ImportRepository:
    """Persists ImportJob rows and guards their state transitions.

    Every transition is a conditional UPDATE on the current status, so of two
    concurrent callers at most one sees ``rowcount == 1`` and wins.
    """

    def __init__(self, session: Session) -> None:
        """Initialize repository with a SQLAlchemy session.

        Args:
            session: Active database session for executing queries
        """
        self._session = session

    def create(self, job_data: ImportJobCreate, *, max_attempts: int = 1) -> ImportJob:
        """Create a pending import job record.

        Args:
            job_data: Import job submission payload
            max_attempts: Attempt budget the worker will apply to this job

        Returns:
            Newly created ImportJob instance with generated ID
        """
        job = ImportJob(
            file_name=job_data.file_name or Path(job_data.file_path).name,
            file_path=job_data.file_path,
            table_name=job_data.table_name,
            sheet_name=job_data.sheet_name,
            column_mapping=job_data.column_mapping,
            required_columns=job_data.required_columns,
            skip_rows=job_data.skip_rows,
            correlation_id=job_data.correlation_id or uuid4().hex,
            status=JobStatus.PENDING,
            max_attempts=max_attempts,
        )
        self._session.add(job)
        self._session.commit()
        self._session.refresh(job)
        return job

    def get_by_id(self, job_id: UUID | str) -> ImportJob | None:
        """Fetch an import job by its UUID, reloading any cached state."""
        key = _as_uuid(job_id)
        if key is None:
            return None
        return self._session.get(ImportJob, key, populate_existing=True)

    def get_status(self, job_id: UUID | str) -> JobStatus | None:
        key = _as_uuid(job_id)
        if key is None:
            return None
        return self._session.scalar(select(ImportJob.status).where(ImportJob.id == key))

    def _transition(self, job_id: UUID | str, allowed: Sequence[JobStatus], **values) -> bool:
        key = _as_uuid(job_id)
        if key is None:
            return False
        values.setdefault("updated_at", utcnow())
        stmt = (
            update(ImportJob)
            .where(ImportJob.id == key, ImportJob.status.in_(list(allowed)))
            .values(**values)
        )
        result = self._session.execute(stmt, execution_options={"synchronize_session": False})
        self._session.commit()
        return result.rowcount == 1

    def claim(self, job_id: UUID | str, *, max_attempts: int | None = None) -> ImportJob | None:
        """Move a pending job to processing.

        Returns:
            The claimed job, or None if the job is missing or not pending
        """
        now = utcnow()
        values = {
            "status": JobStatus.PROCESSING,
            "attempts": ImportJob.attempts + 1,
            "started_at": func.coalesce(ImportJob.started_at, now),
            "updated_at": now,
        }
        if max_attempts is not None:
            values["max_attempts"] = max_attempts
        if not self._transition(job_id, [JobStatus.PENDING], **values):
            return None
        return self.get_by_id(job_id)

    def update_progress(self, job_id: UUID | str, progress: JobProgress) -> bool:
        """Persist a progress snapshot while the job is processing.

        Snapshots that would move ``processed`` backwards are rejected, as are
        updates once the job reached a terminal state.
        """
        key = _as_uuid(job_id)
        if key is None:
            return False
        stmt = (
            update(ImportJob)
            .where(
                ImportJob.id == key,
                ImportJob.status == JobStatus.PROCESSING,
                ImportJob.processed_rows <= progress.processed,
            )
            .values(updated_at=utcnow(), **_progress_values(progress))
        )
        result = self._session.execute(stmt, execution_options={"synchronize_session": False})
        self._session.commit()
        return result.rowcount == 1

    def requeue(self, job_id: UUID | str, error_message: str) -> bool:
        """Return a processing job to pending ahead of another attempt.

        Progress is reset since the next attempt reads the file from the start.
        """
        return self._transition(
            job_id,
            [JobStatus.PROCESSING],
            status=JobStatus.PENDING,
            error_message=error_message,
            processed_rows=0,
            failed_rows=0,
            percentage=0,
            current_batch=None,
            records_per_second=None,
            estimated_time_remaining_ms=None,
        )

    def mark_completed(
        self,
        job_id: UUID | str,
        result: JobCompletionResult,
        progress: JobProgress | None = None,
    ) -> bool:
        values = {
            "status": JobStatus.COMPLETED,
            "result": result.model_dump(mode="json"),
            "error_message": None,
            "completed_at": utcnow(),
        }
        if progress is not None:
            values.update(_progress_values(progress))
        return self._transition(job_id, [JobStatus.PROCESSING], **values)

    def mark_failed(self, job_id: UUID | str, error_message: str, error_stack: str | None = None) -> bool:
        return self._transition(
            job_id,
            [JobStatus.PENDING, JobStatus.PROCESSING],
            status=JobStatus.FAILED,
            error_message=error_message,
            error_stack=error_stack,
            completed_at=utcnow(),
        )

    def cancel(self, job_id: UUID | str) -> bool:
        """Cancel a pending or processing job; terminal jobs are left untouched."""
        return self._transition(
            job_id,
            list(CANCELLABLE_STATUSES),
            status=JobStatus.CANCELLED,
            completed_at=utcnow(),
        )

    def list_by_status(self, status: JobStatus | None = None, *, limit: int = 50) -> list[ImportJob]:
        """Fetch jobs newest first, optionally filtered by status."""
        stmt = select(ImportJob).order_by(ImportJob.created_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(ImportJob.status == status)
        return list(self._session.scalars(stmt))

    def find_stalled(self, threshold: timedelta, *, now: datetime | None = None) -> list[ImportJob]:
        """Processing jobs whose last progress (or claim) is older than ``threshold``."""
        cutoff = (now or utcnow()) - threshold
        last_seen = func.coalesce(ImportJob.progress_updated_at, ImportJob.started_at, ImportJob.updated_at)
        stmt = (
            select(ImportJob)
            .where(ImportJob.status == JobStatus.PROCESSING, last_seen < cutoff)
            .order_by(ImportJob.created_at)
        )
        return list(self._session.scalars(stmt))

    def purge_expired(
        self,
        *,
        completed_ttl: timedelta,
        completed_keep: int,
        failed_ttl: timedelta,
        now: datetime | None = None,
    ) -> int:
        """Delete terminal jobs past their retention.

        Completed and cancelled jobs are kept for ``completed_ttl`` and only
        the newest ``completed_keep`` of them; failed jobs for ``failed_ttl``.

        Returns:
            Number of deleted jobs
        """
        now = now or utcnow()
        finished_at = func.coalesce(ImportJob.completed_at, ImportJob.updated_at)

        expired_ids = set(
            self._session.scalars(
                select(ImportJob.id).where(
                    ImportJob.status.in_(COMPLETED_LIKE_STATUSES),
                    finished_at < now - completed_ttl,
                )
            )
        )
        expired_ids.update(
            self._session.scalars(
                select(ImportJob.id)
                .where(ImportJob.status.in_(COMPLETED_LIKE_STATUSES))
                .order_by(finished_at.desc())
                .offset(completed_keep)
            )
        )
        expired_ids.update(
            self._session.scalars(
                select(ImportJob.id).where(
                    ImportJob.status == JobStatus.FAILED,
                    finished_at < now - failed_ttl,
                )
            )
        )
        if not expired_ids:
            return 0

        result = self._session.execute(
            delete(ImportJob).where(ImportJob.id.in_(list(expired_ids))),
            execution_options={"synchronize_session": False},
        )
        self._session.commit()
        return result.rowcount


class ImportService:
    """High-level service coordinating job submission, status and cancellation."""

    def __init__(
        self,
        session: Session,
        validator: ImportValidator | None = None,
        *,
        settings: Settings | None = None,
    ) -> None:
        """Initialize service with a database session.

        Args:
            session: Active job store session
            validator: Required for validate-only submissions
            settings: Defaults to the cached application settings
        """
        self._session = session
        self._repository = ImportRepository(session)
        self._validator = validator
        self._settings = settings or get_settings()

    def submit(self, payload: ImportJobCreate) -> JobResult | ValidationResult:
        """Validate-only requests return a ValidationResult; others enqueue a job.

        Raises:
            NotFoundError: The uploaded file is missing
            ImportIOError: The job could not be published to the broker
        """
        if payload.validate_only:
            return self._validate_only(payload)

        path = Path(payload.file_path)
        if not path.exists():
            msg = f"Upload not found at {payload.file_path}"
            raise NotFoundError(msg)

        job = self._repository.create(payload, max_attempts=self._settings.import_max_retries + 1)
        self._enqueue(job)
        logger.info(
            f"Job {job.id} [{job.correlation_id}]: queued import of {job.file_name} into {job.table_name}"
        )
        return JobResult.from_job(job)

    def _validate_only(self, payload: ImportJobCreate) -> ValidationResult:
        if self._validator is None:
            msg = "A validator is required for validate-only submissions"
            raise RuntimeError(msg)

        try:
            return self._validator.validate(
                payload.file_path,
                payload.table_name,
                sheet_name=payload.sheet_name,
                skip_rows=payload.skip_rows,
                column_mapping=payload.column_mapping,
                required_columns=payload.required_columns,
            )
        finally:
            try:
                Path(payload.file_path).unlink(missing_ok=True)
            except OSError as exc:
                logger.warning(f"Failed to delete upload {payload.file_path} after validation: {exc}")

    def _enqueue(self, job: ImportJob) -> None:
        # Lazy import keeps the service usable without a configured Celery app
        from excel_importer.tasks.import_tasks import process_import

        try:
            process_import.apply_async(args=[str(job.id)], task_id=str(job.id))
        except OperationalError as exc:
            message = f"Failed to enqueue import job: {exc}"
            self._repository.mark_failed(job.id, message)
            raise ImportIOError(message) from exc

    def get_job_status(self, job_id: UUID | str) -> JobResult | None:
        """Fetch the caller-facing view of a job, or None if unknown."""
        job = self._repository.get_by_id(job_id)
        if not job:
            return None
        return JobResult.from_job(job)

    def cancel_job(self, job_id: UUID | str) -> bool:
        """Cancel a pending or processing job.

        A processing job stops before its next batch; the batch in flight
        always completes.
        """
        cancelled = self._repository.cancel(job_id)
        if cancelled:
            logger.info(f"Job {job_id}: cancelled")
        else:
            status = self._repository.get_status(job_id)
            if status in TERMINAL_STATUSES:
                logger.info(f"Job {job_id}: cancellation ignored, job already {status.value}")
        return cancelled

    def list_jobs(self, status: JobStatus | None = None, *, limit: int = 50) -> list[JobResult]:
        jobs = self._repository.list_by_status(status, limit=limit)
        return [JobResult.from_job(job) for job in jobs]
