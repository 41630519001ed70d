"""Celery tasks for spreadsheet import processing.

``process_import`` is a thin Celery shell around ImportJobRunner, which owns
the job lifecycle: claim, validate, run the orchestrator, persist progress and
the terminal state, and remove the uploaded file once the job concludes.
"""
from __future__ import annotations

import logging
from pathlib import Path
import traceback
from typing import Any

from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError

from excel_importer.core.config import Settings, get_settings
from excel_importer.core.db import Database
from excel_importer.core.errors import (
    FatalImportError,
    ImportPipelineError,
    ImportValidationError,
    SchemaError,
)
from excel_importer.core.redis_manager import ProgressPublisher
from excel_importer.models.import_job import JobStatus
from excel_importer.schemas.import_job import JobCompletionResult, JobDescriptor, JobProgress
from excel_importer.services.bulk_loader import BulkLoader
from excel_importer.services.import_orchestrator import ImportOrchestrator, ImportOutcome
from excel_importer.services.import_service import ImportRepository
from excel_importer.services.import_validator import ImportValidator, ValidationResult
from excel_importer.services.spreadsheet_reader import SpreadsheetReader
from excel_importer.tasks.celery_app import celery_app
from excel_importer.tasks.worker_context import WorkerResources, get_worker_resources

logger = logging.getLogger(__name__)

# Errors that escape the orchestrator's batch isolation and earn another attempt
RETRYABLE_ERRORS = (ImportPipelineError, SQLAlchemyError, OSError)
NON_RETRYABLE_ERRORS = (ImportValidationError, FatalImportError)

_settings = get_settings()


class ImportJobRunner:
    """Runs one attempt of an import job against explicit resources."""

    def __init__(
        self,
        job_store: Database,
        target_engine: Engine,
        publisher: ProgressPublisher,
        settings: Settings,
    ) -> None:
        self._job_store = job_store
        self._publisher = publisher
        self._settings = settings

        reader = SpreadsheetReader(batch_size=settings.import_batch_size)
        loader = BulkLoader(target_engine, strategy=settings.insert_strategy)
        self.validator = ImportValidator(
            reader,
            loader,
            allowed_extensions=settings.allowed_extensions,
            max_file_size_mb=settings.max_upload_size_mb,
        )
        self.orchestrator = ImportOrchestrator(
            reader,
            loader,
            self.validator,
            failed_records_limit=settings.failed_records_limit,
        )

    @classmethod
    def from_resources(cls, resources: WorkerResources) -> "ImportJobRunner":
        return cls(resources.job_store, resources.target_engine, resources.publisher, resources.settings)

    def run(self, job_id: str, *, retries: int = 0, max_retries: int = 0) -> dict[str, Any]:
        """Process one attempt of the job.

        Args:
            job_id: UUID string of the import job
            retries: Attempts already made before this one
            max_retries: Retries allowed after the first attempt

        Returns:
            dict summarising how the attempt concluded

        Raises:
            FatalImportError: The last allowed attempt failed, or a retryable
                error struck after batches were already committed
            ImportPipelineError, SQLAlchemyError, OSError: A retryable failure
                before the first batch; the job is back in pending
            Exception: Anything else, after the job is marked failed
        """
        attempt = retries + 1
        final_attempt = retries >= max_retries

        with self._job_store.session_scope() as session:
            repo = ImportRepository(session)
            job = repo.claim(job_id, max_attempts=max_retries + 1)
            if job is None:
                return self._handle_unclaimed(repo, job_id)
            descriptor = JobDescriptor.model_validate(job)

        log_prefix = f"Job {job_id} [{descriptor.correlation_id}]"
        logger.info(f"{log_prefix}: claimed (attempt {attempt}/{max_retries + 1})")
        self._publisher.publish(job_id, JobStatus.PROCESSING.value, stage="claimed", force=True)

        source = Path(descriptor.file_path)
        if not source.exists():
            error_message = f"Source file not found at {descriptor.file_path}"
            logger.error(f"{log_prefix}: {error_message}")
            self._fail(job_id, error_message)
            return {"status": JobStatus.FAILED.value, "job_id": job_id, "error": error_message}

        committed_batches = 0

        def on_progress(progress: JobProgress) -> None:
            nonlocal committed_batches
            committed_batches = progress.current_batch or committed_batches + 1
            self._record_progress(job_id, progress)

        try:
            validation = self._validate(descriptor)
            outcome = self.orchestrator.run(
                source,
                descriptor.table_name,
                sheet_name=descriptor.sheet_name,
                column_mapping=descriptor.column_mapping,
                skip_rows=descriptor.skip_rows,
                on_progress=on_progress,
                should_cancel=lambda: self._is_cancelled(job_id),
                total_rows=validation.row_count,
            )

        except ImportValidationError as exc:
            error_message = str(exc)
            logger.error(f"{log_prefix}: {error_message}")
            self._fail(job_id, error_message)
            self._cleanup_file(source, log_prefix)
            return {"status": JobStatus.FAILED.value, "job_id": job_id, "error": error_message}

        except RETRYABLE_ERRORS as exc:
            error_message = f"{type(exc).__name__}: {exc}"
            logger.error(f"{log_prefix}: import failed on attempt {attempt}: {exc}", exc_info=True)

            if final_attempt:
                self._fail(job_id, error_message, traceback.format_exc())
                self._cleanup_file(source, log_prefix)
                raise FatalImportError(
                    f"Import failed after {attempt} attempts: {error_message}", attempt
                ) from exc

            # A retry re-reads the file from the first row
            if committed_batches:
                self._fail(job_id, error_message, traceback.format_exc())
                self._cleanup_file(source, log_prefix)
                raise FatalImportError(
                    f"Import failed after {committed_batches} committed batches: {error_message}",
                    attempt,
                ) from exc

            with self._job_store.session_scope() as session:
                ImportRepository(session).requeue(job_id, error_message)
            self._publisher.publish(
                job_id,
                JobStatus.PENDING.value,
                stage=f"retry_{attempt}",
                error_message=error_message,
                force=True,
            )
            raise

        except Exception as exc:
            error_message = f"{type(exc).__name__}: {exc}"
            logger.error(f"{log_prefix}: import aborted: {exc}", exc_info=True)
            self._fail(job_id, error_message, traceback.format_exc())
            self._cleanup_file(source, log_prefix)
            raise

        if outcome.cancelled:
            logger.info(f"{log_prefix}: stopped after {outcome.batches} batches, job was cancelled")
            self._publisher.publish(job_id, JobStatus.CANCELLED.value, stage="cancelled", force=True)
            self._cleanup_file(source, log_prefix)
            return {"status": JobStatus.CANCELLED.value, "job_id": job_id}

        return self._complete(job_id, descriptor, outcome, source, log_prefix)

    def _validate(self, descriptor: JobDescriptor) -> ValidationResult:
        validation = self.validator.validate(
            descriptor.file_path,
            descriptor.table_name,
            sheet_name=descriptor.sheet_name,
            skip_rows=descriptor.skip_rows,
            column_mapping=descriptor.column_mapping,
            required_columns=descriptor.required_columns,
        )
        if validation.is_valid:
            return validation

        # A missing table may be created before the next attempt
        table_errors = [error.message for error in validation.errors if error.field == "table"]
        if table_errors:
            raise SchemaError("; ".join(table_errors))
        raise ImportValidationError(
            f"Validation failed: {'; '.join(validation.messages)}", validation.errors
        )

    def _complete(
        self,
        job_id: str,
        descriptor: JobDescriptor,
        outcome: ImportOutcome,
        source: Path,
        log_prefix: str,
    ) -> dict[str, Any]:
        warnings = []
        if outcome.dropped_failed_records:
            warnings.append(
                f"{outcome.dropped_failed_records} further failed rows were not recorded"
            )
        result = JobCompletionResult(
            success_count=outcome.success_count,
            failed_count=outcome.failed_count,
            duration_ms=outcome.duration_ms,
            records_per_second=outcome.records_per_second,
            failed_records=outcome.failed_records,
            table_name=descriptor.table_name,
            file_name=descriptor.file_name,
            warnings=warnings,
        )
        progress = JobProgress.compute(
            total=outcome.total_rows,
            processed=outcome.processed_count,
            failed=outcome.failed_count,
            current_batch=outcome.batches,
            total_batches=outcome.batches,
        )

        with self._job_store.session_scope() as session:
            completed = ImportRepository(session).mark_completed(job_id, result, progress)

        if not completed:
            # Cancelled while the last batch was in flight; the cancel stands
            logger.info(f"{log_prefix}: finished after cancellation, result discarded")
            self._cleanup_file(source, log_prefix)
            return {"status": JobStatus.CANCELLED.value, "job_id": job_id}

        self._publisher.publish(
            job_id, JobStatus.COMPLETED.value, progress, stage="completed", force=True
        )
        logger.info(
            f"{log_prefix}: import completed ({outcome.success_count} inserted, "
            f"{outcome.failed_count} failed, {outcome.duration_ms}ms)"
        )
        self._cleanup_file(source, log_prefix)

        return {
            "status": JobStatus.COMPLETED.value,
            "job_id": job_id,
            "success_count": outcome.success_count,
            "failed_count": outcome.failed_count,
            "duration_ms": outcome.duration_ms,
        }

    def _handle_unclaimed(self, repo: ImportRepository, job_id: str) -> dict[str, Any]:
        job = repo.get_by_id(job_id)
        if job is None:
            logger.error(f"Import job {job_id} not found in database")
            return {"status": "missing", "job_id": job_id}

        if job.status == JobStatus.CANCELLED:
            log_prefix = f"Job {job_id} [{job.correlation_id}]"
            logger.info(f"{log_prefix}: cancelled before it was claimed")
            self._cleanup_file(Path(job.file_path), log_prefix)
            return {"status": JobStatus.CANCELLED.value, "job_id": job_id}

        logger.warning(f"Job {job_id}: not claimable in status {job.status.value}, skipping")
        return {"status": "skipped", "job_id": job_id, "job_status": job.status.value}

    def _record_progress(self, job_id: str, progress: JobProgress) -> None:
        try:
            with self._job_store.session_scope() as session:
                accepted = ImportRepository(session).update_progress(job_id, progress)
        except SQLAlchemyError as exc:
            logger.warning(f"Job {job_id}: could not persist progress for batch {progress.current_batch}: {exc}")
            return
        if not accepted:
            logger.debug(f"Job {job_id}: progress update rejected, job no longer processing")
            return
        self._publisher.publish(
            job_id,
            JobStatus.PROCESSING.value,
            progress,
            stage=f"batch_{progress.current_batch}",
        )

    def _is_cancelled(self, job_id: str) -> bool:
        try:
            with self._job_store.session_scope() as session:
                return ImportRepository(session).get_status(job_id) == JobStatus.CANCELLED
        except SQLAlchemyError as exc:
            logger.warning(f"Job {job_id}: cancellation check failed, continuing: {exc}")
            return False

    def _fail(self, job_id: str, error_message: str, error_stack: str | None = None) -> None:
        with self._job_store.session_scope() as session:
            ImportRepository(session).mark_failed(job_id, error_message, error_stack)
        self._publisher.publish(
            job_id, JobStatus.FAILED.value, error_message=error_message, stage="failed", force=True
        )

    @staticmethod
    def _cleanup_file(path: Path, log_prefix: str) -> None:
        try:
            path.unlink(missing_ok=True)
            logger.info(f"{log_prefix}: cleaned up source file {path}")
        except OSError as exc:
            logger.warning(f"{log_prefix}: failed to delete source file {path}: {exc}")


@celery_app.task(
    name="process_import",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
    autoretry_for=RETRYABLE_ERRORS,
    dont_autoretry_for=NON_RETRYABLE_ERRORS,
    max_retries=_settings.import_max_retries,
    retry_backoff=_settings.retry_backoff_seconds,
    retry_backoff_max=_settings.retry_backoff_max_seconds,
    retry_jitter=False,
)
def process_import(self, job_id: str) -> dict:
    """Process an import job in the background.

    Task Flow:
    1. Claim the job (pending -> processing); a cancelled job is cleaned up and skipped
    2. Validate the file against the target table
    3. Run the orchestrator, persisting progress after every batch
    4. Record completion, delete the source file and return a summary
    5. On a retryable error before the first batch, requeue the job and let
       Celery retry with exponential backoff; on the last attempt, or once a
       batch has been committed, mark it failed and raise FatalImportError
    6. Any other error marks the job failed and removes the file

    Args:
        job_id: UUID string of the import job

    Returns:
        dict with job completion details
    """
    runner = ImportJobRunner.from_resources(get_worker_resources())
    return runner.run(job_id, retries=self.request.retries, max_retries=self.max_retries)
