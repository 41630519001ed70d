"""Tests for ImportService and ImportRepository."""
from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from unittest.mock import patch
from uuid import UUID, uuid4

import pytest
from kombu.exceptions import OperationalError
from sqlalchemy import Engine, Table, update
from sqlalchemy.orm import Session

from excel_importer.core.config import Settings
from excel_importer.core.db import Database
from excel_importer.core.errors import ImportIOError, NotFoundError
from excel_importer.models.import_job import ImportJob, JobStatus, utcnow
from excel_importer.schemas.import_job import ImportJobCreate, JobCompletionResult, JobProgress, JobResult
from excel_importer.services.bulk_loader import BulkLoader
from excel_importer.services.import_service import ImportRepository, ImportService
from excel_importer.services.import_validator import ImportValidator, ValidationResult
from excel_importer.services.spreadsheet_reader import SpreadsheetReader


@pytest.fixture
def db_session(job_store: Database):
    with Session(job_store.engine, expire_on_commit=False) as session:
        yield session


def _payload(path: Path | str = "/tmp/uploads/contacts.xlsx", **overrides) -> ImportJobCreate:
    data = {"file_path": str(path), "table_name": "contacts"}
    data.update(overrides)
    return ImportJobCreate(**data)


def _progress(processed: int, failed: int = 0, total: int = 10) -> JobProgress:
    return JobProgress.compute(total=total, processed=processed, failed=failed)


def _completion() -> JobCompletionResult:
    return JobCompletionResult(
        success_count=3, failed_count=0, duration_ms=12, table_name="contacts", file_name="contacts.xlsx"
    )


class TestImportRepository:
    """Test suite for ImportRepository."""

    def test_create_import_job(self, db_session: Session) -> None:
        repo = ImportRepository(db_session)

        job = repo.create(_payload(sheet_name="People", skip_rows=2), max_attempts=4)

        assert isinstance(job.id, UUID)
        assert job.status == JobStatus.PENDING
        assert job.file_name == "contacts.xlsx"
        assert job.sheet_name == "People"
        assert job.skip_rows == 2
        assert job.max_attempts == 4
        assert job.processed_rows == 0
        assert job.correlation_id

    def test_claim_happens_once(self, db_session: Session) -> None:
        """Test a pending job can be moved to processing only once."""
        repo = ImportRepository(db_session)
        job = repo.create(_payload())

        claimed = repo.claim(job.id)
        second = repo.claim(job.id)

        assert claimed is not None
        assert claimed.status == JobStatus.PROCESSING
        assert claimed.attempts == 1
        assert claimed.started_at is not None
        assert second is None

    def test_claim_unknown_job(self, db_session: Session) -> None:
        assert ImportRepository(db_session).claim(uuid4()) is None

    def test_update_progress_while_processing(self, db_session: Session) -> None:
        repo = ImportRepository(db_session)
        job = repo.create(_payload())
        repo.claim(job.id)

        assert repo.update_progress(job.id, _progress(5, failed=1)) is True

        stored = repo.get_by_id(job.id)
        assert (stored.processed_rows, stored.failed_rows, stored.percentage) == (5, 1, 50)

    def test_update_progress_rejects_decrease(self, db_session: Session) -> None:
        """Test processed never moves backwards."""
        repo = ImportRepository(db_session)
        job = repo.create(_payload())
        repo.claim(job.id)
        repo.update_progress(job.id, _progress(6))

        assert repo.update_progress(job.id, _progress(4)) is False
        assert repo.get_by_id(job.id).processed_rows == 6

    def test_update_progress_rejected_when_not_processing(self, db_session: Session) -> None:
        repo = ImportRepository(db_session)
        job = repo.create(_payload())

        assert repo.update_progress(job.id, _progress(1)) is False

        repo.claim(job.id)
        repo.mark_completed(job.id, _completion())
        assert repo.update_progress(job.id, _progress(10)) is False

    def test_terminal_state_is_set_once(self, db_session: Session) -> None:
        repo = ImportRepository(db_session)
        job = repo.create(_payload())
        repo.claim(job.id)

        assert repo.mark_completed(job.id, _completion()) is True
        assert repo.mark_completed(job.id, _completion()) is False
        assert repo.mark_failed(job.id, "late failure") is False
        assert repo.cancel(job.id) is False

        stored = repo.get_by_id(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.result["success_count"] == 3
        assert stored.completed_at is not None

    def test_mark_failed_keeps_error_and_stack(self, db_session: Session) -> None:
        repo = ImportRepository(db_session)
        job = repo.create(_payload())
        repo.claim(job.id)

        assert repo.mark_failed(job.id, "SchemaError: boom", "Traceback ...") is True

        stored = repo.get_by_id(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error_message == "SchemaError: boom"
        assert stored.error_stack == "Traceback ..."

    def test_requeue_returns_job_to_pending(self, db_session: Session) -> None:
        repo = ImportRepository(db_session)
        job = repo.create(_payload())
        repo.claim(job.id)
        repo.update_progress(job.id, _progress(4))

        assert repo.requeue(job.id, "ImportIOError: reset") is True

        stored = repo.get_by_id(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.processed_rows == 0
        assert stored.error_message == "ImportIOError: reset"
        assert repo.claim(job.id).attempts == 2

    def test_cancel_pending_and_processing(self, db_session: Session) -> None:
        repo = ImportRepository(db_session)
        pending = repo.create(_payload())
        processing = repo.create(_payload())
        repo.claim(processing.id)

        assert repo.cancel(pending.id) is True
        assert repo.cancel(processing.id) is True
        assert repo.get_status(pending.id) == JobStatus.CANCELLED
        assert repo.claim(pending.id) is None

    def test_list_by_status(self, db_session: Session) -> None:
        repo = ImportRepository(db_session)
        first = repo.create(_payload())
        repo.create(_payload())
        repo.claim(first.id)

        assert [job.id for job in repo.list_by_status(JobStatus.PROCESSING)] == [first.id]
        assert len(repo.list_by_status()) == 2

    def test_find_stalled(self, db_session: Session) -> None:
        """Test processing jobs without recent progress are reported."""
        repo = ImportRepository(db_session)
        stalled = repo.create(_payload())
        active = repo.create(_payload())
        repo.claim(stalled.id)
        repo.claim(active.id)
        db_session.execute(
            update(ImportJob)
            .where(ImportJob.id == stalled.id)
            .values(progress_updated_at=utcnow() - timedelta(minutes=30))
        )
        db_session.commit()

        found = repo.find_stalled(timedelta(minutes=10))

        assert [job.id for job in found] == [stalled.id]

    def test_purge_expired(self, db_session: Session) -> None:
        repo = ImportRepository(db_session)
        now = utcnow()

        def finished(status: JobStatus, age: timedelta) -> UUID:
            job = repo.create(_payload())
            db_session.execute(
                update(ImportJob)
                .where(ImportJob.id == job.id)
                .values(status=status, completed_at=now - age)
            )
            db_session.commit()
            return job.id

        old_completed = finished(JobStatus.COMPLETED, timedelta(hours=30))
        recent_completed = finished(JobStatus.COMPLETED, timedelta(hours=1))
        old_cancelled = finished(JobStatus.CANCELLED, timedelta(days=2))
        recent_failed = finished(JobStatus.FAILED, timedelta(days=3))
        old_failed = finished(JobStatus.FAILED, timedelta(days=8))
        pending = repo.create(_payload()).id

        purged = repo.purge_expired(
            completed_ttl=timedelta(hours=24),
            completed_keep=100,
            failed_ttl=timedelta(days=7),
            now=now,
        )

        assert purged == 3
        remaining = {job.id for job in repo.list_by_status(limit=100)}
        assert remaining == {recent_completed, recent_failed, pending}
        assert old_completed not in remaining
        assert old_cancelled not in remaining
        assert old_failed not in remaining

    def test_purge_keeps_only_newest_completed(self, db_session: Session) -> None:
        repo = ImportRepository(db_session)
        now = utcnow()
        ids = []
        for minutes in (1, 2, 3):
            job = repo.create(_payload())
            db_session.execute(
                update(ImportJob)
                .where(ImportJob.id == job.id)
                .values(status=JobStatus.COMPLETED, completed_at=now - timedelta(minutes=minutes))
            )
            db_session.commit()
            ids.append(job.id)

        purged = repo.purge_expired(
            completed_ttl=timedelta(hours=24), completed_keep=2, failed_ttl=timedelta(days=7), now=now
        )

        assert purged == 1
        assert repo.get_by_id(ids[2]) is None
        assert repo.get_by_id(ids[0]) is not None


class TestImportService:
    """Test suite for ImportService."""

    def test_submit_persists_and_enqueues(self, db_session: Session, settings: Settings, contacts_file: Path) -> None:
        service = ImportService(db_session, settings=settings)

        with patch("excel_importer.tasks.import_tasks.process_import") as task:
            result = service.submit(_payload(contacts_file, correlation_id="req-1"))

        assert isinstance(result, JobResult)
        assert result.status == JobStatus.PENDING
        assert result.correlation_id == "req-1"
        assert result.progress.processed == 0
        task.apply_async.assert_called_once_with(args=[str(result.job_id)], task_id=str(result.job_id))
        assert ImportRepository(db_session).get_by_id(result.job_id).max_attempts == 4

    def test_submit_missing_upload(self, db_session: Session, settings: Settings, tmp_path: Path) -> None:
        service = ImportService(db_session, settings=settings)

        with pytest.raises(NotFoundError):
            service.submit(_payload(tmp_path / "absent.xlsx"))

    def test_submit_broker_unreachable_fails_job(
        self, db_session: Session, settings: Settings, contacts_file: Path
    ) -> None:
        service = ImportService(db_session, settings=settings)

        with patch("excel_importer.tasks.import_tasks.process_import") as task:
            task.apply_async.side_effect = OperationalError("connection refused")
            with pytest.raises(ImportIOError, match="Failed to enqueue"):
                service.submit(_payload(contacts_file))

        jobs = service.list_jobs(JobStatus.FAILED)
        assert len(jobs) == 1

    def test_validate_only_returns_result_and_removes_upload(
        self,
        db_session: Session,
        settings: Settings,
        target_engine: Engine,
        contacts_table: Table,
        contacts_file: Path,
    ) -> None:
        validator = ImportValidator(SpreadsheetReader(), BulkLoader(target_engine))
        service = ImportService(db_session, validator, settings=settings)

        with patch("excel_importer.tasks.import_tasks.process_import") as task:
            result = service.submit(_payload(contacts_file, validate_only=True))

        assert isinstance(result, ValidationResult)
        assert result.is_valid is True
        assert result.row_count == 3
        assert not contacts_file.exists()
        task.apply_async.assert_not_called()
        assert service.list_jobs() == []

    def test_validate_only_requires_validator(self, db_session: Session, settings: Settings, contacts_file: Path) -> None:
        service = ImportService(db_session, settings=settings)

        with pytest.raises(RuntimeError):
            service.submit(_payload(contacts_file, validate_only=True))

    def test_get_job_status(self, db_session: Session, settings: Settings) -> None:
        repo = ImportRepository(db_session)
        job = repo.create(_payload())
        repo.claim(job.id)
        repo.update_progress(job.id, _progress(5, total=20))
        service = ImportService(db_session, settings=settings)

        status = service.get_job_status(job.id)

        assert status.status == JobStatus.PROCESSING
        assert status.progress.total == 20
        assert status.progress.percentage == 25
        assert service.get_job_status(uuid4()) is None

    def test_cancel_job(self, db_session: Session, settings: Settings) -> None:
        repo = ImportRepository(db_session)
        job = repo.create(_payload())
        service = ImportService(db_session, settings=settings)

        assert service.cancel_job(job.id) is True
        assert service.cancel_job(job.id) is False
        assert service.get_job_status(job.id).status == JobStatus.CANCELLED

    def test_malformed_job_id_is_unknown(self, db_session: Session, settings: Settings) -> None:
        """Test a job id that is not a UUID behaves like a missing job."""
        repo = ImportRepository(db_session)
        repo.create(_payload())
        service = ImportService(db_session, settings=settings)

        assert service.get_job_status("not-a-uuid") is None
        assert service.cancel_job("not-a-uuid") is False
        assert repo.get_status("not-a-uuid") is None
        assert repo.claim("not-a-uuid") is None
        assert repo.update_progress("not-a-uuid", _progress(1)) is False


class TestImportJobCreate:
    def test_rejects_invalid_table_name(self) -> None:
        with pytest.raises(ValueError):
            _payload(table_name="contacts; DROP TABLE users")

    def test_accepts_schema_qualified_table(self) -> None:
        assert _payload(table_name="crm.contacts").table_name == "crm.contacts"

    def test_rejects_negative_skip_rows(self) -> None:
        with pytest.raises(ValueError):
            _payload(skip_rows=-1)

    def test_rejects_invalid_mapping_target(self) -> None:
        with pytest.raises(ValueError):
            _payload(column_mapping={"Name": "full name"})

    def test_empty_mapping_becomes_none(self) -> None:
        assert _payload(column_mapping={}).column_mapping is None
