"""Tests for worker resources, settings and periodic maintenance."""
from __future__ import annotations

from datetime import timedelta
from unittest.mock import Mock

import pytest
from redis import Redis
from sqlalchemy import update

from excel_importer.core.config import Settings
from excel_importer.core.db import Database
from excel_importer.core.redis_manager import ProgressPublisher
from excel_importer.models.import_job import ImportJob, JobStatus, utcnow
from excel_importer.schemas.import_job import ImportJobCreate
from excel_importer.services.import_service import ImportRepository
from excel_importer.tasks import worker_context
from excel_importer.tasks.maintenance_tasks import purge_expired, report_stalled
from excel_importer.tasks.worker_context import WorkerResources


@pytest.fixture
def resources(job_store: Database, settings: Settings) -> WorkerResources:
    redis_mock = Mock(spec=Redis)
    return WorkerResources(
        settings=settings,
        job_store=job_store,
        target_engine=job_store.engine,
        redis=redis_mock,
        publisher=ProgressPublisher(redis_mock),
    )


@pytest.fixture
def installed(resources: WorkerResources):
    worker_context.install(resources)
    yield resources
    worker_context.install(None)


class TestSettings:
    def test_defaults(self, settings: Settings) -> None:
        assert settings.import_batch_size == 500
        assert settings.insert_strategy == "bulk"
        assert settings.worker_concurrency == 5
        assert settings.job_rate_limit == "10/s"
        assert settings.import_max_retries == 3
        assert settings.retry_backoff_seconds == 5

    def test_psycopg3_urls_are_normalised(self) -> None:
        settings = Settings(
            DATABASE_URL="postgresql+psycopg://user:pw@db/jobs",
            REDIS_URL="redis://localhost:6379/0",
            CELERY_BROKER_URL="memory://",
            CELERY_RESULT_BACKEND="cache+memory://",
        )

        assert settings.database_url == "postgresql://user:pw@db/jobs"
        assert settings.target_database_url == "postgresql://user:pw@db/jobs"


class TestWorkerContext:
    def test_resources_must_be_opened_explicitly(self) -> None:
        worker_context.install(None)

        with pytest.raises(RuntimeError):
            worker_context.get_worker_resources()

    def test_open_and_close(self, settings: Settings) -> None:
        resources = worker_context.open_worker_resources(settings)
        worker_context.install(resources)

        assert worker_context.get_worker_resources() is resources
        assert resources.target_engine is not resources.job_store.engine
        assert str(resources.target_engine.url) == settings.target_database_url

        worker_context.close_worker_resources()

        with pytest.raises(RuntimeError):
            worker_context.get_worker_resources()

    def test_shared_engine_when_urls_match(self, settings: Settings) -> None:
        shared = settings.model_copy(update={"target_database_url": settings.database_url})

        resources = worker_context.open_worker_resources(shared)

        assert resources.target_engine is resources.job_store.engine
        resources.close()


class TestMaintenance:
    def test_purge_expired_uses_retention_settings(self, installed: WorkerResources) -> None:
        job_store = installed.job_store
        with job_store.session_scope() as session:
            repo = ImportRepository(session)
            old = repo.create(ImportJobCreate(file_path="/tmp/a.xlsx", table_name="contacts"))
            fresh = repo.create(ImportJobCreate(file_path="/tmp/b.xlsx", table_name="contacts"))
            session.execute(
                update(ImportJob)
                .where(ImportJob.id == old.id)
                .values(status=JobStatus.COMPLETED, completed_at=utcnow() - timedelta(hours=25))
            )
            session.execute(
                update(ImportJob)
                .where(ImportJob.id == fresh.id)
                .values(status=JobStatus.FAILED, completed_at=utcnow() - timedelta(days=1))
            )

        assert purge_expired(installed) == 1

    def test_report_stalled(self, installed: WorkerResources, caplog: pytest.LogCaptureFixture) -> None:
        job_store = installed.job_store
        with job_store.session_scope() as session:
            repo = ImportRepository(session)
            job = repo.create(ImportJobCreate(file_path="/tmp/a.xlsx", table_name="contacts"))
            repo.claim(job.id)
            session.execute(
                update(ImportJob)
                .where(ImportJob.id == job.id)
                .values(started_at=utcnow() - timedelta(hours=1))
            )

        with caplog.at_level("WARNING"):
            stalled = report_stalled(installed)

        assert stalled == [str(job.id)]
        assert "stalled" in caplog.text
        with job_store.session_scope() as session:
            assert ImportRepository(session).get_status(job.id) == JobStatus.PROCESSING
