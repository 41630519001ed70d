"""Periodic housekeeping for the job store, scheduled by Celery beat."""
from __future__ import annotations

from datetime import timedelta
import logging

from excel_importer.services.import_service import ImportRepository
from excel_importer.tasks.celery_app import celery_app
from excel_importer.tasks.worker_context import WorkerResources, get_worker_resources

logger = logging.getLogger(__name__)


def purge_expired(resources: WorkerResources) -> int:
    settings = resources.settings
    with resources.job_store.session_scope() as session:
        purged = ImportRepository(session).purge_expired(
            completed_ttl=timedelta(hours=settings.completed_job_ttl_hours),
            completed_keep=settings.completed_job_keep,
            failed_ttl=timedelta(days=settings.failed_job_ttl_days),
        )
    if purged:
        logger.info(f"Purged {purged} expired import jobs")
    return purged


def report_stalled(resources: WorkerResources) -> list[str]:
    """Log processing jobs that stopped reporting progress; they are not requeued."""

    threshold = timedelta(seconds=resources.settings.stalled_job_threshold_seconds)
    with resources.job_store.session_scope() as session:
        stalled = ImportRepository(session).find_stalled(threshold)
        for job in stalled:
            last_seen = job.progress_updated_at or job.started_at
            logger.warning(
                f"Job {job.id} [{job.correlation_id}]: stalled at {job.processed_rows}/{job.total_rows or '?'} "
                f"rows, no progress since {last_seen}"
            )
        return [str(job.id) for job in stalled]


@celery_app.task(name="purge_expired_jobs")
def purge_expired_jobs() -> dict:
    """Delete terminal jobs that are past their retention window."""
    return {"purged": purge_expired(get_worker_resources())}


@celery_app.task(name="detect_stalled_jobs")
def detect_stalled_jobs() -> dict:
    """Flag processing jobs without recent progress for operators."""
    stalled = report_stalled(get_worker_resources())
    return {"stalled": stalled, "count": len(stalled)}
