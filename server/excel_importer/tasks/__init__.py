"""Tasks module for background job processing."""
from __future__ import annotations

from .celery_app import celery_app, get_celery_app
from .import_tasks import ImportJobRunner, process_import
from .maintenance_tasks import detect_stalled_jobs, purge_expired_jobs

__all__ = [
    "celery_app",
    "get_celery_app",
    "ImportJobRunner",
    "process_import",
    "detect_stalled_jobs",
    "purge_expired_jobs",
]
