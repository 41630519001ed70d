"""Celery application for the spreadsheet import worker pool."""

from celery import Celery

from excel_importer.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "excel_importer",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "excel_importer.tasks.import_tasks",
        "excel_importer.tasks.maintenance_tasks",
    ],
)

celery_app.config_from_object("excel_importer.tasks.celery_config")


def get_celery_app() -> Celery:
    """Return the configured Celery application instance.

    Useful for dependency injection in tests and for explicit imports.
    """
    return celery_app


# Registers the worker start/stop signal handlers that own engines and Redis
from excel_importer.tasks import worker_context  # noqa: E402,F401
