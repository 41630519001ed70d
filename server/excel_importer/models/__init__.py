"""ORM models exposed for external modules."""
from .base import Base
from .import_job import CANCELLABLE_STATUSES, TERMINAL_STATUSES, ImportJob, JobStatus

__all__ = [
    "Base",
    "ImportJob",
    "JobStatus",
    "TERMINAL_STATUSES",
    "CANCELLABLE_STATUSES",
]
