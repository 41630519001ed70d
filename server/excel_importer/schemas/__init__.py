"""Public schema exports."""

from .import_job import (
    FailedRecord,
    ImportJobCreate,
    JobCompletionResult,
    JobDescriptor,
    JobProgress,
    JobResult,
)

__all__ = [
    "FailedRecord",
    "ImportJobCreate",
    "JobCompletionResult",
    "JobDescriptor",
    "JobProgress",
    "JobResult",
]
