"""Exception taxonomy shared by the reader, loader, orchestrator and worker."""
from __future__ import annotations

from typing import Sequence


class ImportPipelineError(Exception):
    """Base class for every error raised by the import pipeline."""


class NotFoundError(ImportPipelineError):
    """A sheet, job or table that was asked for does not exist."""


class ImportIOError(ImportPipelineError):
    """The source file is unreadable/corrupt or a backing service is unreachable."""


class SchemaError(ImportPipelineError):
    """The target table or one of its columns does not match the import."""


class ImportValidationError(ImportPipelineError):
    """The spreadsheet is structurally unfit for import (missing columns, no rows)."""

    def __init__(self, message: str, errors: Sequence[object] = ()) -> None:
        super().__init__(message)
        self.errors = list(errors)


class RowError(ImportPipelineError):
    """A single record could not be written. ``row`` is 1-based within its batch."""

    def __init__(self, row: int, message: str) -> None:
        super().__init__(f"Row {row}: {message}")
        self.row = row
        self.message = message


class FatalImportError(ImportPipelineError):
    """The job cannot be retried: attempts are exhausted or rows were already committed."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts
